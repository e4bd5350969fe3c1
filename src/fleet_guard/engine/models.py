"""Domain models for the fleet registry, recovery events and dispatches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Agent lifecycle states as stored in the registry."""

    ONLINE = "online"
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"
    CRASHED = "crashed"


DISPATCHABLE_STATUSES = (AgentStatus.ONLINE, AgentStatus.IDLE)
HEARTBEAT_REPORTABLE_STATUSES = (AgentStatus.ONLINE, AgentStatus.IDLE, AgentStatus.BUSY)


class EventKind(str, Enum):
    """Kinds of records appended to the event log."""

    CRASH_DETECTED = "crash_detected"
    RESTART_ATTEMPTED = "restart_attempted"
    RESTART_SUCCEEDED = "restart_succeeded"
    RESTART_FAILED = "restart_failed"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"

    HEARTBEAT_RESUMED = "heartbeat_resumed"
    AGENT_STOPPED = "agent_stopped"
    CIRCUIT_RESET = "circuit_reset"

    DISPATCH_CREATED = "dispatch_created"
    DISPATCH_DELIVERED = "dispatch_delivered"
    DISPATCH_RETRY_SCHEDULED = "dispatch_retry_scheduled"
    DISPATCH_FAILED = "dispatch_failed"
    DISPATCH_DEFERRED = "dispatch_deferred"
    FLEET_HEALTH_REPORT = "fleet_health_report"

    SYSTEM_PAUSED = "system_paused"
    SYSTEM_RESUMED = "system_resumed"


RECOVERY_EVENT_KINDS = frozenset(
    {
        EventKind.CRASH_DETECTED,
        EventKind.RESTART_ATTEMPTED,
        EventKind.RESTART_SUCCEEDED,
        EventKind.RESTART_FAILED,
        EventKind.CIRCUIT_OPENED,
        EventKind.CIRCUIT_CLOSED,
        EventKind.HEARTBEAT_RESUMED,
        EventKind.AGENT_STOPPED,
        EventKind.CIRCUIT_RESET,
    },
)


class SubjectType(str, Enum):
    AGENT = "agent"
    TEMPLATE = "template"
    SYSTEM = "system"


class DispatchOutcome(str, Enum):
    """Delivery state of one template firing."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DispatchSource(str, Enum):
    """What produced a dispatch: a trigger window or an operator run-now."""

    SCHEDULE = "schedule"
    MANUAL = "manual"


@dataclass(slots=True)
class AgentCreate:
    """Input payload for provisioning an agent record."""

    name: str
    role: str
    agent_id: str | None = None
    status: AgentStatus = AgentStatus.IDLE
    endpoint_url: str | None = None
    last_heartbeat_at: datetime | None = None


@dataclass(slots=True)
class AgentView:
    """Readable agent record for engine logic and CLI."""

    agent_id: str
    name: str
    role: str
    status: AgentStatus
    status_reason: str | None
    endpoint_url: str | None
    last_heartbeat_at: datetime
    consecutive_failures: int
    restart_level: int
    restart_pending: bool
    last_restart_attempt_at: datetime | None
    circuit_open_until: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    def circuit_open(self, now: datetime) -> bool:
        return self.circuit_open_until is not None and now < self.circuit_open_until

    def heartbeat_age(self, now: datetime) -> timedelta:
        return now - self.last_heartbeat_at


@dataclass(slots=True)
class AgentFilter:
    """Registry scan criteria; every populated field narrows the result."""

    statuses: tuple[AgentStatus, ...] | None = None
    exclude_statuses: tuple[AgentStatus, ...] = ()
    heartbeat_before: datetime | None = None
    role: str | None = None


@dataclass(slots=True, frozen=True)
class TargetSelector:
    """Criteria an agent must satisfy to receive a template's work.

    An empty selector matches every agent.
    """

    role: str | None = None
    names: tuple[str, ...] = ()

    def matches(self, agent: AgentView) -> bool:
        if self.role is not None and agent.role != self.role:
            return False
        if self.names and agent.name.lower() not in {name.lower() for name in self.names}:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.role is not None:
            payload["role"] = self.role
        if self.names:
            payload["names"] = list(self.names)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TargetSelector:
        role = payload.get("role")
        names = payload.get("names") or ()
        if role is not None and not isinstance(role, str):
            raise ValueError(f"Target selector role must be a string, got {role!r}")
        if not isinstance(names, list | tuple) or not all(isinstance(n, str) for n in names):
            raise ValueError(f"Target selector names must be a list of strings, got {names!r}")
        return cls(role=role, names=tuple(names))


@dataclass(slots=True)
class ScheduleTemplateCreate:
    """Input payload for a recurring work definition."""

    name: str
    trigger_spec: str
    target_selector: TargetSelector = field(default_factory=TargetSelector)
    handler: str = "custom"
    payload: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    enabled: bool = True
    created_by: str | None = None
    template_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ScheduleTemplateView:
    template_id: str
    name: str
    description: str | None
    trigger_spec: str
    target_selector: TargetSelector
    handler: str
    payload: dict[str, Any]
    enabled: bool
    last_dispatched_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def watermark(self) -> datetime:
        """Latest instant already covered by a dispatch (or creation)."""

        return self.last_dispatched_at or self.created_at


@dataclass(slots=True)
class TaskDispatchView:
    dispatch_id: str
    template_id: str
    agent_id: str
    window_start: datetime
    dispatched_at: datetime
    attempt: int
    outcome: DispatchOutcome
    next_attempt_at: datetime | None
    error_summary: str | None
    finished_at: datetime | None
    source: DispatchSource = DispatchSource.SCHEDULE


@dataclass(slots=True)
class FleetEvent:
    """One append-only event log record."""

    subject_type: SubjectType
    subject_id: str | None
    kind: EventKind
    created_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FleetEventView:
    event_id: int
    subject_type: SubjectType
    subject_id: str | None
    kind: str
    created_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RecoveryStatusRow:
    """Operator-facing recovery snapshot for one agent."""

    agent_id: str
    name: str
    status: AgentStatus
    is_healthy: bool
    since_heartbeat: timedelta
    consecutive_failures: int
    restart_level: int
    next_backoff: timedelta
    restart_pending: bool
    circuit_open: bool
    circuit_open_until: datetime | None
    last_restart_attempt_at: datetime | None
