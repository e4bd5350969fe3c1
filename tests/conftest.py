"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from fleet_guard.config import RecoverySettings
from fleet_guard.engine.event_log import SqliteEventLog
from fleet_guard.engine.handlers import DeliveryError, DispatchRequest
from fleet_guard.engine.models import AgentCreate, AgentStatus, AgentView
from fleet_guard.engine.recovery import RecoveryPolicy
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.engine.supervisor import RestartResult

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeSupervisor:
    """Records restart requests; accepts unless told otherwise."""

    def __init__(self, *, accept: bool = True, reason: str = "boom", error: Exception | None = None):
        self.accept = accept
        self.reason = reason
        self.error = error
        self.calls: list[str] = []

    def request_restart(self, agent: AgentView) -> RestartResult:
        self.calls.append(agent.agent_id)
        if self.error is not None:
            raise self.error
        if self.accept:
            return RestartResult(accepted=True)
        return RestartResult.rejected(self.reason)


class RecordingExecutor:
    """Collects deliveries; the first `failures` deliveries raise `DeliveryError`."""

    def __init__(self, *, failures: int = 0):
        self.failures = failures
        self.deliveries: list[DispatchRequest] = []

    def deliver(self, request: DispatchRequest, *, now: datetime) -> None:
        self.deliveries.append(request)
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("agent endpoint unavailable")


@pytest.fixture()
def registry(tmp_path) -> Iterator[FleetRegistry]:
    registry = FleetRegistry(tmp_path / "fleet.db", retry_delay_seconds=0)
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()


@pytest.fixture()
def event_log(registry: FleetRegistry) -> SqliteEventLog:
    return SqliteEventLog(registry.engine)


@pytest.fixture()
def policy() -> RecoveryPolicy:
    return RecoveryPolicy.from_settings(RecoverySettings())


def register(
    registry: FleetRegistry,
    name: str,
    *,
    role: str = "worker",
    status: AgentStatus = AgentStatus.ONLINE,
    heartbeat_age: timedelta = timedelta(0),
    now: datetime = NOW,
) -> AgentView:
    return registry.register_agent(
        AgentCreate(
            name=name,
            role=role,
            status=status,
            last_heartbeat_at=now - heartbeat_age,
        ),
        now=now,
    )
