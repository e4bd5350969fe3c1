"""Restart backoff and circuit-breaker state machine.

Every function here is pure: it takes the recovery fields of one agent, the
current time and the policy, and returns the new fields plus the side effects
the caller must perform after the write commits. The controller runs them
inside the registry's compare-and-set update, so a transition that lost a race
is simply recomputed from the fresh record.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from fleet_guard.config import RecoverySettings
from fleet_guard.engine.models import AgentStatus, AgentView, EventKind


class CircuitNotOpenError(ValueError):
    """Manual reset requested for an agent whose circuit is closed."""


@dataclass(slots=True, frozen=True)
class RecoveryPolicy:
    heartbeat_timeout: timedelta
    backoff_levels: tuple[timedelta, ...]
    max_consecutive_failures: int
    recovery_window: timedelta
    restart_grace: timedelta

    @classmethod
    def from_settings(cls, settings: RecoverySettings) -> RecoveryPolicy:
        return cls(
            heartbeat_timeout=settings.heartbeat_timeout,
            backoff_levels=settings.backoff_levels,
            max_consecutive_failures=settings.max_consecutive_failures,
            recovery_window=settings.recovery_window,
            restart_grace=settings.restart_grace,
        )

    @property
    def max_level(self) -> int:
        return len(self.backoff_levels) - 1

    def clamp_level(self, level: int) -> int:
        return min(max(level, 0), self.max_level)

    def backoff_for(self, level: int) -> timedelta:
        """Delay before the next attempt; the last entry repeats past the table end."""

        return self.backoff_levels[self.clamp_level(level)]


@dataclass(slots=True, frozen=True)
class RecoveryState:
    """Recovery-relevant subset of an agent record."""

    status: AgentStatus
    status_reason: str | None
    last_heartbeat_at: datetime
    consecutive_failures: int
    restart_level: int
    restart_pending: bool
    last_restart_attempt_at: datetime | None
    circuit_open_until: datetime | None

    @classmethod
    def from_agent(cls, agent: AgentView) -> RecoveryState:
        return cls(
            status=agent.status,
            status_reason=agent.status_reason,
            last_heartbeat_at=agent.last_heartbeat_at,
            consecutive_failures=agent.consecutive_failures,
            restart_level=agent.restart_level,
            restart_pending=agent.restart_pending,
            last_restart_attempt_at=agent.last_restart_attempt_at,
            circuit_open_until=agent.circuit_open_until,
        )

    def changed_fields(self, previous: RecoveryState) -> dict[str, Any]:
        """Registry fields to write; the heartbeat column belongs to the agent and is never written."""

        changed: dict[str, Any] = {}
        for item in fields(self):
            if item.name == "last_heartbeat_at":
                continue
            value = getattr(self, item.name)
            if value != getattr(previous, item.name):
                changed[item.name] = value
        return changed


@dataclass(slots=True, frozen=True)
class EmitEvent:
    kind: EventKind
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class RequestRestart:
    """Ask the supervisor to restart the agent once the new state is committed."""

    attempt_at: datetime


Effect = EmitEvent | RequestRestart


class RecoveryAction(str, Enum):
    NONE = "none"
    CRASH_DETECTED = "crash_detected"
    CIRCUIT_OPEN_WAIT = "circuit_open_wait"
    GRACE_WAIT = "grace_wait"
    BACKOFF_WAIT = "backoff_wait"
    RESTART_REQUESTED = "restart_requested"
    RESTART_SUCCEEDED = "restart_succeeded"
    RESTART_FAILED = "restart_failed"
    CIRCUIT_OPENED = "circuit_opened"
    HEARTBEAT_RESUMED = "heartbeat_resumed"
    STOPPED = "stopped"
    CIRCUIT_RESET = "circuit_reset"


@dataclass(slots=True, frozen=True)
class Transition:
    state: RecoveryState
    action: RecoveryAction
    effects: tuple[Effect, ...] = ()

    @property
    def restart_requested(self) -> bool:
        return any(isinstance(effect, RequestRestart) for effect in self.effects)


def detect_crash(state: RecoveryState, now: datetime, policy: RecoveryPolicy) -> Transition:
    """Mark a stale agent crashed; already crashed or stopped agents are left alone."""

    if state.status in (AgentStatus.CRASHED, AgentStatus.OFFLINE):
        return Transition(state, RecoveryAction.NONE)
    stale_for = now - state.last_heartbeat_at
    if stale_for <= policy.heartbeat_timeout:
        return Transition(state, RecoveryAction.NONE)

    crashed = replace(
        state,
        status=AgentStatus.CRASHED,
        status_reason=f"no heartbeat for {int(stale_for.total_seconds())}s",
        restart_pending=False,
    )
    return Transition(
        crashed,
        RecoveryAction.CRASH_DETECTED,
        (
            EmitEvent(
                EventKind.CRASH_DETECTED,
                {
                    "previous_status": state.status.value,
                    "last_heartbeat_at": state.last_heartbeat_at.isoformat(),
                    "stale_seconds": int(stale_for.total_seconds()),
                },
            ),
        ),
    )


def evaluate(  # noqa: PLR0911
    state: RecoveryState,
    now: datetime,
    policy: RecoveryPolicy,
) -> Transition:
    """Advance a crashed agent by one tick of the recovery algorithm."""

    if state.status is not AgentStatus.CRASHED:
        return Transition(state, RecoveryAction.NONE)

    effects: list[Effect] = []
    if state.circuit_open_until is not None:
        if now < state.circuit_open_until:
            return Transition(state, RecoveryAction.CIRCUIT_OPEN_WAIT)
        effects.append(
            EmitEvent(
                EventKind.CIRCUIT_CLOSED,
                {
                    "opened_until": state.circuit_open_until.isoformat(),
                    "consecutive_failures": state.consecutive_failures,
                },
            ),
        )
        state = replace(
            state,
            circuit_open_until=None,
            consecutive_failures=0,
            restart_level=0,
            restart_pending=False,
        )
    elif state.consecutive_failures >= policy.max_consecutive_failures:
        return _open_circuit(state, now, policy, effects)

    if state.restart_pending and state.last_restart_attempt_at is not None:
        attempt_at = state.last_restart_attempt_at
        if state.last_heartbeat_at > attempt_at:
            recovered = replace(
                state,
                status=AgentStatus.ONLINE,
                status_reason=None,
                consecutive_failures=0,
                restart_level=0,
                restart_pending=False,
            )
            effects.append(
                EmitEvent(
                    EventKind.RESTART_SUCCEEDED,
                    {
                        "attempted_at": attempt_at.isoformat(),
                        "heartbeat_at": state.last_heartbeat_at.isoformat(),
                        "previous_failures": state.consecutive_failures,
                    },
                ),
            )
            return Transition(recovered, RecoveryAction.RESTART_SUCCEEDED, tuple(effects))
        if now - attempt_at < policy.restart_grace:
            return Transition(state, RecoveryAction.GRACE_WAIT, tuple(effects))
        return _record_failure(
            state,
            now,
            policy,
            effects,
            reason="no heartbeat within restart grace period",
        )
    if state.restart_pending:
        state = replace(state, restart_pending=False)

    if now - state.last_heartbeat_at <= policy.heartbeat_timeout:
        resumed = replace(state, status=AgentStatus.ONLINE, status_reason=None)
        effects.append(
            EmitEvent(
                EventKind.HEARTBEAT_RESUMED,
                {
                    "heartbeat_at": state.last_heartbeat_at.isoformat(),
                    "consecutive_failures": state.consecutive_failures,
                },
            ),
        )
        return Transition(resumed, RecoveryAction.HEARTBEAT_RESUMED, tuple(effects))

    decayed = False
    last_attempt = state.last_restart_attempt_at
    if (
        state.consecutive_failures > 0
        and last_attempt is not None
        and now - last_attempt >= policy.recovery_window
    ):
        state = replace(state, consecutive_failures=0, restart_level=0)
        decayed = True

    if last_attempt is not None and now - last_attempt < policy.backoff_for(state.restart_level):
        return Transition(state, RecoveryAction.BACKOFF_WAIT, tuple(effects))

    attempting = replace(state, last_restart_attempt_at=now, restart_pending=True)
    effects.append(
        EmitEvent(
            EventKind.RESTART_ATTEMPTED,
            {
                "attempt": state.consecutive_failures + 1,
                "restart_level": state.restart_level,
                "backoff_seconds": int(policy.backoff_for(state.restart_level).total_seconds()),
                "counters_decayed": decayed,
            },
        ),
    )
    effects.append(RequestRestart(attempt_at=now))
    return Transition(attempting, RecoveryAction.RESTART_REQUESTED, tuple(effects))


def reject_restart(
    state: RecoveryState,
    now: datetime,
    policy: RecoveryPolicy,
    *,
    attempt_at: datetime,
    reason: str,
    label: str = "restart rejected",
) -> Transition:
    """Count a failed attempt made at `attempt_at`, rejected or reported later.

    A stale report (the attempt was already judged, or a newer one is pending)
    changes nothing.
    """

    if not state.restart_pending or state.last_restart_attempt_at != attempt_at:
        return Transition(state, RecoveryAction.NONE)
    return _record_failure(state, now, policy, [], reason=f"{label}: {reason}")


def stop(state: RecoveryState, now: datetime) -> Transition:
    """Operator stop: clear pending recovery so the agent is never auto-restarted."""

    stopped = replace(
        state,
        status=AgentStatus.OFFLINE,
        status_reason="stopped by operator",
        consecutive_failures=0,
        restart_level=0,
        restart_pending=False,
        circuit_open_until=None,
    )
    return Transition(
        stopped,
        RecoveryAction.STOPPED,
        (
            EmitEvent(
                EventKind.AGENT_STOPPED,
                {
                    "previous_status": state.status.value,
                    "cleared_failures": state.consecutive_failures,
                    "circuit_was_open": _circuit_open(state, now),
                },
            ),
        ),
    )


def reset_circuit(state: RecoveryState, now: datetime) -> Transition:
    """Operator override closing an open circuit so the next tick restarts immediately."""

    if not _circuit_open(state, now):
        raise CircuitNotOpenError("Circuit breaker is not open for this agent")
    closed = replace(
        state,
        consecutive_failures=0,
        restart_level=0,
        restart_pending=False,
        last_restart_attempt_at=None,
        circuit_open_until=None,
    )
    return Transition(
        closed,
        RecoveryAction.CIRCUIT_RESET,
        (
            EmitEvent(
                EventKind.CIRCUIT_RESET,
                {
                    "previous_failures": state.consecutive_failures,
                    "opened_until": state.circuit_open_until.isoformat()
                    if state.circuit_open_until
                    else None,
                },
            ),
        ),
    )


def is_healthy(state: RecoveryState, now: datetime, policy: RecoveryPolicy) -> bool:
    return (
        state.status in (AgentStatus.ONLINE, AgentStatus.IDLE, AgentStatus.BUSY)
        and now - state.last_heartbeat_at <= policy.heartbeat_timeout
    )


def _circuit_open(state: RecoveryState, now: datetime) -> bool:
    return state.circuit_open_until is not None and now < state.circuit_open_until


def _record_failure(
    state: RecoveryState,
    now: datetime,
    policy: RecoveryPolicy,
    effects: list[Effect],
    *,
    reason: str,
) -> Transition:
    failures = state.consecutive_failures + 1
    failed = replace(
        state,
        consecutive_failures=failures,
        restart_level=policy.clamp_level(state.restart_level + 1),
        restart_pending=False,
        status_reason=reason,
    )
    effects.append(
        EmitEvent(
            EventKind.RESTART_FAILED,
            {
                "reason": reason,
                "consecutive_failures": failures,
                "restart_level": failed.restart_level,
            },
        ),
    )
    if failures >= policy.max_consecutive_failures:
        return _open_circuit(failed, now, policy, effects)
    return Transition(failed, RecoveryAction.RESTART_FAILED, tuple(effects))


def _open_circuit(
    state: RecoveryState,
    now: datetime,
    policy: RecoveryPolicy,
    effects: list[Effect],
) -> Transition:
    until = now + policy.recovery_window
    opened = replace(state, circuit_open_until=until, restart_pending=False)
    effects.append(
        EmitEvent(
            EventKind.CIRCUIT_OPENED,
            {
                "open_until": until.isoformat(),
                "consecutive_failures": state.consecutive_failures,
            },
        ),
    )
    return Transition(opened, RecoveryAction.CIRCUIT_OPENED, tuple(effects))
