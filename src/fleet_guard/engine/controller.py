"""Recovery controller: applies state transitions and performs their side effects."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from fleet_guard.engine.event_log import EventLog, agent_event
from fleet_guard.engine.models import AgentFilter, AgentStatus, AgentView, RecoveryStatusRow
from fleet_guard.engine.recovery import (
    EmitEvent,
    RecoveryAction,
    RecoveryPolicy,
    RecoveryState,
    RequestRestart,
    Transition,
    evaluate,
    is_healthy,
    reject_restart,
    reset_circuit,
    stop,
)
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.engine.supervisor.base import Supervisor
from fleet_guard.storage.common import utc_now

logger = logging.getLogger(__name__)

TransitionStep = Callable[[RecoveryState], Transition]


@dataclass(slots=True)
class RecoveryTickSummary:
    evaluated: int = 0
    restarts_requested: int = 0
    restarts_succeeded: int = 0
    restarts_failed: int = 0
    circuits_opened: int = 0
    errors: int = 0
    actions: dict[str, RecoveryAction] = field(default_factory=dict)


def apply_transition(
    registry: FleetRegistry,
    event_log: EventLog,
    agent_id: str,
    step: TransitionStep,
    *,
    now: datetime,
) -> tuple[Transition, AgentView]:
    """Run `step` under the registry compare-and-set and emit its events after commit."""

    def mutate(agent: AgentView) -> tuple[dict[str, object], Transition]:
        current = RecoveryState.from_agent(agent)
        transition = step(current)
        return transition.state.changed_fields(current), transition

    transition, agent = registry.update_agent(agent_id, mutate, now=now)
    for effect in transition.effects:
        if isinstance(effect, EmitEvent):
            event_log.append(agent_event(effect.kind, agent_id, now, **effect.detail))
    return transition, agent


class RecoveryController:
    """Owns the per-agent restart decision and talks to the supervisor."""

    def __init__(
        self,
        *,
        registry: FleetRegistry,
        supervisor: Supervisor,
        event_log: EventLog,
        policy: RecoveryPolicy,
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.event_log = event_log
        self.policy = policy

    def handle_crash(self, agent_id: str, *, now: datetime | None = None) -> RecoveryAction:
        """Entry point for a fresh crash signal from the heartbeat monitor."""

        return self.evaluate_agent(agent_id, now=now)

    def evaluate_agent(self, agent_id: str, *, now: datetime | None = None) -> RecoveryAction:
        """One recovery step for one agent; a restart is requested only after the state commits."""

        now = now or utc_now()
        transition, agent = apply_transition(
            self.registry,
            self.event_log,
            agent_id,
            lambda state: evaluate(state, now, self.policy),
            now=now,
        )
        for effect in transition.effects:
            if isinstance(effect, RequestRestart):
                return self._request_restart(agent, effect.attempt_at, now=now)
        if transition.action is not RecoveryAction.NONE:
            logger.info("Agent %s (%s): %s", agent.name, agent_id, transition.action.value)
        return transition.action

    def run_tick(self, *, now: datetime | None = None) -> RecoveryTickSummary:
        """Evaluate every crashed agent; one agent's failure does not stop the others."""

        now = now or utc_now()
        summary = RecoveryTickSummary()
        crashed = self.registry.list_agents(AgentFilter(statuses=(AgentStatus.CRASHED,)))
        for agent in crashed:
            summary.evaluated += 1
            try:
                action = self.evaluate_agent(agent.agent_id, now=now)
            except Exception:
                summary.errors += 1
                logger.exception("Recovery step failed for agent %s", agent.agent_id)
                continue
            summary.actions[agent.agent_id] = action
            if action is RecoveryAction.RESTART_REQUESTED:
                summary.restarts_requested += 1
            elif action is RecoveryAction.RESTART_SUCCEEDED:
                summary.restarts_succeeded += 1
            elif action is RecoveryAction.RESTART_FAILED:
                summary.restarts_failed += 1
            elif action is RecoveryAction.CIRCUIT_OPENED:
                summary.restarts_failed += 1
                summary.circuits_opened += 1
        return summary

    def stop_agent(self, agent_id: str, *, now: datetime | None = None) -> AgentView:
        now = now or utc_now()
        _, agent = apply_transition(
            self.registry,
            self.event_log,
            agent_id,
            lambda state: stop(state, now),
            now=now,
        )
        logger.info("Agent %s stopped by operator; pending recovery cleared", agent_id)
        return agent

    def reset_circuit(self, agent_id: str, *, now: datetime | None = None) -> AgentView:
        """Close an open circuit; raises `CircuitNotOpenError` when it is already closed."""

        now = now or utc_now()
        _, agent = apply_transition(
            self.registry,
            self.event_log,
            agent_id,
            lambda state: reset_circuit(state, now),
            now=now,
        )
        logger.info("Circuit breaker manually reset for agent %s", agent_id)
        return agent

    def report_restart_failure(
        self,
        agent_id: str,
        *,
        reason: str,
        attempt_at: datetime | None = None,
        now: datetime | None = None,
    ) -> RecoveryAction:
        """Supervisor-side report that an accepted restart did not come up.

        Counts like a rejected restart, without waiting for the grace period.
        `attempt_at` defaults to the pending attempt; returns
        `RecoveryAction.NONE` when no matching restart is pending.
        """

        now = now or utc_now()

        def step(state: RecoveryState) -> Transition:
            attempt = attempt_at or state.last_restart_attempt_at
            if attempt is None:
                return Transition(state, RecoveryAction.NONE)
            return reject_restart(
                state,
                now,
                self.policy,
                attempt_at=attempt,
                reason=reason,
                label="restart failed",
            )

        transition, agent = apply_transition(
            self.registry,
            self.event_log,
            agent_id,
            step,
            now=now,
        )
        if transition.action is RecoveryAction.NONE:
            logger.info(
                "Ignored restart failure report for agent %s: no matching attempt",
                agent_id,
            )
        else:
            logger.warning(
                "Restart of agent %s reported failed: %s (failures=%d)",
                agent.name,
                reason,
                agent.consecutive_failures,
            )
        return transition.action

    def recovery_status(self, *, now: datetime | None = None) -> list[RecoveryStatusRow]:
        now = now or utc_now()
        rows: list[RecoveryStatusRow] = []
        for agent in self.registry.list_agents():
            state = RecoveryState.from_agent(agent)
            rows.append(
                RecoveryStatusRow(
                    agent_id=agent.agent_id,
                    name=agent.name,
                    status=agent.status,
                    is_healthy=is_healthy(state, now, self.policy),
                    since_heartbeat=agent.heartbeat_age(now),
                    consecutive_failures=agent.consecutive_failures,
                    restart_level=agent.restart_level,
                    next_backoff=self.policy.backoff_for(agent.restart_level),
                    restart_pending=agent.restart_pending,
                    circuit_open=agent.circuit_open(now),
                    circuit_open_until=agent.circuit_open_until,
                    last_restart_attempt_at=agent.last_restart_attempt_at,
                ),
            )
        return rows

    def _request_restart(
        self,
        agent: AgentView,
        attempt_at: datetime,
        *,
        now: datetime,
    ) -> RecoveryAction:
        try:
            result = self.supervisor.request_restart(agent)
        except Exception as error:  # noqa: BLE001
            logger.warning("Supervisor raised for agent %s: %s", agent.agent_id, error)
            reason = f"{type(error).__name__}: {error}"
        else:
            if result.accepted:
                logger.info(
                    "Restart requested for agent %s (level=%d, failures=%d)",
                    agent.name,
                    agent.restart_level,
                    agent.consecutive_failures,
                )
                return RecoveryAction.RESTART_REQUESTED
            reason = result.reason or "rejected"
            logger.warning("Supervisor rejected restart of agent %s: %s", agent.agent_id, reason)

        transition, _ = apply_transition(
            self.registry,
            self.event_log,
            agent.agent_id,
            lambda state: reject_restart(
                state,
                now,
                self.policy,
                attempt_at=attempt_at,
                reason=reason,
            ),
            now=now,
        )
        return transition.action
