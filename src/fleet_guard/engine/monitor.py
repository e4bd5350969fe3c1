"""Heartbeat-based crash detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from fleet_guard.engine.controller import RecoveryController, apply_transition
from fleet_guard.engine.event_log import EventLog
from fleet_guard.engine.models import AgentFilter, AgentStatus
from fleet_guard.engine.recovery import RecoveryAction, RecoveryPolicy, detect_crash
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HeartbeatCheckSummary:
    scanned: int = 0
    crashed: int = 0
    handed_off: int = 0
    restarts_requested: int = 0
    errors: int = 0
    crashed_agent_ids: list[str] = field(default_factory=list)


class HeartbeatMonitor:
    """Flags agents whose heartbeat is older than the timeout.

    Observation only: the monitor never restarts anything itself. Newly
    crashed agents are handed to the recovery controller when one is wired in.
    """

    def __init__(
        self,
        *,
        registry: FleetRegistry,
        event_log: EventLog,
        policy: RecoveryPolicy,
        controller: RecoveryController | None = None,
    ) -> None:
        self.registry = registry
        self.event_log = event_log
        self.policy = policy
        self.controller = controller

    def check_heartbeats(self, now: datetime | None = None) -> HeartbeatCheckSummary:
        now = now or utc_now()
        summary = HeartbeatCheckSummary()
        stale = self.registry.list_agents(
            AgentFilter(
                exclude_statuses=(AgentStatus.CRASHED, AgentStatus.OFFLINE),
                heartbeat_before=now - self.policy.heartbeat_timeout,
            ),
        )
        summary.scanned = len(stale)
        for agent in stale:
            try:
                transition, _ = apply_transition(
                    self.registry,
                    self.event_log,
                    agent.agent_id,
                    lambda state: detect_crash(state, now, self.policy),
                    now=now,
                )
            except Exception:
                summary.errors += 1
                logger.exception("Crash detection failed for agent %s", agent.agent_id)
                continue
            if transition.action is not RecoveryAction.CRASH_DETECTED:
                continue
            summary.crashed += 1
            summary.crashed_agent_ids.append(agent.agent_id)
            logger.warning(
                "Agent %s (%s) marked crashed: %s",
                agent.name,
                agent.agent_id,
                transition.state.status_reason,
            )
            if self.controller is None:
                continue
            try:
                action = self.controller.handle_crash(agent.agent_id, now=now)
            except Exception:
                summary.errors += 1
                logger.exception("Recovery hand-off failed for agent %s", agent.agent_id)
                continue
            summary.handed_off += 1
            if action is RecoveryAction.RESTART_REQUESTED:
                summary.restarts_requested += 1
        return summary
