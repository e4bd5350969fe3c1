"""Supervisor interface for restarting agent processes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from fleet_guard.engine.models import AgentView


@dataclass(slots=True)
class RestartResult:
    """Outcome of one restart request; rejection carries the reason."""

    accepted: bool
    reason: str | None = None

    @classmethod
    def rejected(cls, reason: str) -> RestartResult:
        return cls(accepted=False, reason=reason)


class Supervisor(Protocol):
    """Protocol implemented by process supervisors."""

    def request_restart(self, agent: AgentView) -> RestartResult:
        """Ask for the agent process to be (re)started; must not raise."""
        raise NotImplementedError
