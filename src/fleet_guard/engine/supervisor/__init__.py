"""Process supervisor adapters."""

from __future__ import annotations

from fleet_guard.config import SupervisorSettings
from fleet_guard.engine.supervisor.base import RestartResult, Supervisor
from fleet_guard.engine.supervisor.command import CommandSupervisor
from fleet_guard.engine.supervisor.http import HttpSupervisor

__all__ = [
    "CommandSupervisor",
    "HttpSupervisor",
    "RestartResult",
    "Supervisor",
    "build_supervisor",
]


def build_supervisor(settings: SupervisorSettings) -> Supervisor:
    """HTTP supervisor when a URL is configured, otherwise the command template."""

    if settings.url:
        return HttpSupervisor(base_url=settings.url, timeout_seconds=settings.timeout_seconds)
    return CommandSupervisor(
        command_template=settings.command_template,
        timeout_seconds=settings.timeout_seconds,
    )
