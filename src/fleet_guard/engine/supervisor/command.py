"""Restart agents by running a supervisor command (e.g. `pm2 restart {agent_name}`)."""

from __future__ import annotations

import logging
import shlex
import string
import subprocess

from fleet_guard.engine.models import AgentView
from fleet_guard.engine.supervisor.base import RestartResult

logger = logging.getLogger(__name__)

SUPPORTED_PLACEHOLDERS = frozenset({"agent_id", "agent_name", "role"})
_STDERR_TAIL_CHARS = 500


class CommandSupervisor:
    """Render a command template per agent and treat exit code 0 as accepted."""

    def __init__(self, *, command_template: str, timeout_seconds: float = 30.0) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise ValueError("Supervisor command template is empty.")
        unknown = {
            field_name
            for _, field_name, _, _ in string.Formatter().parse(stripped)
            if field_name is not None and field_name not in SUPPORTED_PLACEHOLDERS
        }
        if unknown:
            raise ValueError(
                f"Unsupported supervisor command placeholder(s): {sorted(unknown)}. "
                f"Allowed: {sorted(SUPPORTED_PLACEHOLDERS)}",
            )
        self.command_template = stripped
        self.timeout_seconds = timeout_seconds

    def build_args(self, agent: AgentView) -> list[str]:
        rendered = self.command_template.format(
            agent_id=shlex.quote(agent.agent_id),
            agent_name=shlex.quote(agent.name),
            role=shlex.quote(agent.role),
        )
        return shlex.split(rendered)

    def request_restart(self, agent: AgentView) -> RestartResult:
        args = self.build_args(agent)
        if not args:
            return RestartResult.rejected("supervisor command rendered empty")
        logger.debug("Running supervisor command for %s: %s", agent.name, args)
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return RestartResult.rejected(f"supervisor command not found: {args[0]}")
        except subprocess.TimeoutExpired:
            return RestartResult.rejected(
                f"supervisor command timed out after {self.timeout_seconds:g}s",
            )
        except OSError as error:
            return RestartResult.rejected(f"supervisor command failed to start: {error}")

        if completed.returncode != 0:
            reason = f"supervisor command exited with {completed.returncode}"
            stderr_tail = (completed.stderr or "").strip()[-_STDERR_TAIL_CHARS:]
            if stderr_tail:
                reason = f"{reason}: {stderr_tail}"
            return RestartResult.rejected(reason)
        return RestartResult(accepted=True)
