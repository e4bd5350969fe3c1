"""CLI entrypoint for fleet-guard."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from fleet_guard import __version__
from fleet_guard.config import Settings
from fleet_guard.engine.controllers import (
    AgentHeartbeatCommand,
    AgentListCommand,
    AgentMutateCommand,
    AgentRegisterCommand,
    AgentReportFailureCommand,
    DispatchListCommand,
    EventsCommand,
    FleetCliController,
    InitCommand,
    PauseCommand,
    RecoveryEventsCommand,
    RecoveryStatusCommand,
    RunCommand,
    ScheduleCreateCommand,
    ScheduleListCommand,
    ScheduleRunNowCommand,
    ScheduleToggleCommand,
    ScheduleUpcomingCommand,
    ScheduleUpdateCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FleetCliController()
C = TypeVar("C")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to FLEET_GUARD_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="fleet-guard")
def fleet_guard() -> None:
    """Agent fleet recovery and scheduling engine."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@fleet_guard.command("init")
@db_path_option
def init(db_path: Path | None) -> None:
    """Create or upgrade the registry schema and the default schedules."""

    _run(CONTROLLER.init, InitCommand(db_path=db_path))


@fleet_guard.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("register")
@db_path_option
@click.option("--name", required=True, help="Unique agent name.")
@click.option("--role", required=True, help="Agent role used by schedule selectors.")
@click.option("--agent-id", default=None, help="Explicit agent id (generated when omitted).")
@click.option("--endpoint", "endpoint_url", default=None, help="URL receiving dispatched work.")
def agents_register(
    db_path: Path | None,
    name: str,
    role: str,
    agent_id: str | None,
    endpoint_url: str | None,
) -> None:
    """Provision an agent record."""

    _run(
        CONTROLLER.register_agent,
        AgentRegisterCommand(
            db_path=db_path,
            name=name,
            role=role,
            agent_id=agent_id,
            endpoint_url=endpoint_url,
        ),
    )


@agents.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(["online", "idle", "busy", "offline", "crashed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def agents_list(db_path: Path | None, status: str | None) -> None:
    """List registered agents."""

    _run(CONTROLLER.list_agents, AgentListCommand(db_path=db_path, status=status))


@agents.command("heartbeat")
@db_path_option
@click.option("--agent-id", required=True, help="Agent id.")
@click.option(
    "--status",
    type=click.Choice(["online", "idle", "busy"], case_sensitive=False),
    default="online",
    show_default=True,
    help="Status reported with the heartbeat.",
)
def agents_heartbeat(db_path: Path | None, agent_id: str, status: str) -> None:
    """Record a heartbeat on behalf of an agent process."""

    _run(
        CONTROLLER.heartbeat,
        AgentHeartbeatCommand(db_path=db_path, agent_id=agent_id, status=status),
    )


@agents.command("stop")
@db_path_option
@click.option("--agent-id", required=True, help="Agent id.")
def agents_stop(db_path: Path | None, agent_id: str) -> None:
    """Mark an agent offline and clear its pending recovery so it is not auto-restarted."""

    _run(CONTROLLER.stop_agent, AgentMutateCommand(db_path=db_path, agent_id=agent_id))


@agents.command("reset-circuit")
@db_path_option
@click.option("--agent-id", required=True, help="Agent id.")
def agents_reset_circuit(db_path: Path | None, agent_id: str) -> None:
    """Close an open circuit breaker; the next recovery tick restarts the agent."""

    _run(CONTROLLER.reset_circuit, AgentMutateCommand(db_path=db_path, agent_id=agent_id))


@agents.command("report-failure")
@db_path_option
@click.option("--agent-id", required=True, help="Agent id.")
@click.option("--reason", required=True, help="Why the restarted process did not come up.")
@click.option(
    "--attempt-at",
    default=None,
    help="ISO timestamp of the failed attempt (defaults to the pending one).",
)
def agents_report_failure(
    db_path: Path | None,
    agent_id: str,
    reason: str,
    attempt_at: str | None,
) -> None:
    """Record that an accepted restart failed, without waiting for the grace period."""

    _run(
        CONTROLLER.report_failure,
        AgentReportFailureCommand(
            db_path=db_path,
            agent_id=agent_id,
            reason=reason,
            attempt_at=attempt_at,
        ),
    )


@fleet_guard.group()
def recovery() -> None:
    """Recovery inspection commands."""


@recovery.command("status")
@db_path_option
def recovery_status(db_path: Path | None) -> None:
    """Show per-agent health, backoff and circuit state."""

    _run(CONTROLLER.recovery_status, RecoveryStatusCommand(db_path=db_path))


@recovery.command("events")
@db_path_option
@click.option("--agent-id", default=None, help="Optional agent filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max events to print.",
)
def recovery_events(db_path: Path | None, agent_id: str | None, limit: int) -> None:
    """Show crash, restart and circuit events, newest first."""

    _run(
        CONTROLLER.recovery_events,
        RecoveryEventsCommand(db_path=db_path, agent_id=agent_id, limit=limit),
    )


@fleet_guard.command("events")
@db_path_option
@click.option("--subject-id", default=None, help="Agent or template id filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max events to print.",
)
def events(db_path: Path | None, subject_id: str | None, limit: int) -> None:
    """Show the event log, newest first."""

    _run(CONTROLLER.events, EventsCommand(db_path=db_path, subject_id=subject_id, limit=limit))


@fleet_guard.group()
def schedules() -> None:
    """Schedule template commands."""


@schedules.command("create")
@db_path_option
@click.option("--name", required=True, help="Unique template name.")
@click.option(
    "--trigger",
    "trigger_spec",
    required=True,
    help="`@every 10m` or a cron expression such as `0 */6 * * *`.",
)
@click.option("--role", default=None, help="Only dispatch to agents with this role.")
@click.option(
    "--target-agent",
    "target_agents",
    multiple=True,
    help="Only dispatch to these agent names. Can be repeated.",
)
@click.option("--handler", default="custom", show_default=True, help="Dispatch handler name.")
@click.option("--payload", "payload_json", default=None, help="JSON object handed to the handler.")
@click.option("--description", default=None, help="Free-form description.")
def schedules_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    trigger_spec: str,
    role: str | None,
    target_agents: tuple[str, ...],
    handler: str,
    payload_json: str | None,
    description: str | None,
) -> None:
    """Create a schedule template."""

    _run(
        CONTROLLER.create_schedule,
        ScheduleCreateCommand(
            db_path=db_path,
            name=name,
            trigger_spec=trigger_spec,
            role=role,
            target_agents=target_agents,
            handler=handler,
            payload_json=payload_json,
            description=description,
        ),
    )


@schedules.command("list")
@db_path_option
def schedules_list(db_path: Path | None) -> None:
    """List schedule templates."""

    _run(CONTROLLER.list_schedules, ScheduleListCommand(db_path=db_path))


@schedules.command("enable")
@db_path_option
@click.option("--template-id", required=True, help="Template id.")
def schedules_enable(db_path: Path | None, template_id: str) -> None:
    """Enable a schedule template."""

    _run(
        CONTROLLER.toggle_schedule,
        ScheduleToggleCommand(db_path=db_path, template_id=template_id, enabled=True),
    )


@schedules.command("disable")
@db_path_option
@click.option("--template-id", required=True, help="Template id.")
def schedules_disable(db_path: Path | None, template_id: str) -> None:
    """Disable a schedule template; templates are never deleted."""

    _run(
        CONTROLLER.toggle_schedule,
        ScheduleToggleCommand(db_path=db_path, template_id=template_id, enabled=False),
    )


@schedules.command("update")
@db_path_option
@click.option("--template-id", required=True, help="Template id.")
@click.option("--name", default=None, help="New unique template name.")
@click.option("--trigger", "trigger_spec", default=None, help="New trigger expression.")
@click.option("--description", default=None, help="New description.")
@click.option("--role", default=None, help="Replace the selector with this role.")
@click.option(
    "--target-agent",
    "target_agents",
    multiple=True,
    help="Replace the selector with these agent names. Can be repeated.",
)
@click.option("--payload", "payload_json", default=None, help="New JSON object payload.")
def schedules_update(  # noqa: PLR0913
    db_path: Path | None,
    template_id: str,
    name: str | None,
    trigger_spec: str | None,
    description: str | None,
    role: str | None,
    target_agents: tuple[str, ...],
    payload_json: str | None,
) -> None:
    """Edit a schedule template; windows that already fired do not fire again."""

    _run(
        CONTROLLER.update_schedule,
        ScheduleUpdateCommand(
            db_path=db_path,
            template_id=template_id,
            name=name,
            trigger_spec=trigger_spec,
            description=description,
            role=role,
            target_agents=target_agents,
            payload_json=payload_json,
        ),
    )


@schedules.command("run-now")
@db_path_option
@click.option("--template-id", required=True, help="Template id.")
def schedules_run_now(db_path: Path | None, template_id: str) -> None:
    """Dispatch a template immediately; its next scheduled window still fires."""

    _run(
        CONTROLLER.run_schedule_now,
        ScheduleRunNowCommand(db_path=db_path, template_id=template_id),
    )


@schedules.command("upcoming")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=10,
    show_default=True,
    help="Max runs to print.",
)
def schedules_upcoming(db_path: Path | None, limit: int) -> None:
    """Show the next run of each enabled template, soonest first."""

    _run(CONTROLLER.upcoming_schedules, ScheduleUpcomingCommand(db_path=db_path, limit=limit))


@schedules.command("init-defaults")
@db_path_option
def schedules_init_defaults(db_path: Path | None) -> None:
    """Create the built-in schedules that are missing."""

    _run(CONTROLLER.init_default_schedules, InitCommand(db_path=db_path))


@fleet_guard.command("dispatches")
@db_path_option
@click.option("--template-id", default=None, help="Optional template filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max dispatches to print.",
)
def dispatches(db_path: Path | None, template_id: str | None, limit: int) -> None:
    """List recent task dispatches."""

    _run(
        CONTROLLER.list_dispatches,
        DispatchListCommand(db_path=db_path, template_id=template_id, limit=limit),
    )


@fleet_guard.command("pause")
@db_path_option
def pause(db_path: Path | None) -> None:
    """Pause both control loops (kill switch)."""

    _run(CONTROLLER.set_paused, PauseCommand(db_path=db_path, paused=True))


@fleet_guard.command("resume")
@db_path_option
def resume(db_path: Path | None) -> None:
    """Resume the control loops."""

    _run(CONTROLLER.set_paused, PauseCommand(db_path=db_path, paused=False))


@fleet_guard.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one heartbeat+scheduler pass or loop until interrupted.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for loop wake-ups.",
)
def run(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Run the heartbeat monitor, recovery controller and task scheduler."""

    _run(CONTROLLER.run, RunCommand(db_path=db_path, once=once, max_cycles=max_cycles))


def _run(handler: Callable[[C], list[str]], command: C) -> None:
    try:
        lines = handler(command)
    except (LookupError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    fleet_guard()
