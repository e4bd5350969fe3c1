"""Controllers for fleet-guard CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from fleet_guard.config import Settings
from fleet_guard.engine.controller import RecoveryController
from fleet_guard.engine.event_log import SqliteEventLog
from fleet_guard.engine.handlers import HandlerExecutor, HttpTaskExecutor, TaskExecutor
from fleet_guard.engine.models import (
    RECOVERY_EVENT_KINDS,
    AgentCreate,
    AgentFilter,
    AgentStatus,
    FleetEventView,
    ScheduleTemplateCreate,
    TargetSelector,
)
from fleet_guard.engine.monitor import HeartbeatMonitor
from fleet_guard.engine.recovery import RecoveryAction, RecoveryPolicy
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.engine.runner import FleetRunner, RunnerSummary, set_system_paused
from fleet_guard.engine.scheduler import TaskScheduler, ensure_default_schedules, upcoming_runs
from fleet_guard.engine.supervisor import HttpSupervisor, Supervisor, build_supervisor
from fleet_guard.storage.common import to_utc_aware_datetime, utc_now


@dataclass(slots=True)
class InitCommand:
    db_path: Path | None


@dataclass(slots=True)
class AgentRegisterCommand:
    """CLI input for agent provisioning."""

    db_path: Path | None
    name: str
    role: str
    agent_id: str | None
    endpoint_url: str | None


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class AgentHeartbeatCommand:
    """CLI input for an agent-side heartbeat write."""

    db_path: Path | None
    agent_id: str
    status: str


@dataclass(slots=True)
class AgentMutateCommand:
    """CLI input for stop / reset-circuit operations."""

    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class AgentReportFailureCommand:
    """CLI input for a supervisor reporting a restart that did not come up."""

    db_path: Path | None
    agent_id: str
    reason: str
    attempt_at: str | None


@dataclass(slots=True)
class RecoveryStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class RecoveryEventsCommand:
    db_path: Path | None
    agent_id: str | None
    limit: int


@dataclass(slots=True)
class EventsCommand:
    db_path: Path | None
    subject_id: str | None
    limit: int


@dataclass(slots=True)
class ScheduleCreateCommand:
    """CLI input for template creation."""

    db_path: Path | None
    name: str
    trigger_spec: str
    role: str | None
    target_agents: tuple[str, ...]
    handler: str
    payload_json: str | None
    description: str | None


@dataclass(slots=True)
class ScheduleListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ScheduleToggleCommand:
    db_path: Path | None
    template_id: str
    enabled: bool


@dataclass(slots=True)
class ScheduleUpdateCommand:
    """CLI input for editing a template; None leaves a field unchanged."""

    db_path: Path | None
    template_id: str
    name: str | None
    trigger_spec: str | None
    description: str | None
    role: str | None
    target_agents: tuple[str, ...]
    payload_json: str | None


@dataclass(slots=True)
class ScheduleRunNowCommand:
    db_path: Path | None
    template_id: str


@dataclass(slots=True)
class ScheduleUpcomingCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class DispatchListCommand:
    db_path: Path | None
    template_id: str | None
    limit: int


@dataclass(slots=True)
class PauseCommand:
    db_path: Path | None
    paused: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for the control loops."""

    db_path: Path | None
    once: bool
    max_cycles: int | None


@dataclass(slots=True)
class FleetComponents:
    """Engine objects wired from one settings tree."""

    registry: FleetRegistry
    event_log: SqliteEventLog
    controller: RecoveryController
    monitor: HeartbeatMonitor
    scheduler: TaskScheduler
    runner: FleetRunner
    owned_clients: list[HttpSupervisor | HttpTaskExecutor] = field(default_factory=list)

    def close(self) -> None:
        """Close the HTTP clients built from settings; injected ones stay open."""

        clients, self.owned_clients = self.owned_clients, []
        for client in reversed(clients):
            client.close()


def build_components(
    settings: Settings,
    registry: FleetRegistry,
    *,
    supervisor: Supervisor | None = None,
    executor: TaskExecutor | None = None,
) -> FleetComponents:
    event_log = SqliteEventLog(registry.engine)
    policy = RecoveryPolicy.from_settings(settings.recovery)
    owned_clients: list[HttpSupervisor | HttpTaskExecutor] = []
    if supervisor is None:
        supervisor = build_supervisor(settings.supervisor)
        if isinstance(supervisor, HttpSupervisor):
            owned_clients.append(supervisor)
    controller = RecoveryController(
        registry=registry,
        supervisor=supervisor,
        event_log=event_log,
        policy=policy,
    )
    monitor = HeartbeatMonitor(
        registry=registry,
        event_log=event_log,
        policy=policy,
        controller=controller,
    )
    if executor is None:
        if settings.scheduler.delivery_url:
            executor = HttpTaskExecutor(
                delivery_url=settings.scheduler.delivery_url,
                timeout_seconds=settings.scheduler.delivery_timeout_seconds,
            )
            owned_clients.append(executor)
        else:
            executor = HandlerExecutor(registry=registry, event_log=event_log)
    scheduler = TaskScheduler(
        registry=registry,
        event_log=event_log,
        executor=executor,
        max_delivery_attempts=settings.scheduler.max_delivery_attempts,
    )
    runner = FleetRunner(
        registry=registry,
        monitor=monitor,
        controller=controller,
        scheduler=scheduler,
        heartbeat_interval_seconds=settings.loops.heartbeat_check_interval_seconds,
        scheduler_interval_seconds=settings.loops.scheduler_tick_interval_seconds,
    )
    return FleetComponents(
        registry=registry,
        event_log=event_log,
        controller=controller,
        monitor=monitor,
        scheduler=scheduler,
        runner=runner,
        owned_clients=owned_clients,
    )


class FleetCliController:
    """Coordinates registry, recovery, schedule and runner CLI operations."""

    def init(self, command: InitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            created = ensure_default_schedules(registry)
        lines = [f"Registry ready: {settings.db_path}"]
        lines.extend(f"Default schedule created: {template.name}" for template in created)
        return lines

    def register_agent(self, command: AgentRegisterCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            agent = registry.register_agent(
                AgentCreate(
                    name=command.name,
                    role=command.role,
                    agent_id=command.agent_id,
                    endpoint_url=command.endpoint_url,
                ),
            )
        return [
            f"Agent registered: agent_id={agent.agent_id} name={agent.name} "
            f"role={agent.role} status={agent.status.value}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = _settings(command.db_path)
        statuses = (AgentStatus(command.status.lower()),) if command.status else None
        now = utc_now()
        with _registry(settings) as registry:
            agents = registry.list_agents(AgentFilter(statuses=statuses))

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} name={agent.name} role={agent.role} "
                f"status={agent.status.value} heartbeat_age={_format_age(agent.heartbeat_age(now))} "
                f"failures={agent.consecutive_failures} level={agent.restart_level}",
            )
        return lines

    def heartbeat(self, command: AgentHeartbeatCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            agent = registry.record_heartbeat(
                command.agent_id,
                status=AgentStatus(command.status.lower()),
            )
        return [
            f"Heartbeat recorded: agent_id={agent.agent_id} status={agent.status.value} "
            f"at={agent.last_heartbeat_at.isoformat()}",
        ]

    def stop_agent(self, command: AgentMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            agent = components.controller.stop_agent(command.agent_id)
        return [f"Agent stopped: agent_id={agent.agent_id} status={agent.status.value}"]

    def reset_circuit(self, command: AgentMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            agent = components.controller.reset_circuit(command.agent_id)
        return [
            f"Circuit reset: agent_id={agent.agent_id} failures={agent.consecutive_failures} "
            f"level={agent.restart_level}",
        ]

    def report_failure(self, command: AgentReportFailureCommand) -> list[str]:
        attempt_at = _parse_time(command.attempt_at, option="--attempt-at")
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            action = components.controller.report_restart_failure(
                command.agent_id,
                reason=command.reason,
                attempt_at=attempt_at,
            )
            agent = registry.require_agent(command.agent_id)
        if action is RecoveryAction.NONE:
            raise ValueError(f"No pending restart to fail for agent {command.agent_id}")
        return [
            f"Restart failure recorded: agent_id={agent.agent_id} action={action.value} "
            f"failures={agent.consecutive_failures} level={agent.restart_level} "
            f"circuit={'open' if agent.circuit_open(utc_now()) else 'closed'}",
        ]

    def recovery_status(self, command: RecoveryStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            rows = components.controller.recovery_status()
            paused = registry.is_paused()

        lines = [f"Recovery status: agents={len(rows)} paused={'yes' if paused else 'no'}"]
        for row in rows:
            circuit = (
                f"open_until={_format_time(row.circuit_open_until)}" if row.circuit_open else "closed"
            )
            lines.append(
                f"  {row.name} ({row.agent_id}) status={row.status.value} "
                f"healthy={'yes' if row.is_healthy else 'no'} "
                f"since_heartbeat={_format_age(row.since_heartbeat)} "
                f"failures={row.consecutive_failures} level={row.restart_level} "
                f"next_backoff={_format_age(row.next_backoff)} "
                f"pending={'yes' if row.restart_pending else 'no'} circuit={circuit} "
                f"last_restart={_format_time(row.last_restart_attempt_at)}",
            )
        return lines

    def recovery_events(self, command: RecoveryEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            events = SqliteEventLog(registry.engine).list_events(
                subject_id=command.agent_id,
                kinds=RECOVERY_EVENT_KINDS,
                limit=command.limit,
            )
        return _render_events(events)

    def events(self, command: EventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            events = SqliteEventLog(registry.engine).list_events(
                subject_id=command.subject_id,
                limit=command.limit,
            )
        return _render_events(events)

    def create_schedule(self, command: ScheduleCreateCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            template = registry.create_template(
                ScheduleTemplateCreate(
                    name=command.name,
                    trigger_spec=command.trigger_spec,
                    target_selector=TargetSelector(
                        role=command.role,
                        names=command.target_agents,
                    ),
                    handler=command.handler,
                    payload=payload,
                    description=command.description,
                    created_by="cli",
                ),
            )
        return [
            f"Schedule created: template_id={template.template_id} name={template.name} "
            f"trigger={template.trigger_spec!r} handler={template.handler}",
        ]

    def list_schedules(self, command: ScheduleListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            templates = registry.list_templates()

        lines = [f"Schedules: {len(templates)}"]
        for template in templates:
            selector = json.dumps(template.target_selector.to_dict(), sort_keys=True)
            lines.append(
                f"  {template.template_id} name={template.name} "
                f"trigger={template.trigger_spec!r} handler={template.handler} "
                f"enabled={'yes' if template.enabled else 'no'} target={selector} "
                f"last_dispatched={_format_time(template.last_dispatched_at)}",
            )
        return lines

    def toggle_schedule(self, command: ScheduleToggleCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            template = registry.set_template_enabled(command.template_id, enabled=command.enabled)
        state = "enabled" if template.enabled else "disabled"
        return [f"Schedule {state}: template_id={template.template_id} name={template.name}"]

    def update_schedule(self, command: ScheduleUpdateCommand) -> list[str]:
        fields: dict[str, object] = {}
        if command.name is not None:
            fields["name"] = command.name
        if command.trigger_spec is not None:
            fields["trigger_spec"] = command.trigger_spec
        if command.description is not None:
            fields["description"] = command.description
        if command.role is not None or command.target_agents:
            fields["target_selector"] = TargetSelector(
                role=command.role,
                names=command.target_agents,
            )
        if command.payload_json is not None:
            fields["payload"] = _parse_payload(command.payload_json)
        if not fields:
            raise ValueError("Nothing to update; pass at least one field option")

        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            template = registry.patch_template(command.template_id, fields)
        return [
            f"Schedule updated: template_id={template.template_id} name={template.name} "
            f"trigger={template.trigger_spec!r} fields={','.join(sorted(fields))}",
        ]

    def run_schedule_now(self, command: ScheduleRunNowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            dispatch = components.scheduler.run_now(command.template_id)
        return [
            f"Schedule run now: dispatch_id={dispatch.dispatch_id} agent={dispatch.agent_id} "
            f"outcome={dispatch.outcome.value} attempt={dispatch.attempt}",
        ]

    def upcoming_schedules(self, command: ScheduleUpcomingCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            runs = upcoming_runs(registry, limit=command.limit)

        lines = [f"Upcoming runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.next_run.isoformat()} name={run.template.name} "
                f"trigger={run.template.trigger_spec!r} overdue={'yes' if run.overdue else 'no'}",
            )
        return lines

    def init_default_schedules(self, command: InitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            created = ensure_default_schedules(registry)
        if not created:
            return ["Default schedules already present."]
        return [f"Default schedule created: {template.name}" for template in created]

    def list_dispatches(self, command: DispatchListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            dispatches = registry.list_dispatches(
                template_id=command.template_id,
                limit=command.limit,
            )

        lines = [f"Dispatches: {len(dispatches)}"]
        for dispatch in dispatches:
            lines.append(
                f"  {dispatch.dispatch_id} template={dispatch.template_id} "
                f"agent={dispatch.agent_id} source={dispatch.source.value} "
                f"window={dispatch.window_start.isoformat()} "
                f"dispatched_at={dispatch.dispatched_at.isoformat()} attempt={dispatch.attempt} "
                f"outcome={dispatch.outcome.value} error={dispatch.error_summary or '-'}",
            )
        return lines

    def set_paused(self, command: PauseCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            changed = set_system_paused(
                registry,
                SqliteEventLog(registry.engine),
                paused=command.paused,
            )
        state = "paused" if command.paused else "running"
        if not changed:
            return [f"System already {state}."]
        return [f"System {state}."]

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _components(settings, registry) as components:
            runner = components.runner
            summary = (
                runner.run_once() if command.once else runner.run_loop(max_cycles=command.max_cycles)
            )
        return _render_run_summary(summary)


def _render_run_summary(summary: RunnerSummary) -> list[str]:
    return [
        "Runner summary: "
        f"cycles={summary.cycles} paused_cycles={summary.paused_cycles} "
        f"heartbeat_checks={summary.heartbeat_checks} scheduler_ticks={summary.scheduler_ticks}",
        "Recovery: "
        f"crashed={summary.crashed} restarts_requested={summary.restarts_requested} "
        f"restarts_failed={summary.restarts_failed} circuits_opened={summary.circuits_opened}",
        "Dispatch: "
        f"dispatched={summary.dispatched} delivered={summary.delivered} "
        f"deferred={summary.deferred} failed={summary.dispatches_failed} errors={summary.errors}",
    ]


def _render_events(events: list[FleetEventView]) -> list[str]:
    lines = [f"Events: {len(events)}"]
    for event in events:
        detail = json.dumps(event.detail, ensure_ascii=False, sort_keys=True)
        lines.append(
            f"  {event.created_at.isoformat()} {event.kind} "
            f"{event.subject_type.value}={event.subject_id or '-'} {detail}",
        )
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _registry(settings: Settings) -> Iterator[FleetRegistry]:
    registry = FleetRegistry(
        db_path=settings.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        retry_attempts=settings.store.retry_attempts,
        retry_delay_seconds=settings.store.retry_delay_seconds,
    )
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()


@contextmanager
def _components(settings: Settings, registry: FleetRegistry) -> Iterator[FleetComponents]:
    components = build_components(settings, registry)
    try:
        yield components
    finally:
        components.close()


def _parse_payload(raw: str | None) -> dict[str, object]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"--payload is not valid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--payload must be a JSON object")
    return parsed


def _format_age(value: timedelta) -> str:
    seconds = max(0, int(value.total_seconds()))
    if seconds < 120:
        return f"{seconds}s"
    if seconds < 7200:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def _format_time(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _parse_time(raw: str | None, *, option: str) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError as error:
        raise ValueError(f"{option} is not an ISO 8601 timestamp: {raw!r}") from error
    return to_utc_aware_datetime(parsed)
