"""Template-driven task scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from fleet_guard.engine.event_log import EventLog
from fleet_guard.engine.handlers import DispatchRequest, TaskExecutor
from fleet_guard.engine.models import (
    DISPATCHABLE_STATUSES,
    AgentView,
    DispatchOutcome,
    DispatchSource,
    EventKind,
    FleetEvent,
    ScheduleTemplateCreate,
    ScheduleTemplateView,
    SubjectType,
    TaskDispatchView,
)
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.engine.triggers import is_due, parse_trigger
from fleet_guard.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_LEASE = timedelta(minutes=5)
_NEVER = datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True)
class SchedulerTickSummary:
    templates_checked: int = 0
    due: int = 0
    dispatched: int = 0
    deferred: int = 0
    claim_conflicts: int = 0
    delivered: int = 0
    retried: int = 0
    retries_scheduled: int = 0
    failed: int = 0
    errors: int = 0


def is_eligible(agent: AgentView, template: ScheduleTemplateView, now: datetime) -> bool:
    return (
        agent.status in DISPATCHABLE_STATUSES
        and not agent.circuit_open(now)
        and template.target_selector.matches(agent)
    )


def select_agent(
    eligible: list[AgentView],
    last_dispatched: dict[str, datetime],
) -> AgentView:
    """Least recently dispatched-to agent; never-dispatched agents first, ties by name."""

    return min(
        eligible,
        key=lambda agent: (last_dispatched.get(agent.agent_id, _NEVER), agent.name),
    )


class TaskScheduler:
    """Dispatches due template windows to healthy agents, once per window."""

    def __init__(
        self,
        *,
        registry: FleetRegistry,
        event_log: EventLog,
        executor: TaskExecutor,
        max_delivery_attempts: int = 3,
        delivery_lease: timedelta = DEFAULT_DELIVERY_LEASE,
    ) -> None:
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be >= 1")
        self.registry = registry
        self.event_log = event_log
        self.executor = executor
        self.max_delivery_attempts = max_delivery_attempts
        self.delivery_lease = delivery_lease

    def tick(self, now: datetime | None = None) -> SchedulerTickSummary:
        now = now or utc_now()
        summary = SchedulerTickSummary()
        self._redeliver_pending(now=now, summary=summary)

        agents = self.registry.list_agents()
        last_dispatched = self.registry.last_dispatch_by_agent()
        for template in self.registry.list_templates(due_before=now):
            summary.templates_checked += 1
            try:
                self._process_template(
                    template,
                    agents=agents,
                    last_dispatched=last_dispatched,
                    now=now,
                    summary=summary,
                )
            except Exception:
                summary.errors += 1
                logger.exception("Scheduling failed for template %s", template.name)
        return summary

    def run_now(self, template_id: str, *, now: datetime | None = None) -> TaskDispatchView:
        """Dispatch a template immediately without consuming its trigger window.

        Raises `ValueError` when the system is paused, the template is disabled
        or no agent is eligible; nothing is recorded in those cases.
        """

        now = now or utc_now()
        template = self.registry.require_template(template_id)
        if self.registry.is_paused():
            raise ValueError("System is paused; resume it before running schedules")
        if not template.enabled:
            raise ValueError(f"Schedule {template.name} is disabled")
        eligible = [
            agent for agent in self.registry.list_agents() if is_eligible(agent, template, now)
        ]
        if not eligible:
            raise ValueError(f"No eligible agent for schedule {template.name}")

        agent = select_agent(eligible, self.registry.last_dispatch_by_agent())
        dispatch = self.registry.record_manual_dispatch(
            template=template,
            agent_id=agent.agent_id,
            now=now,
            lease=self.delivery_lease,
        )
        logger.info("Schedule %s run now on agent %s", template.name, agent.name)
        self._emit(
            EventKind.DISPATCH_CREATED,
            template,
            now,
            dispatch_id=dispatch.dispatch_id,
            agent_id=agent.agent_id,
            source=DispatchSource.MANUAL.value,
        )
        self._deliver(
            DispatchRequest(dispatch, template, agent),
            now=now,
            summary=SchedulerTickSummary(),
        )
        return self.registry.get_dispatch(dispatch.dispatch_id) or dispatch

    def _process_template(
        self,
        template: ScheduleTemplateView,
        *,
        agents: list[AgentView],
        last_dispatched: dict[str, datetime],
        now: datetime,
        summary: SchedulerTickSummary,
    ) -> None:
        due, window_start = is_due(
            parse_trigger(template.trigger_spec),
            now=now,
            watermark=template.watermark,
        )
        if not due:
            return
        summary.due += 1

        eligible = [agent for agent in agents if is_eligible(agent, template, now)]
        if not eligible:
            summary.deferred += 1
            logger.info("Template %s deferred: no eligible agent", template.name)
            self._emit(
                EventKind.DISPATCH_DEFERRED,
                template,
                now,
                window_start=window_start.isoformat(),
                reason="no eligible agent",
                matching_agents=sum(1 for a in agents if template.target_selector.matches(a)),
            )
            return

        agent = select_agent(eligible, last_dispatched)
        dispatch = self.registry.claim_template_window(
            template=template,
            agent_id=agent.agent_id,
            window_start=window_start,
            now=now,
            lease=self.delivery_lease,
        )
        if dispatch is None:
            summary.claim_conflicts += 1
            logger.info(
                "Template %s window %s already claimed",
                template.name,
                window_start.isoformat(),
            )
            return

        last_dispatched[agent.agent_id] = now
        summary.dispatched += 1
        self._emit(
            EventKind.DISPATCH_CREATED,
            template,
            now,
            dispatch_id=dispatch.dispatch_id,
            agent_id=agent.agent_id,
            window_start=window_start.isoformat(),
        )
        self._deliver(DispatchRequest(dispatch, template, agent), now=now, summary=summary)

    def _redeliver_pending(self, *, now: datetime, summary: SchedulerTickSummary) -> None:
        for dispatch in self.registry.list_dispatches_for_retry(now=now):
            try:
                template = self.registry.get_template(dispatch.template_id)
                agent = self.registry.require_agent(dispatch.agent_id)
                if template is None:
                    continue
                claimed = self.registry.claim_dispatch_retry(
                    dispatch,
                    now=now,
                    lease=self.delivery_lease,
                )
                if claimed is None:
                    continue
                summary.retried += 1
                request = DispatchRequest(claimed, template, agent)
                if not is_eligible(agent, template, now):
                    self._delivery_failed(
                        request,
                        f"agent {agent.name} is not eligible (status={agent.status.value})",
                        now=now,
                        summary=summary,
                    )
                    continue
                self._deliver(request, now=now, summary=summary)
            except Exception:
                summary.errors += 1
                logger.exception("Redelivery failed for dispatch %s", dispatch.dispatch_id)

    def _deliver(
        self,
        request: DispatchRequest,
        *,
        now: datetime,
        summary: SchedulerTickSummary,
    ) -> None:
        try:
            self.executor.deliver(request, now=now)
        except Exception as error:  # noqa: BLE001
            self._delivery_failed(request, str(error) or type(error).__name__, now=now, summary=summary)
            return

        if self.registry.finish_dispatch(
            request.dispatch.dispatch_id,
            outcome=DispatchOutcome.DELIVERED,
            now=now,
        ):
            summary.delivered += 1
            self._emit(
                EventKind.DISPATCH_DELIVERED,
                request.template,
                now,
                dispatch_id=request.dispatch.dispatch_id,
                agent_id=request.agent.agent_id,
                attempt=request.dispatch.attempt,
            )

    def _delivery_failed(
        self,
        request: DispatchRequest,
        error_summary: str,
        *,
        now: datetime,
        summary: SchedulerTickSummary,
    ) -> None:
        dispatch = request.dispatch
        if dispatch.attempt >= self.max_delivery_attempts:
            if self.registry.finish_dispatch(
                dispatch.dispatch_id,
                outcome=DispatchOutcome.FAILED,
                now=now,
                error_summary=error_summary,
            ):
                summary.failed += 1
                logger.error(
                    "Dispatch %s of template %s failed after %d attempts: %s",
                    dispatch.dispatch_id,
                    request.template.name,
                    dispatch.attempt,
                    error_summary,
                )
                self._emit(
                    EventKind.DISPATCH_FAILED,
                    request.template,
                    now,
                    dispatch_id=dispatch.dispatch_id,
                    agent_id=request.agent.agent_id,
                    attempt=dispatch.attempt,
                    error=error_summary,
                )
            return

        if self.registry.schedule_dispatch_retry(
            dispatch.dispatch_id,
            next_attempt_at=now,
            error_summary=error_summary,
        ):
            summary.retries_scheduled += 1
            logger.warning(
                "Dispatch %s attempt %d failed, retrying next tick: %s",
                dispatch.dispatch_id,
                dispatch.attempt,
                error_summary,
            )
            self._emit(
                EventKind.DISPATCH_RETRY_SCHEDULED,
                request.template,
                now,
                dispatch_id=dispatch.dispatch_id,
                agent_id=request.agent.agent_id,
                attempt=dispatch.attempt,
                error=error_summary,
            )

    def _emit(
        self,
        kind: EventKind,
        template: ScheduleTemplateView,
        now: datetime,
        **detail: Any,
    ) -> None:
        self.event_log.append(
            FleetEvent(
                subject_type=SubjectType.TEMPLATE,
                subject_id=template.template_id,
                kind=kind,
                created_at=now,
                detail={"template_name": template.name, **detail},
            ),
        )


DEFAULT_SCHEDULES: tuple[ScheduleTemplateCreate, ...] = (
    ScheduleTemplateCreate(
        name="fleet-health-check",
        description="Report crashed, stopped and circuit-broken agents every 6 hours",
        trigger_spec="0 */6 * * *",
        handler="health_check",
        payload={"stale_after_seconds": 1800},
        created_by="system",
    ),
)


def ensure_default_schedules(
    registry: FleetRegistry,
    *,
    now: datetime | None = None,
) -> list[ScheduleTemplateView]:
    """Create the built-in templates that do not exist yet; returns the ones created."""

    created: list[ScheduleTemplateView] = []
    for default in DEFAULT_SCHEDULES:
        if registry.get_template_by_name(default.name) is not None:
            continue
        try:
            created.append(registry.create_template(default, now=now))
        except ValueError:
            logger.info("Default schedule %s was created concurrently", default.name)
    return created


@dataclass(slots=True)
class UpcomingRun:
    template: ScheduleTemplateView
    next_run: datetime
    overdue: bool


def upcoming_runs(
    registry: FleetRegistry,
    *,
    now: datetime | None = None,
    limit: int = 10,
) -> list[UpcomingRun]:
    """Next firing of every enabled template, soonest first.

    A template whose current window has not been dispatched yet (for example
    deferred for lack of agents) is reported as overdue at that window start.
    """

    now = now or utc_now()
    runs: list[UpcomingRun] = []
    for template in registry.list_templates(enabled_only=True):
        try:
            trigger = parse_trigger(template.trigger_spec)
        except ValueError:
            logger.warning(
                "Template %s has an unusable trigger %r",
                template.name,
                template.trigger_spec,
            )
            continue
        due, window_start = is_due(trigger, now=now, watermark=template.watermark)
        runs.append(
            UpcomingRun(
                template=template,
                next_run=window_start if due else trigger.next_run(now),
                overdue=due,
            ),
        )
    runs.sort(key=lambda run: (run.next_run, run.template.name))
    return runs[:limit]
