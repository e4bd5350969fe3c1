from __future__ import annotations

import json
from datetime import timedelta

import allure
import httpx
import pytest
from conftest import NOW, RecordingExecutor, register

from fleet_guard.engine.handlers import (
    DeliveryError,
    DispatchRequest,
    HandlerExecutor,
    HttpTaskExecutor,
)
from fleet_guard.engine.models import (
    AgentCreate,
    AgentStatus,
    DispatchOutcome,
    DispatchSource,
    EventKind,
    ScheduleTemplateCreate,
    TargetSelector,
)
from fleet_guard.engine.registry import TemplateNotFoundError
from fleet_guard.engine.scheduler import (
    DEFAULT_SCHEDULES,
    TaskScheduler,
    ensure_default_schedules,
    select_agent,
    upcoming_runs,
)

pytestmark = [
    allure.epic("Task Scheduling"),
    allure.feature("Template Dispatch"),
]


def _create(registry, name: str = "sweep", trigger_spec: str = "@every 10m", **overrides):
    return registry.create_template(
        ScheduleTemplateCreate(name=name, trigger_spec=trigger_spec, **overrides),
        now=NOW - timedelta(minutes=15),
    )


def _scheduler(registry, event_log, executor, **kwargs) -> TaskScheduler:
    return TaskScheduler(registry=registry, event_log=event_log, executor=executor, **kwargs)


def _event_kinds(event_log, subject_id: str) -> list[str]:
    return [event.kind for event in event_log.list_events(subject_id=subject_id, limit=100)]


def test_due_template_dispatches_once_per_window(registry, event_log) -> None:
    alpha = register(registry, "alpha")
    template = _create(registry)
    executor = RecordingExecutor()
    scheduler = _scheduler(registry, event_log, executor)

    first = scheduler.tick(NOW + timedelta(minutes=1))
    again = scheduler.tick(NOW + timedelta(minutes=2))

    assert first.dispatched == 1
    assert first.delivered == 1
    assert again.due == 0
    assert again.dispatched == 0
    (dispatch,) = registry.list_dispatches(template_id=template.template_id)
    assert dispatch.agent_id == alpha.agent_id
    assert dispatch.window_start == NOW
    assert dispatch.outcome is DispatchOutcome.DELIVERED
    stored = registry.get_template(template.template_id)
    assert stored is not None
    assert stored.last_dispatched_at == NOW + timedelta(minutes=1)
    assert [request.agent.name for request in executor.deliveries] == ["alpha"]
    assert _event_kinds(event_log, template.template_id) == [
        "dispatch_delivered",
        "dispatch_created",
    ]


def test_least_recently_dispatched_agent_is_chosen(registry, event_log) -> None:
    register(registry, "alpha")
    register(registry, "bravo")
    register(registry, "charlie", role="indexer")
    _create(registry, target_selector=TargetSelector(role="worker"))
    executor = RecordingExecutor()
    scheduler = _scheduler(registry, event_log, executor)

    for minutes in (1, 11, 21):
        scheduler.tick(NOW + timedelta(minutes=minutes))

    assert [request.agent.name for request in executor.deliveries] == ["alpha", "bravo", "alpha"]


def test_select_agent_prefers_oldest_dispatch(registry) -> None:
    alpha = register(registry, "alpha")
    bravo = register(registry, "bravo")

    chosen = select_agent(
        [alpha, bravo],
        {alpha.agent_id: NOW - timedelta(minutes=5), bravo.agent_id: NOW - timedelta(minutes=30)},
    )

    assert chosen.agent_id == bravo.agent_id


def test_no_eligible_agent_defers_without_consuming_window(registry, event_log) -> None:
    alpha = register(registry, "alpha")
    registry.patch_agent(
        alpha.agent_id,
        {
            "status": AgentStatus.CRASHED,
            "consecutive_failures": 3,
            "circuit_open_until": NOW + timedelta(hours=1),
        },
    )
    register(registry, "bravo", status=AgentStatus.BUSY)
    register(registry, "charlie", status=AgentStatus.OFFLINE)
    template = _create(registry)
    executor = RecordingExecutor()
    scheduler = _scheduler(registry, event_log, executor)

    summary = scheduler.tick(NOW + timedelta(minutes=1))

    assert summary.deferred == 1
    assert summary.dispatched == 0
    assert executor.deliveries == []
    stored = registry.get_template(template.template_id)
    assert stored is not None
    assert stored.last_dispatched_at is None
    (deferred,) = event_log.list_events(kinds=[EventKind.DISPATCH_DEFERRED])
    assert deferred.subject_id == template.template_id
    assert deferred.detail["matching_agents"] == 3

    registry.patch_agent(
        alpha.agent_id,
        {"status": AgentStatus.ONLINE, "consecutive_failures": 0, "circuit_open_until": None},
    )
    retry = scheduler.tick(NOW + timedelta(minutes=2))

    assert retry.dispatched == 1
    assert executor.deliveries[0].agent.agent_id == alpha.agent_id
    assert executor.deliveries[0].dispatch.window_start == NOW


def test_open_circuit_agent_is_not_eligible_even_if_online(registry, event_log) -> None:
    alpha = register(registry, "alpha")
    bravo = register(registry, "bravo")
    registry.patch_agent(alpha.agent_id, {"circuit_open_until": NOW + timedelta(hours=1)})
    _create(registry)
    executor = RecordingExecutor()

    _scheduler(registry, event_log, executor).tick(NOW + timedelta(minutes=1))

    assert [request.agent.agent_id for request in executor.deliveries] == [bravo.agent_id]


def test_target_selector_names(registry, event_log) -> None:
    register(registry, "alpha")
    bravo = register(registry, "Bravo")
    _create(registry, target_selector=TargetSelector(names=("bravo",)))
    executor = RecordingExecutor()

    _scheduler(registry, event_log, executor).tick(NOW + timedelta(minutes=1))

    assert [request.agent.agent_id for request in executor.deliveries] == [bravo.agent_id]


def test_disabled_template_is_skipped(registry, event_log) -> None:
    register(registry, "alpha")
    template = _create(registry)
    registry.set_template_enabled(template.template_id, enabled=False)
    executor = RecordingExecutor()

    summary = _scheduler(registry, event_log, executor).tick(NOW + timedelta(minutes=1))

    assert summary.templates_checked == 0
    assert executor.deliveries == []


def test_failed_delivery_is_retried_then_marked_failed(registry, event_log) -> None:
    register(registry, "alpha")
    template = _create(registry)
    executor = RecordingExecutor(failures=5)
    scheduler = _scheduler(registry, event_log, executor, max_delivery_attempts=3)

    first = scheduler.tick(NOW + timedelta(minutes=1))
    second = scheduler.tick(NOW + timedelta(minutes=2))
    third = scheduler.tick(NOW + timedelta(minutes=3))
    fourth = scheduler.tick(NOW + timedelta(minutes=4))

    assert (first.dispatched, first.retries_scheduled) == (1, 1)
    assert (second.retried, second.retries_scheduled, second.dispatched) == (1, 1, 0)
    assert (third.retried, third.failed) == (1, 1)
    assert fourth.retried == 0
    assert [request.dispatch.attempt for request in executor.deliveries] == [1, 2, 3]
    (dispatch,) = registry.list_dispatches(template_id=template.template_id)
    assert dispatch.outcome is DispatchOutcome.FAILED
    assert dispatch.attempt == 3
    assert dispatch.error_summary == "agent endpoint unavailable"
    kinds = _event_kinds(event_log, template.template_id)
    assert kinds[0] == "dispatch_failed"
    assert kinds.count("dispatch_retry_scheduled") == 2


def test_retry_delivers_after_transient_failure(registry, event_log) -> None:
    register(registry, "alpha")
    template = _create(registry)
    executor = RecordingExecutor(failures=1)
    scheduler = _scheduler(registry, event_log, executor)

    scheduler.tick(NOW + timedelta(minutes=1))
    summary = scheduler.tick(NOW + timedelta(minutes=2))

    assert summary.delivered == 1
    (dispatch,) = registry.list_dispatches(template_id=template.template_id)
    assert dispatch.outcome is DispatchOutcome.DELIVERED
    assert dispatch.attempt == 2


def test_retry_to_crashed_agent_counts_as_failed_attempt(registry, event_log) -> None:
    alpha = register(registry, "alpha")
    _create(registry)
    executor = RecordingExecutor(failures=1)
    scheduler = _scheduler(registry, event_log, executor, max_delivery_attempts=2)

    scheduler.tick(NOW + timedelta(minutes=1))
    registry.patch_agent(alpha.agent_id, {"status": AgentStatus.CRASHED})
    summary = scheduler.tick(NOW + timedelta(minutes=2))

    assert summary.failed == 1
    assert len(executor.deliveries) == 1
    (dispatch,) = registry.list_dispatches()
    assert dispatch.outcome is DispatchOutcome.FAILED
    assert "not eligible" in (dispatch.error_summary or "")


def test_one_broken_template_does_not_block_others(registry, event_log, monkeypatch) -> None:
    register(registry, "alpha")
    broken = _create(registry, "a-broken")
    healthy = _create(registry, "b-healthy")
    original = registry.claim_template_window

    def _claim(*, template, **kwargs):
        if template.template_id == broken.template_id:
            raise RuntimeError("disk full")
        return original(template=template, **kwargs)

    monkeypatch.setattr(registry, "claim_template_window", _claim)
    executor = RecordingExecutor()
    summary = _scheduler(registry, event_log, executor).tick(NOW + timedelta(minutes=1))

    assert summary.errors == 1
    assert summary.dispatched == 1
    assert executor.deliveries[0].template.template_id == healthy.template_id


def test_cron_template_uses_cron_windows(registry, event_log) -> None:
    register(registry, "alpha")
    registry.create_template(
        ScheduleTemplateCreate(name="six-hourly", trigger_spec="0 */6 * * *"),
        now=NOW - timedelta(hours=7),
    )
    executor = RecordingExecutor()
    scheduler = _scheduler(registry, event_log, executor)

    scheduler.tick(NOW + timedelta(minutes=30))
    scheduler.tick(NOW + timedelta(hours=5))
    scheduler.tick(NOW + timedelta(hours=6, minutes=1))

    assert [request.dispatch.window_start for request in executor.deliveries] == [
        NOW,
        NOW + timedelta(hours=6),
    ]


def test_run_now_dispatches_without_consuming_the_window(registry, event_log) -> None:
    alpha = register(registry, "alpha")
    template = _create(registry)
    executor = RecordingExecutor()
    scheduler = _scheduler(registry, event_log, executor)

    manual = scheduler.run_now(template.template_id, now=NOW + timedelta(minutes=1))

    assert manual.source is DispatchSource.MANUAL
    assert manual.agent_id == alpha.agent_id
    assert manual.window_start == NOW + timedelta(minutes=1)
    assert manual.outcome is DispatchOutcome.DELIVERED
    assert registry.require_template(template.template_id).last_dispatched_at is None
    (created,) = event_log.list_events(kinds=[EventKind.DISPATCH_CREATED])
    assert created.detail["source"] == "manual"

    summary = scheduler.tick(NOW + timedelta(minutes=2))

    assert summary.dispatched == 1
    sources = [d.source for d in registry.list_dispatches(template_id=template.template_id)]
    assert sorted(source.value for source in sources) == ["manual", "schedule"]
    assert len(executor.deliveries) == 2


def test_run_now_refuses_when_nothing_can_run(registry, event_log) -> None:
    template = _create(registry)
    scheduler = _scheduler(registry, event_log, RecordingExecutor())

    with pytest.raises(ValueError, match="No eligible agent"):
        scheduler.run_now(template.template_id, now=NOW)

    register(registry, "alpha")
    registry.set_paused(True, now=NOW)
    with pytest.raises(ValueError, match="paused"):
        scheduler.run_now(template.template_id, now=NOW)

    registry.set_paused(False, now=NOW)
    registry.set_template_enabled(template.template_id, enabled=False)
    with pytest.raises(ValueError, match="disabled"):
        scheduler.run_now(template.template_id, now=NOW)
    with pytest.raises(TemplateNotFoundError):
        scheduler.run_now("missing", now=NOW)

    assert registry.list_dispatches() == []
    assert event_log.list_events(kinds=[EventKind.DISPATCH_CREATED]) == []


def test_upcoming_runs_are_sorted_and_flag_overdue_windows(registry) -> None:
    templates = [("ten", "@every 10m"), ("hourly", "0 * * * *"), ("five", "@every 5m")]
    for name, trigger_spec in templates:
        registry.create_template(
            ScheduleTemplateCreate(name=name, trigger_spec=trigger_spec),
            now=NOW,
        )
    _create(registry, "late")
    off = _create(registry, "off")
    registry.set_template_enabled(off.template_id, enabled=False)

    runs = upcoming_runs(registry, now=NOW + timedelta(minutes=1))

    assert [(run.template.name, run.next_run, run.overdue) for run in runs] == [
        ("late", NOW, True),
        ("five", NOW + timedelta(minutes=5), False),
        ("ten", NOW + timedelta(minutes=10), False),
        ("hourly", NOW + timedelta(hours=1), False),
    ]
    assert [run.template.name for run in upcoming_runs(registry, now=NOW, limit=2)] == [
        "late",
        "five",
    ]


def test_default_schedules_are_created_once(registry) -> None:
    created = ensure_default_schedules(registry, now=NOW)
    again = ensure_default_schedules(registry, now=NOW)

    assert [template.name for template in created] == [item.name for item in DEFAULT_SCHEDULES]
    assert again == []
    health = registry.get_template_by_name("fleet-health-check")
    assert health is not None
    assert health.handler == "health_check"
    assert health.trigger_spec == "0 */6 * * *"
    assert health.created_by == "system"


def test_health_check_handler_reports_unhealthy_agents(registry, event_log) -> None:
    register(registry, "alpha")
    stale = register(registry, "bravo", status=AgentStatus.IDLE, heartbeat_age=timedelta(hours=1))
    crashed = register(registry, "charlie", heartbeat_age=timedelta(hours=2))
    registry.patch_agent(
        crashed.agent_id,
        {"status": AgentStatus.CRASHED, "circuit_open_until": NOW + timedelta(hours=1)},
    )
    registry.create_template(
        ScheduleTemplateCreate(
            name="health",
            trigger_spec="@every 1h",
            handler="health_check",
            payload={"stale_after_seconds": 1800},
        ),
        now=NOW - timedelta(hours=2),
    )
    executor = HandlerExecutor(registry=registry, event_log=event_log)

    summary = _scheduler(registry, event_log, executor).tick(NOW + timedelta(minutes=5))

    assert summary.delivered == 1
    (report,) = event_log.list_events(kinds=[EventKind.FLEET_HEALTH_REPORT])
    assert report.detail["total_agents"] == 3
    unhealthy = {item["agent_id"]: item["reasons"] for item in report.detail["unhealthy_agents"]}
    assert unhealthy == {
        stale.agent_id: ["heartbeat_stale"],
        crashed.agent_id: ["crashed", "circuit_open", "heartbeat_stale"],
    }


def test_handler_executor_rejects_unknown_handler(registry, event_log) -> None:
    agent = register(registry, "alpha")
    template = _create(registry, handler="does-not-exist")
    dispatch = registry.claim_template_window(
        template=template,
        agent_id=agent.agent_id,
        window_start=NOW,
        now=NOW,
        lease=timedelta(minutes=5),
    )
    assert dispatch is not None
    executor = HandlerExecutor(registry=registry, event_log=event_log)

    with pytest.raises(DeliveryError, match="Unknown dispatch handler"):
        executor.deliver(DispatchRequest(dispatch, template, agent), now=NOW)


def test_http_executor_posts_dispatch_to_agent_endpoint(registry) -> None:
    agent = registry.register_agent(
        AgentCreate(name="alpha", role="worker", endpoint_url="http://alpha.local/tasks"),
        now=NOW,
    )
    template = _create(registry, payload={"action": "sync"})
    dispatch = registry.claim_template_window(
        template=template,
        agent_id=agent.agent_id,
        window_start=NOW,
        now=NOW,
        lease=timedelta(minutes=5),
    )
    assert dispatch is not None
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "alpha.local":
            return httpx.Response(202)
        return httpx.Response(503)

    executor = HttpTaskExecutor(
        delivery_url="http://fallback.local/tasks",
        transport=httpx.MockTransport(handler),
    )
    request = DispatchRequest(dispatch, template, agent)
    executor.deliver(request, now=NOW)

    agent.endpoint_url = None
    with pytest.raises(DeliveryError, match="HTTP 503"):
        executor.deliver(request, now=NOW)
    executor.close()

    assert str(seen[0].url) == "http://alpha.local/tasks"
    body = json.loads(seen[0].content)
    assert body["dispatch_id"] == dispatch.dispatch_id
    assert body["payload"] == {"action": "sync"}
    assert body["sent_at"] == NOW.isoformat()
    assert str(seen[1].url) == "http://fallback.local/tasks"
