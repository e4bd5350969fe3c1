from __future__ import annotations

from datetime import timedelta

import allure
from conftest import NOW, FakeSupervisor, RecordingExecutor, register

from fleet_guard.config import SchedulerSettings, Settings, SupervisorSettings
from fleet_guard.engine.controllers import build_components
from fleet_guard.engine.handlers import HttpTaskExecutor
from fleet_guard.engine.models import EventKind, ScheduleTemplateCreate
from fleet_guard.engine.runner import set_system_paused
from fleet_guard.engine.supervisor import HttpSupervisor

pytestmark = [
    allure.epic("Fleet Runtime"),
    allure.feature("Control Loops"),
]


def _components(registry, supervisor=None, executor=None):
    settings = Settings(db_path=registry.db_path)
    return build_components(
        settings,
        registry,
        supervisor=supervisor or FakeSupervisor(),
        executor=executor or RecordingExecutor(),
    )


def test_run_once_runs_recovery_and_scheduler(registry) -> None:
    supervisor = FakeSupervisor()
    executor = RecordingExecutor()
    components = _components(registry, supervisor, executor)
    stale = register(registry, "alpha", heartbeat_age=timedelta(minutes=31))
    register(registry, "bravo")
    registry.create_template(
        ScheduleTemplateCreate(name="sweep", trigger_spec="@every 10m"),
        now=NOW - timedelta(minutes=15),
    )

    summary = components.runner.run_once(NOW + timedelta(minutes=1))

    assert summary.cycles == 1
    assert summary.heartbeat_checks == 1
    assert summary.crashed == 1
    assert summary.restarts_requested == 1
    assert summary.scheduler_ticks == 1
    assert summary.dispatched == 1
    assert summary.delivered == 1
    assert summary.errors == 0
    assert supervisor.calls == [stale.agent_id]
    assert [request.agent.name for request in executor.deliveries] == ["bravo"]


def test_paused_system_skips_both_loops(registry) -> None:
    supervisor = FakeSupervisor()
    components = _components(registry, supervisor)
    register(registry, "alpha", heartbeat_age=timedelta(hours=1))
    assert set_system_paused(registry, components.event_log, paused=True, now=NOW)

    summary = components.runner.run_once(NOW)

    assert summary.paused_cycles == 1
    assert summary.heartbeat_checks == 0
    assert summary.scheduler_ticks == 0
    assert supervisor.calls == []

    assert set_system_paused(registry, components.event_log, paused=False, now=NOW)
    resumed = components.runner.run_once(NOW)
    assert resumed.crashed == 1


def test_pause_toggle_is_idempotent_and_logged(registry) -> None:
    components = _components(registry)

    assert set_system_paused(registry, components.event_log, paused=True, now=NOW) is True
    assert set_system_paused(registry, components.event_log, paused=True, now=NOW) is False
    assert set_system_paused(registry, components.event_log, paused=False, now=NOW) is True

    kinds = [event.kind for event in components.event_log.list_events()]
    assert kinds == [EventKind.SYSTEM_RESUMED.value, EventKind.SYSTEM_PAUSED.value]


def test_scheduler_failure_does_not_stop_heartbeat_loop(registry, monkeypatch) -> None:
    components = _components(registry)
    register(registry, "alpha", heartbeat_age=timedelta(hours=1))

    def _broken_tick(now=None):
        raise RuntimeError("scheduler exploded")

    monkeypatch.setattr(components.scheduler, "tick", _broken_tick)
    summary = components.runner.run_once(NOW)

    assert summary.heartbeat_checks == 1
    assert summary.crashed == 1
    assert summary.scheduler_ticks == 0
    assert summary.errors == 1


def test_run_loop_stops_after_max_cycles(registry) -> None:
    components = _components(registry)
    components.runner.clock = lambda: NOW
    register(registry, "alpha", heartbeat_age=timedelta(hours=1))

    summary = components.runner.run_loop(max_cycles=1)

    assert summary.cycles == 1
    assert summary.heartbeat_checks == 1
    assert summary.scheduler_ticks == 1
    assert summary.crashed == 1


def test_run_loop_honours_stop_request(registry) -> None:
    components = _components(registry)
    runner = components.runner
    runner.heartbeat_interval_seconds = 3600
    runner.scheduler_interval_seconds = 3600
    original_tick = components.scheduler.tick

    def _tick_then_stop(now=None):
        summary = original_tick(now)
        runner.request_stop()
        return summary

    components.scheduler.tick = _tick_then_stop  # type: ignore[method-assign]
    summary = runner.run_loop()

    assert summary.cycles == 1
    assert summary.scheduler_ticks == 1


def test_close_releases_http_clients_built_from_settings(registry) -> None:
    settings = Settings(
        db_path=registry.db_path,
        scheduler=SchedulerSettings(delivery_url="http://agents.local/dispatch"),
        supervisor=SupervisorSettings(url="http://supervisor.local"),
    )
    components = build_components(settings, registry)
    supervisor = components.controller.supervisor
    executor = components.scheduler.executor
    assert isinstance(supervisor, HttpSupervisor)
    assert isinstance(executor, HttpTaskExecutor)

    components.close()
    components.close()

    assert supervisor._client.is_closed
    assert executor._client.is_closed
    assert components.owned_clients == []


def test_close_leaves_injected_clients_open(registry) -> None:
    injected = HttpSupervisor(base_url="http://supervisor.local")
    components = build_components(
        Settings(db_path=registry.db_path),
        registry,
        supervisor=injected,
        executor=RecordingExecutor(),
    )

    components.close()

    assert components.owned_clients == []
    assert not injected._client.is_closed
    injected.close()
