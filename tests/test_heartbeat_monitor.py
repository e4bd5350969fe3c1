from __future__ import annotations

from datetime import timedelta

import allure
from conftest import NOW, register

from fleet_guard.engine.models import AgentStatus, EventKind
from fleet_guard.engine.monitor import HeartbeatMonitor

pytestmark = [
    allure.epic("Fleet Recovery"),
    allure.feature("Heartbeat Monitor"),
]


def test_stale_agent_is_marked_crashed_once(registry, event_log, policy) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)
    stale = register(registry, "alpha", heartbeat_age=timedelta(minutes=31))
    fresh = register(registry, "bravo", heartbeat_age=timedelta(minutes=5))

    first = monitor.check_heartbeats(NOW)
    second = monitor.check_heartbeats(NOW + timedelta(minutes=2))

    assert first.crashed == 1
    assert first.crashed_agent_ids == [stale.agent_id]
    assert second.scanned == 0
    assert second.crashed == 0
    assert registry.require_agent(stale.agent_id).status is AgentStatus.CRASHED
    assert registry.require_agent(fresh.agent_id).status is AgentStatus.ONLINE

    events = event_log.list_events(kinds=[EventKind.CRASH_DETECTED])
    assert len(events) == 1
    assert events[0].subject_id == stale.agent_id
    assert events[0].detail["previous_status"] == "online"
    assert events[0].detail["stale_seconds"] == 31 * 60


def test_monitor_without_controller_only_observes(registry, event_log, policy) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)
    agent = register(registry, "alpha", heartbeat_age=timedelta(hours=3))

    summary = monitor.check_heartbeats(NOW)

    stored = registry.require_agent(agent.agent_id)
    assert summary.handed_off == 0
    assert stored.restart_pending is False
    assert stored.last_restart_attempt_at is None
    assert stored.consecutive_failures == 0


def test_heartbeat_exactly_at_timeout_is_not_stale(registry, event_log, policy) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)
    register(registry, "alpha", heartbeat_age=timedelta(minutes=30))

    summary = monitor.check_heartbeats(NOW)

    assert summary.scanned == 0
    assert summary.crashed == 0


def test_offline_and_busy_agents(registry, event_log, policy) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)
    offline = register(
        registry,
        "alpha",
        status=AgentStatus.OFFLINE,
        heartbeat_age=timedelta(days=2),
    )
    busy = register(registry, "bravo", status=AgentStatus.BUSY, heartbeat_age=timedelta(hours=1))

    summary = monitor.check_heartbeats(NOW)

    assert summary.crashed_agent_ids == [busy.agent_id]
    assert registry.require_agent(offline.agent_id).status is AgentStatus.OFFLINE


def test_empty_registry_emits_nothing(registry, event_log, policy) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)

    summary = monitor.check_heartbeats(NOW)

    assert summary.scanned == 0
    assert event_log.list_events() == []


def test_heartbeat_written_between_scan_and_update_wins(
    registry,
    event_log,
    policy,
    monkeypatch,
) -> None:
    monitor = HeartbeatMonitor(registry=registry, event_log=event_log, policy=policy)
    agent = register(registry, "alpha", heartbeat_age=timedelta(minutes=40))
    original = registry.list_agents

    def _list_then_heartbeat(agent_filter=None):
        agents = original(agent_filter)
        registry.record_heartbeat(agent.agent_id, now=NOW)
        return agents

    monkeypatch.setattr(registry, "list_agents", _list_then_heartbeat)
    summary = monitor.check_heartbeats(NOW)

    assert summary.scanned == 1
    assert summary.crashed == 0
    assert registry.require_agent(agent.agent_id).status is AgentStatus.ONLINE
