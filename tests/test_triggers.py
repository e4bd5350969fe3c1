from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from conftest import NOW

from fleet_guard.engine.triggers import CronTrigger, IntervalTrigger, is_due, parse_trigger

pytestmark = [
    allure.epic("Task Scheduling"),
    allure.feature("Triggers"),
]


@pytest.mark.parametrize(
    ("spec", "period"),
    [
        ("@every 10m", timedelta(minutes=10)),
        ("@every 30s", timedelta(seconds=30)),
        ("@EVERY 2H", timedelta(hours=2)),
        ("  @every 1d ", timedelta(days=1)),
    ],
)
def test_parse_interval_triggers(spec: str, period: timedelta) -> None:
    assert parse_trigger(spec) == IntervalTrigger(period=period)


def test_parse_cron_trigger() -> None:
    assert parse_trigger("0 */6 * * *") == CronTrigger(expression="0 */6 * * *")


@pytest.mark.parametrize(
    "spec",
    ["", "   ", "@every", "@every 0m", "@every 5w", "@every ten minutes", "61 * * * *", "daily"],
)
def test_parse_trigger_rejects_invalid_expressions(spec: str) -> None:
    with pytest.raises(ValueError):
        parse_trigger(spec)


def test_interval_windows_are_epoch_aligned() -> None:
    trigger = IntervalTrigger(period=timedelta(minutes=10))

    assert trigger.window_start(NOW) == NOW
    assert trigger.window_start(NOW + timedelta(minutes=7, seconds=59)) == NOW
    assert trigger.window_start(NOW + timedelta(minutes=10)) == NOW + timedelta(minutes=10)


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        (datetime(2026, 3, 2, 12, 0, tzinfo=UTC), datetime(2026, 3, 2, 12, 0, tzinfo=UTC)),
        (datetime(2026, 3, 2, 13, 30, tzinfo=UTC), datetime(2026, 3, 2, 12, 0, tzinfo=UTC)),
        (datetime(2026, 3, 2, 11, 59, 59, tzinfo=UTC), datetime(2026, 3, 2, 6, 0, tzinfo=UTC)),
        (datetime(2026, 3, 3, 0, 0, 1, tzinfo=UTC), datetime(2026, 3, 3, 0, 0, tzinfo=UTC)),
    ],
)
def test_cron_window_start(now: datetime, expected: datetime) -> None:
    assert CronTrigger(expression="0 */6 * * *").window_start(now) == expected


def test_interval_next_run_is_strictly_after_now() -> None:
    trigger = IntervalTrigger(period=timedelta(minutes=10))

    assert trigger.next_run(NOW) == NOW + timedelta(minutes=10)
    assert trigger.next_run(NOW + timedelta(minutes=9, seconds=59)) == NOW + timedelta(minutes=10)


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        (datetime(2026, 3, 2, 12, 0, tzinfo=UTC), datetime(2026, 3, 2, 18, 0, tzinfo=UTC)),
        (datetime(2026, 3, 2, 11, 59, 59, tzinfo=UTC), datetime(2026, 3, 2, 12, 0, tzinfo=UTC)),
        (datetime(2026, 3, 2, 23, 0, tzinfo=UTC), datetime(2026, 3, 3, 0, 0, tzinfo=UTC)),
    ],
)
def test_cron_next_run(now: datetime, expected: datetime) -> None:
    assert CronTrigger(expression="0 */6 * * *").next_run(now) == expected


def test_is_due_fires_once_per_window() -> None:
    trigger = IntervalTrigger(period=timedelta(minutes=10))
    created_at = NOW - timedelta(minutes=15)

    due, window = is_due(trigger, now=NOW + timedelta(minutes=1), watermark=created_at)
    assert due is True
    assert window == NOW

    due, _ = is_due(
        trigger,
        now=NOW + timedelta(minutes=5),
        watermark=NOW + timedelta(minutes=1),
    )
    assert due is False

    due, window = is_due(
        trigger,
        now=NOW + timedelta(minutes=12),
        watermark=NOW + timedelta(minutes=1),
    )
    assert due is True
    assert window == NOW + timedelta(minutes=10)


def test_new_template_does_not_fire_for_its_creation_window() -> None:
    trigger = IntervalTrigger(period=timedelta(minutes=10))

    due, _ = is_due(trigger, now=NOW + timedelta(minutes=3), watermark=NOW + timedelta(minutes=2))

    assert due is False
