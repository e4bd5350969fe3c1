"""Trigger expressions and their dispatch windows.

Two forms are supported:

* interval: `@every 10m` (units `s`, `m`, `h`, `d`), windows aligned to the Unix epoch;
* cron: any expression croniter accepts, e.g. `0 */6 * * *`, evaluated in UTC.

A template is due when the start of the window containing `now` is later than
its watermark, so each window fires at most once.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from croniter import croniter  # type: ignore[import-untyped]

_INTERVAL_PATTERN = re.compile(r"^@every\s+(\d+)\s*([smhd])$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


class Trigger(Protocol):
    def window_start(self, now: datetime) -> datetime:
        """Start of the trigger window containing `now`."""
        raise NotImplementedError

    def next_run(self, now: datetime) -> datetime:
        """Start of the first window strictly after `now`."""
        raise NotImplementedError


@dataclass(slots=True, frozen=True)
class IntervalTrigger:
    period: timedelta

    def window_start(self, now: datetime) -> datetime:
        period_seconds = int(self.period.total_seconds())
        stamp = math.floor(now.timestamp())
        return datetime.fromtimestamp(stamp - stamp % period_seconds, tz=UTC)

    def next_run(self, now: datetime) -> datetime:
        return self.window_start(now) + self.period


@dataclass(slots=True, frozen=True)
class CronTrigger:
    expression: str

    def window_start(self, now: datetime) -> datetime:
        now = now.astimezone(UTC)
        previous = croniter(self.expression, now).get_prev(datetime)
        following = croniter(self.expression, previous).get_next(datetime)
        # get_prev is strict, so a boundary equal to `now` shows up as `following`
        start = following if following <= now else previous
        return start.astimezone(UTC)

    def next_run(self, now: datetime) -> datetime:
        return croniter(self.expression, now.astimezone(UTC)).get_next(datetime).astimezone(UTC)


def parse_trigger(spec: str) -> IntervalTrigger | CronTrigger:
    """Parse a trigger expression, raising ValueError when it is not usable."""

    text = spec.strip()
    if not text:
        raise ValueError("Trigger expression is empty")

    if text.lower().startswith("@every"):
        match = _INTERVAL_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid interval trigger {spec!r}; expected '@every <n><s|m|h|d>'")
        amount = int(match.group(1))
        if amount <= 0:
            raise ValueError(f"Interval trigger must be positive: {spec!r}")
        return IntervalTrigger(period=timedelta(seconds=amount * _UNIT_SECONDS[match.group(2).lower()]))

    if not croniter.is_valid(text):
        raise ValueError(f"Invalid cron expression: {spec!r}")
    return CronTrigger(expression=text)


def is_due(trigger: Trigger, *, now: datetime, watermark: datetime) -> tuple[bool, datetime]:
    """Return whether the current window has not been dispatched yet, and its start."""

    start = trigger.window_start(now)
    return start > watermark, start
