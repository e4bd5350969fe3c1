"""Tick source driving the heartbeat/recovery and scheduler loops."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from fleet_guard.engine.controller import RecoveryController
from fleet_guard.engine.event_log import EventLog
from fleet_guard.engine.models import EventKind, FleetEvent, SubjectType
from fleet_guard.engine.monitor import HeartbeatMonitor
from fleet_guard.engine.registry import FleetRegistry
from fleet_guard.engine.scheduler import TaskScheduler
from fleet_guard.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunnerSummary:
    cycles: int = 0
    paused_cycles: int = 0
    heartbeat_checks: int = 0
    crashed: int = 0
    restarts_requested: int = 0
    restarts_failed: int = 0
    circuits_opened: int = 0
    scheduler_ticks: int = 0
    dispatched: int = 0
    deferred: int = 0
    delivered: int = 0
    dispatches_failed: int = 0
    errors: int = 0


class FleetRunner:
    """Runs both control loops on independent intervals until stopped.

    Neither loop waits on the other; a failing cycle is logged and counted and
    the loop carries on. While the system is paused both loops are skipped.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: FleetRegistry,
        monitor: HeartbeatMonitor,
        controller: RecoveryController,
        scheduler: TaskScheduler,
        heartbeat_interval_seconds: float = 120.0,
        scheduler_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.monitor = monitor
        self.controller = controller
        self.scheduler = scheduler
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.scheduler_interval_seconds = scheduler_interval_seconds
        self.clock = clock
        self._stop_requested = False

    def run_once(self, now: datetime | None = None) -> RunnerSummary:
        """One heartbeat/recovery pass followed by one scheduler tick."""

        now = now or self.clock()
        summary = RunnerSummary(cycles=1)
        if self._paused(summary):
            return summary
        self._heartbeat_cycle(now, summary)
        self._scheduler_cycle(now, summary)
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> RunnerSummary:
        """Loop until SIGINT/SIGTERM or `max_cycles` wake-ups that ran at least one loop."""

        aggregate = RunnerSummary()
        next_heartbeat = next_schedule = time.monotonic()
        with self._signal_handlers():
            while not self._stop_requested:
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                current = time.monotonic()
                heartbeat_due = current >= next_heartbeat
                schedule_due = current >= next_schedule
                if heartbeat_due or schedule_due:
                    aggregate.cycles += 1
                    if not self._paused(aggregate):
                        now = self.clock()
                        if heartbeat_due:
                            self._heartbeat_cycle(now, aggregate)
                        if schedule_due:
                            self._scheduler_cycle(now, aggregate)
                    if heartbeat_due:
                        next_heartbeat = current + self.heartbeat_interval_seconds
                    if schedule_due:
                        next_schedule = current + self.scheduler_interval_seconds
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._sleep_with_stop(min(next_heartbeat, next_schedule) - time.monotonic())
        if self._stop_requested:
            logger.info("Fleet runner stopped after %d cycles", aggregate.cycles)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _paused(self, summary: RunnerSummary) -> bool:
        try:
            paused = self.registry.is_paused()
        except Exception:
            summary.errors += 1
            logger.exception("Could not read pause state; skipping cycle")
            return True
        if paused:
            summary.paused_cycles += 1
            logger.info("System paused; control loops skipped")
        return paused

    def _heartbeat_cycle(self, now: datetime, summary: RunnerSummary) -> None:
        try:
            check = self.monitor.check_heartbeats(now)
            recovery = self.controller.run_tick(now=now)
        except Exception:
            summary.errors += 1
            logger.exception("Heartbeat/recovery cycle failed")
            return
        summary.heartbeat_checks += 1
        summary.crashed += check.crashed
        summary.restarts_requested += check.restarts_requested + recovery.restarts_requested
        summary.restarts_failed += recovery.restarts_failed
        summary.circuits_opened += recovery.circuits_opened
        summary.errors += check.errors + recovery.errors

    def _scheduler_cycle(self, now: datetime, summary: RunnerSummary) -> None:
        try:
            tick = self.scheduler.tick(now)
        except Exception:
            summary.errors += 1
            logger.exception("Scheduler tick failed")
            return
        summary.scheduler_ticks += 1
        summary.dispatched += tick.dispatched
        summary.deferred += tick.deferred
        summary.delivered += tick.delivered
        summary.dispatches_failed += tick.failed
        summary.errors += tick.errors

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after current cycle", name)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def set_system_paused(
    registry: FleetRegistry,
    event_log: EventLog,
    *,
    paused: bool,
    now: datetime | None = None,
) -> bool:
    """Flip the kill switch; returns False when it was already in the requested state."""

    now = now or utc_now()
    if not registry.set_paused(paused, now=now):
        return False
    event_log.append(
        FleetEvent(
            subject_type=SubjectType.SYSTEM,
            subject_id=None,
            kind=EventKind.SYSTEM_PAUSED if paused else EventKind.SYSTEM_RESUMED,
            created_at=now,
        ),
    )
    logger.warning("Fleet control loops %s", "paused" if paused else "resumed")
    return True
