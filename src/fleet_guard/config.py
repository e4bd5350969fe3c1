"""Runtime configuration for the recovery and scheduling engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

DEFAULT_BACKOFF_LEVELS_MS: tuple[int, ...] = (60_000, 300_000, 900_000)


@dataclass(slots=True)
class RecoverySettings:
    """Crash detection, restart backoff and circuit-breaker thresholds."""

    heartbeat_timeout_ms: int = 1_800_000
    backoff_levels_ms: tuple[int, ...] = DEFAULT_BACKOFF_LEVELS_MS
    max_consecutive_failures: int = 3
    recovery_window_ms: int = 3_600_000
    restart_grace_ms: int = 120_000

    @property
    def heartbeat_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.heartbeat_timeout_ms)

    @property
    def backoff_levels(self) -> tuple[timedelta, ...]:
        return tuple(timedelta(milliseconds=value) for value in self.backoff_levels_ms)

    @property
    def recovery_window(self) -> timedelta:
        return timedelta(milliseconds=self.recovery_window_ms)

    @property
    def restart_grace(self) -> timedelta:
        return timedelta(milliseconds=self.restart_grace_ms)


@dataclass(slots=True)
class LoopSettings:
    """Tick intervals of the independent control loops."""

    heartbeat_check_interval_seconds: float = 120.0
    scheduler_tick_interval_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerSettings:
    """Dispatch delivery policy."""

    max_delivery_attempts: int = 3
    delivery_url: str | None = None
    delivery_timeout_seconds: float = 30.0


@dataclass(slots=True)
class SupervisorSettings:
    """How restart requests reach the process supervisor."""

    command_template: str = "pm2 restart {agent_name}"
    url: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class StoreSettings:
    """SQLite policy and transient-error retry at the call site."""

    busy_timeout_ms: int = 5_000
    retry_attempts: int = 3
    retry_delay_seconds: float = 0.2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".fleet_guard.db")
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    loops: LoopSettings = field(default_factory=LoopSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with documented defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("FLEET_GUARD_DB_PATH", ".fleet_guard.db")),
            recovery=RecoverySettings(
                heartbeat_timeout_ms=_env_int("FLEET_GUARD_HEARTBEAT_TIMEOUT_MS", 1_800_000),
                backoff_levels_ms=_env_int_list(
                    "FLEET_GUARD_BACKOFF_LEVELS_MS",
                    DEFAULT_BACKOFF_LEVELS_MS,
                ),
                max_consecutive_failures=_env_int("FLEET_GUARD_MAX_CONSECUTIVE_FAILURES", 3),
                recovery_window_ms=_env_int("FLEET_GUARD_RECOVERY_WINDOW_MS", 3_600_000),
                restart_grace_ms=_env_int("FLEET_GUARD_RESTART_GRACE_MS", 120_000),
            ),
            loops=LoopSettings(
                heartbeat_check_interval_seconds=float(
                    os.getenv("FLEET_GUARD_HEARTBEAT_CHECK_INTERVAL_SECONDS", "120"),
                ),
                scheduler_tick_interval_seconds=float(
                    os.getenv("FLEET_GUARD_SCHEDULER_TICK_INTERVAL_SECONDS", "60"),
                ),
            ),
            scheduler=SchedulerSettings(
                max_delivery_attempts=_env_int("FLEET_GUARD_MAX_DELIVERY_ATTEMPTS", 3),
                delivery_url=_env_optional("FLEET_GUARD_DELIVERY_URL"),
                delivery_timeout_seconds=float(
                    os.getenv("FLEET_GUARD_DELIVERY_TIMEOUT_SECONDS", "30"),
                ),
            ),
            supervisor=SupervisorSettings(
                command_template=os.getenv(
                    "FLEET_GUARD_SUPERVISOR_COMMAND",
                    "pm2 restart {agent_name}",
                ),
                url=_env_optional("FLEET_GUARD_SUPERVISOR_URL"),
                timeout_seconds=float(os.getenv("FLEET_GUARD_SUPERVISOR_TIMEOUT_SECONDS", "30")),
            ),
            store=StoreSettings(
                busy_timeout_ms=_env_int("FLEET_GUARD_STORE_BUSY_TIMEOUT_MS", 5_000),
                retry_attempts=_env_int("FLEET_GUARD_STORE_RETRY_ATTEMPTS", 3),
                retry_delay_seconds=float(
                    os.getenv("FLEET_GUARD_STORE_RETRY_DELAY_SECONDS", "0.2"),
                ),
            ),
            log_level=os.getenv("FLEET_GUARD_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def validate(self) -> None:
        """Raise configuration error if any threshold or interval is out of range."""

        recovery = self.recovery
        if recovery.heartbeat_timeout_ms <= 0:
            raise ValueError("FLEET_GUARD_HEARTBEAT_TIMEOUT_MS must be > 0.")
        if not recovery.backoff_levels_ms:
            raise ValueError("FLEET_GUARD_BACKOFF_LEVELS_MS must list at least one delay.")
        for level, delay in enumerate(recovery.backoff_levels_ms):
            if delay <= 0:
                raise ValueError(
                    f"FLEET_GUARD_BACKOFF_LEVELS_MS entries must be > 0 (level {level}: {delay}).",
                )
        if recovery.max_consecutive_failures < 1:
            raise ValueError("FLEET_GUARD_MAX_CONSECUTIVE_FAILURES must be >= 1.")
        if recovery.recovery_window_ms <= 0:
            raise ValueError("FLEET_GUARD_RECOVERY_WINDOW_MS must be > 0.")
        if recovery.restart_grace_ms <= 0:
            raise ValueError("FLEET_GUARD_RESTART_GRACE_MS must be > 0.")
        if self.loops.heartbeat_check_interval_seconds <= 0:
            raise ValueError("FLEET_GUARD_HEARTBEAT_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.loops.scheduler_tick_interval_seconds <= 0:
            raise ValueError("FLEET_GUARD_SCHEDULER_TICK_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_delivery_attempts < 1:
            raise ValueError("FLEET_GUARD_MAX_DELIVERY_ATTEMPTS must be >= 1.")
        if self.store.retry_attempts < 1:
            raise ValueError("FLEET_GUARD_STORE_RETRY_ATTEMPTS must be >= 1.")
        if self.store.retry_delay_seconds < 0:
            raise ValueError("FLEET_GUARD_STORE_RETRY_DELAY_SECONDS must be >= 0.")
        if self.supervisor.url is None and not self.supervisor.command_template.strip():
            raise ValueError(
                "Either FLEET_GUARD_SUPERVISOR_URL or FLEET_GUARD_SUPERVISOR_COMMAND is required.",
            )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_int_list(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default

    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {token!r}. Expected milliseconds.") from error
    return tuple(values)


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None
