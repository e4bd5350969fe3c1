"""Agent registry facade backed by SQLModel + SQLite."""

from __future__ import annotations

import functools
import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, ParamSpec, TypeVar
from uuid import uuid4

from sqlalchemy import case, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from fleet_guard.engine.models import (
    HEARTBEAT_REPORTABLE_STATUSES,
    AgentCreate,
    AgentFilter,
    AgentStatus,
    AgentView,
    DispatchOutcome,
    DispatchSource,
    ScheduleTemplateCreate,
    ScheduleTemplateView,
    TargetSelector,
    TaskDispatchView,
)
from fleet_guard.engine.triggers import parse_trigger
from fleet_guard.storage.alembic_runner import upgrade_head
from fleet_guard.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from fleet_guard.storage.sqlmodel_models import (
    AgentRow,
    FleetStateRow,
    ScheduleTemplateRow,
    TaskDispatchRow,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")
T = TypeVar("T")

PAUSED_STATE_KEY = "paused"
DEFAULT_UPDATE_CONFLICT_RETRIES = 5

_PATCHABLE_AGENT_FIELDS = frozenset(
    {
        "role",
        "status",
        "status_reason",
        "endpoint_url",
        "consecutive_failures",
        "restart_level",
        "restart_pending",
        "last_restart_attempt_at",
        "circuit_open_until",
    },
)
_PATCHABLE_TEMPLATE_FIELDS = frozenset(
    {"name", "description", "trigger_spec", "enabled", "payload", "target_selector"},
)


class RegistryConflictError(RuntimeError):
    """Row changed concurrently between read and conditional write."""


class TransientStoreError(RuntimeError):
    """Store stayed unavailable after the call-site retries."""


class AgentNotFoundError(LookupError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class TemplateNotFoundError(LookupError):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Schedule template not found: {template_id}")
        self.template_id = template_id


def _retry_transient(method: Callable[P, R]) -> Callable[P, R]:
    """Retry `OperationalError` (locked/busy database) with a fixed delay."""

    @functools.wraps(method)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        registry: FleetRegistry = args[0]  # type: ignore[assignment]
        attempt = 0
        while True:
            attempt += 1
            try:
                return method(*args, **kwargs)
            except OperationalError as error:
                if attempt >= registry.retry_attempts:
                    raise TransientStoreError(
                        f"{method.__name__} failed after {attempt} attempts: {error}",
                    ) from error
                logger.warning(
                    "Transient store error in %s (attempt %d/%d): %s",
                    method.__name__,
                    attempt,
                    registry.retry_attempts,
                    error,
                )
                time.sleep(registry.retry_delay_seconds)

    return wrapper


class FleetRegistry:
    """Durable agent, template and dispatch records.

    Every mutation is a single conditional UPDATE (compare-and-set on a row
    version or a watermark column), so overlapping control loops never need
    in-process locks.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
    ) -> None:
        self.db_path = db_path
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Agents

    @_retry_transient
    def register_agent(self, payload: AgentCreate, *, now: datetime | None = None) -> AgentView:
        """Provision an agent record; names are unique."""

        now = now or utc_now()
        if payload.status not in (*HEARTBEAT_REPORTABLE_STATUSES, AgentStatus.OFFLINE):
            raise ValueError(f"Agent cannot be registered with status={payload.status.value}")
        row = AgentRow(
            agent_id=payload.agent_id or str(uuid4()),
            name=payload.name,
            role=payload.role,
            status=payload.status.value,
            endpoint_url=payload.endpoint_url,
            last_heartbeat_at=to_db_datetime(payload.last_heartbeat_at or now),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(
                    f"Agent already registered (name={payload.name!r}, id={row.agent_id!r})",
                ) from error
            session.refresh(row)
            return _to_agent_view(row)

    @_retry_transient
    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(AgentRow, agent_id)
            return _to_agent_view(row) if row is not None else None

    def require_agent(self, agent_id: str) -> AgentView:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    @_retry_transient
    def list_agents(self, agent_filter: AgentFilter | None = None) -> list[AgentView]:
        """Filtered scan ordered by agent name."""

        agent_filter = agent_filter or AgentFilter()
        statement = select(AgentRow).order_by(col(AgentRow.name).asc())
        if agent_filter.statuses is not None:
            statement = statement.where(
                col(AgentRow.status).in_([status.value for status in agent_filter.statuses]),
            )
        if agent_filter.exclude_statuses:
            statement = statement.where(
                col(AgentRow.status).not_in(
                    [status.value for status in agent_filter.exclude_statuses],
                ),
            )
        if agent_filter.heartbeat_before is not None:
            statement = statement.where(
                col(AgentRow.last_heartbeat_at) < to_db_datetime(agent_filter.heartbeat_before),
            )
        if agent_filter.role is not None:
            statement = statement.where(AgentRow.role == agent_filter.role)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_agent_view(row) for row in rows]

    @_retry_transient
    def patch_agent(
        self,
        agent_id: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> AgentView:
        """Atomic partial update; with `expected_version` it is a compare-and-set."""

        unknown = set(fields) - _PATCHABLE_AGENT_FIELDS
        if unknown:
            raise ValueError(f"Agent fields are not patchable: {sorted(unknown)}")
        now = now or utc_now()
        values = {name: _to_db_value(value) for name, value in fields.items()}
        values["version"] = AgentRow.version + 1
        values["updated_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            statement = sa_update(AgentRow).where(col(AgentRow.agent_id) == agent_id)
            if expected_version is not None:
                statement = statement.where(col(AgentRow.version) == expected_version)
            result = session.exec(statement.values(**values))  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                if session.get(AgentRow, agent_id) is None:
                    raise AgentNotFoundError(agent_id)
                raise RegistryConflictError(
                    f"Agent {agent_id} changed concurrently (expected version {expected_version})",
                )
            session.commit()
            row = session.get(AgentRow, agent_id)
            if row is None:
                raise AgentNotFoundError(agent_id)
            return _to_agent_view(row)

    def update_agent(
        self,
        agent_id: str,
        mutate: Callable[[AgentView], tuple[dict[str, Any], T]],
        *,
        max_conflicts: int = DEFAULT_UPDATE_CONFLICT_RETRIES,
        now: datetime | None = None,
    ) -> tuple[T, AgentView]:
        """Read-modify-write one agent, retrying the whole cycle on version conflict.

        `mutate` receives the current record and returns the fields to write plus
        an arbitrary result; it may run more than once, so it must be pure.
        """

        for conflict in range(max_conflicts + 1):
            agent = self.require_agent(agent_id)
            fields, result = mutate(agent)
            if not fields:
                return result, agent
            try:
                updated = self.patch_agent(
                    agent_id,
                    fields,
                    expected_version=agent.version,
                    now=now,
                )
            except RegistryConflictError:
                logger.debug(
                    "Version conflict on agent %s (retry %d/%d)",
                    agent_id,
                    conflict + 1,
                    max_conflicts,
                )
                continue
            return result, updated
        raise RegistryConflictError(
            f"Agent {agent_id} kept changing; gave up after {max_conflicts} retries",
        )

    @_retry_transient
    def record_heartbeat(
        self,
        agent_id: str,
        *,
        status: AgentStatus = AgentStatus.ONLINE,
        now: datetime | None = None,
    ) -> AgentView:
        """Agent-side liveness write; a crashed agent keeps its status for recovery to judge."""

        if status not in HEARTBEAT_REPORTABLE_STATUSES:
            raise ValueError(f"Heartbeat cannot report status={status.value}")
        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRow)  # type: ignore[call-overload]
                .where(col(AgentRow.agent_id) == agent_id)
                .values(
                    last_heartbeat_at=to_db_datetime(now),
                    status=case(
                        (
                            col(AgentRow.status) == AgentStatus.CRASHED.value,
                            AgentStatus.CRASHED.value,
                        ),
                        else_=status.value,
                    ),
                    version=AgentRow.version + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise AgentNotFoundError(agent_id)
            session.commit()
            row = session.get(AgentRow, agent_id)
            if row is None:
                raise AgentNotFoundError(agent_id)
            return _to_agent_view(row)

    # Schedule templates

    @_retry_transient
    def create_template(
        self,
        payload: ScheduleTemplateCreate,
        *,
        now: datetime | None = None,
    ) -> ScheduleTemplateView:
        """Create a recurring work definition; trigger and name are validated."""

        parse_trigger(payload.trigger_spec)
        if not payload.handler.strip():
            raise ValueError("Template handler must not be empty")
        now = payload.created_at or now or utc_now()
        row = ScheduleTemplateRow(
            template_id=payload.template_id or str(uuid4()),
            name=payload.name,
            description=payload.description,
            trigger_spec=payload.trigger_spec.strip(),
            target_selector_json=_dump_json(payload.target_selector.to_dict()),
            handler=payload.handler.strip(),
            payload_json=_dump_json(payload.payload),
            enabled=payload.enabled,
            created_by=payload.created_by,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"Schedule template already exists: {payload.name!r}") from error
            session.refresh(row)
            return _to_template_view(row)

    @_retry_transient
    def get_template(self, template_id: str) -> ScheduleTemplateView | None:
        with Session(self.engine) as session:
            row = session.get(ScheduleTemplateRow, template_id)
            return _to_template_view(row) if row is not None else None

    @_retry_transient
    def get_template_by_name(self, name: str) -> ScheduleTemplateView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ScheduleTemplateRow).where(ScheduleTemplateRow.name == name),
            ).one_or_none()
            return _to_template_view(row) if row is not None else None

    def require_template(self, template_id: str) -> ScheduleTemplateView:
        template = self.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    @_retry_transient
    def list_templates(
        self,
        *,
        due_before: datetime | None = None,
        enabled_only: bool = False,
    ) -> list[ScheduleTemplateView]:
        """List templates; `due_before` keeps enabled ones whose watermark precedes it."""

        statement = select(ScheduleTemplateRow).order_by(col(ScheduleTemplateRow.name).asc())
        if enabled_only or due_before is not None:
            statement = statement.where(ScheduleTemplateRow.enabled == True)  # noqa: E712
        if due_before is not None:
            watermark = func.coalesce(
                col(ScheduleTemplateRow.last_dispatched_at),
                col(ScheduleTemplateRow.created_at),
            )
            statement = statement.where(watermark < to_db_datetime(due_before))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_template_view(row) for row in rows]

    @_retry_transient
    def patch_template(
        self,
        template_id: str,
        fields: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> ScheduleTemplateView:
        """Atomic partial update of operator-editable template fields.

        A new `trigger_spec` is validated before it is written. The dispatch
        watermark is kept, so windows that already fired do not fire again.
        """

        unknown = set(fields) - _PATCHABLE_TEMPLATE_FIELDS
        if unknown:
            raise ValueError(f"Template fields are not patchable: {sorted(unknown)}")
        now = now or utc_now()
        values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
        for name, value in fields.items():
            if name == "payload":
                values["payload_json"] = _dump_json(value)
            elif name == "target_selector":
                values["target_selector_json"] = _dump_json(value.to_dict())
            elif name == "trigger_spec":
                parse_trigger(value)
                values["trigger_spec"] = value.strip()
            elif name == "name":
                if not value.strip():
                    raise ValueError("Template name must not be empty")
                values["name"] = value.strip()
            else:
                values[name] = value

        with Session(self.engine) as session:
            try:
                result = session.exec(
                    sa_update(ScheduleTemplateRow)  # type: ignore[call-overload]
                    .where(col(ScheduleTemplateRow.template_id) == template_id)
                    .values(**values),
                )
            except IntegrityError as error:
                session.rollback()
                raise ValueError(
                    f"Schedule template already exists: {values.get('name')!r}",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise TemplateNotFoundError(template_id)
            session.commit()
            row = session.get(ScheduleTemplateRow, template_id)
            if row is None:
                raise TemplateNotFoundError(template_id)
            return _to_template_view(row)

    def set_template_enabled(self, template_id: str, *, enabled: bool) -> ScheduleTemplateView:
        return self.patch_template(template_id, {"enabled": enabled})

    # Dispatches

    @_retry_transient
    def claim_template_window(  # noqa: PLR0913
        self,
        *,
        template: ScheduleTemplateView,
        agent_id: str,
        window_start: datetime,
        now: datetime,
        lease: timedelta,
    ) -> TaskDispatchView | None:
        """Advance the template watermark and record the dispatch in one transaction.

        Returns None when another tick already claimed the window: either the
        watermark moved since `template` was read or the window row exists.
        """

        seen = template.last_dispatched_at
        watermark_unchanged = (
            col(ScheduleTemplateRow.last_dispatched_at).is_(None)
            if seen is None
            else col(ScheduleTemplateRow.last_dispatched_at) == to_db_datetime(seen)
        )
        row = TaskDispatchRow(
            dispatch_id=str(uuid4()),
            template_id=template.template_id,
            agent_id=agent_id,
            window_start=to_db_datetime(window_start),
            dispatched_at=to_db_datetime(now),
            attempt=1,
            outcome=DispatchOutcome.PENDING.value,
            next_attempt_at=to_db_datetime(now + lease),
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduleTemplateRow)  # type: ignore[call-overload]
                .where(
                    col(ScheduleTemplateRow.template_id) == template.template_id,
                    watermark_unchanged,
                )
                .values(
                    last_dispatched_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_dispatch_view(row)

    @_retry_transient
    def record_manual_dispatch(
        self,
        *,
        template: ScheduleTemplateView,
        agent_id: str,
        now: datetime,
        lease: timedelta,
    ) -> TaskDispatchView:
        """Record an operator run-now; the template watermark is left untouched."""

        row = TaskDispatchRow(
            dispatch_id=str(uuid4()),
            template_id=template.template_id,
            agent_id=agent_id,
            window_start=to_db_datetime(now),
            trigger_source=DispatchSource.MANUAL.value,
            dispatched_at=to_db_datetime(now),
            attempt=1,
            outcome=DispatchOutcome.PENDING.value,
            next_attempt_at=to_db_datetime(now + lease),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_dispatch_view(row)

    @_retry_transient
    def get_dispatch(self, dispatch_id: str) -> TaskDispatchView | None:
        with Session(self.engine) as session:
            row = session.get(TaskDispatchRow, dispatch_id)
            return _to_dispatch_view(row) if row is not None else None

    @_retry_transient
    def list_dispatches(
        self,
        *,
        template_id: str | None = None,
        outcome: DispatchOutcome | None = None,
        limit: int = 50,
    ) -> list[TaskDispatchView]:
        """List recent dispatches, newest first."""

        statement = (
            select(TaskDispatchRow)
            .order_by(col(TaskDispatchRow.dispatched_at).desc())
            .limit(limit)
        )
        if template_id is not None:
            statement = statement.where(TaskDispatchRow.template_id == template_id)
        if outcome is not None:
            statement = statement.where(TaskDispatchRow.outcome == outcome.value)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_dispatch_view(row) for row in rows]

    @_retry_transient
    def last_dispatch_by_agent(self) -> dict[str, datetime]:
        """Most recent dispatch time per agent, for least-recently-dispatched selection."""

        statement = select(
            TaskDispatchRow.agent_id,
            func.max(TaskDispatchRow.dispatched_at),
        ).group_by(col(TaskDispatchRow.agent_id))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return {
            agent_id: to_utc_aware_datetime(dispatched_at)
            for agent_id, dispatched_at in rows
            if dispatched_at is not None
        }

    @_retry_transient
    def list_dispatches_for_retry(self, *, now: datetime, limit: int = 100) -> list[TaskDispatchView]:
        """Pending dispatches whose next delivery attempt is due."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDispatchRow)
                .where(
                    TaskDispatchRow.outcome == DispatchOutcome.PENDING.value,
                    col(TaskDispatchRow.next_attempt_at).is_not(None),
                    col(TaskDispatchRow.next_attempt_at) <= to_db_datetime(now),
                )
                .order_by(col(TaskDispatchRow.next_attempt_at).asc())
                .limit(limit),
            ).all()
        return [_to_dispatch_view(row) for row in rows]

    @_retry_transient
    def claim_dispatch_retry(
        self,
        dispatch: TaskDispatchView,
        *,
        now: datetime,
        lease: timedelta,
    ) -> TaskDispatchView | None:
        """Take ownership of one redelivery; None when another tick got it first."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDispatchRow)  # type: ignore[call-overload]
                .where(
                    col(TaskDispatchRow.dispatch_id) == dispatch.dispatch_id,
                    col(TaskDispatchRow.outcome) == DispatchOutcome.PENDING.value,
                    col(TaskDispatchRow.attempt) == dispatch.attempt,
                )
                .values(
                    attempt=dispatch.attempt + 1,
                    next_attempt_at=to_db_datetime(now + lease),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(TaskDispatchRow, dispatch.dispatch_id)
            return _to_dispatch_view(row) if row is not None else None

    @_retry_transient
    def finish_dispatch(
        self,
        dispatch_id: str,
        *,
        outcome: DispatchOutcome,
        now: datetime,
        error_summary: str | None = None,
    ) -> bool:
        """Finalize a pending dispatch as delivered or failed."""

        if outcome is DispatchOutcome.PENDING:
            raise ValueError("A dispatch can only be finished as delivered or failed")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDispatchRow)  # type: ignore[call-overload]
                .where(
                    col(TaskDispatchRow.dispatch_id) == dispatch_id,
                    col(TaskDispatchRow.outcome) == DispatchOutcome.PENDING.value,
                )
                .values(
                    outcome=outcome.value,
                    error_summary=error_summary,
                    next_attempt_at=None,
                    finished_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    @_retry_transient
    def schedule_dispatch_retry(
        self,
        dispatch_id: str,
        *,
        next_attempt_at: datetime,
        error_summary: str,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDispatchRow)  # type: ignore[call-overload]
                .where(
                    col(TaskDispatchRow.dispatch_id) == dispatch_id,
                    col(TaskDispatchRow.outcome) == DispatchOutcome.PENDING.value,
                )
                .values(
                    next_attempt_at=to_db_datetime(next_attempt_at),
                    error_summary=error_summary,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # System state

    @_retry_transient
    def is_paused(self) -> bool:
        with Session(self.engine) as session:
            row = session.get(FleetStateRow, PAUSED_STATE_KEY)
            if row is None:
                return False
            return bool(json.loads(row.value_json))

    @_retry_transient
    def set_paused(self, paused: bool, *, now: datetime | None = None) -> bool:
        """Persist the kill switch; returns True when the value changed."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(FleetStateRow, PAUSED_STATE_KEY)
            if row is not None and bool(json.loads(row.value_json)) == paused:
                return False
            if row is None:
                row = FleetStateRow(
                    key=PAUSED_STATE_KEY,
                    value_json=json.dumps(paused),
                    updated_at=to_db_datetime(now),
                )
            else:
                row.value_json = json.dumps(paused)
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            return True


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_datetime(value)
    if isinstance(value, AgentStatus):
        return value.value
    return value


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_agent_view(row: AgentRow) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        role=row.role,
        status=AgentStatus(row.status),
        status_reason=row.status_reason,
        endpoint_url=row.endpoint_url,
        last_heartbeat_at=to_utc_aware_datetime(row.last_heartbeat_at),
        consecutive_failures=row.consecutive_failures,
        restart_level=row.restart_level,
        restart_pending=row.restart_pending,
        last_restart_attempt_at=optional_utc(row.last_restart_attempt_at),
        circuit_open_until=optional_utc(row.circuit_open_until),
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_template_view(row: ScheduleTemplateRow) -> ScheduleTemplateView:
    return ScheduleTemplateView(
        template_id=row.template_id,
        name=row.name,
        description=row.description,
        trigger_spec=row.trigger_spec,
        target_selector=TargetSelector.from_dict(_load_json_object(row.target_selector_json)),
        handler=row.handler,
        payload=_load_json_object(row.payload_json),
        enabled=row.enabled,
        last_dispatched_at=optional_utc(row.last_dispatched_at),
        created_by=row.created_by,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_dispatch_view(row: TaskDispatchRow) -> TaskDispatchView:
    return TaskDispatchView(
        dispatch_id=row.dispatch_id,
        template_id=row.template_id,
        agent_id=row.agent_id,
        window_start=to_utc_aware_datetime(row.window_start),
        dispatched_at=to_utc_aware_datetime(row.dispatched_at),
        attempt=row.attempt,
        outcome=DispatchOutcome(row.outcome),
        next_attempt_at=optional_utc(row.next_attempt_at),
        error_summary=row.error_summary,
        finished_at=optional_utc(row.finished_at),
        source=DispatchSource(row.trigger_source),
    )
