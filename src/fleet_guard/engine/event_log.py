"""Append-only event log for recovery and dispatch transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from fleet_guard.engine.models import EventKind, FleetEvent, FleetEventView, SubjectType
from fleet_guard.storage.common import to_db_datetime, to_utc_aware_datetime
from fleet_guard.storage.sqlmodel_models import FleetEventRow

logger = logging.getLogger(__name__)


class EventLog(Protocol):
    """Fire-and-forget sink for state transition records."""

    def append(self, event: FleetEvent) -> None:
        """Record one event; implementations must not raise."""
        raise NotImplementedError


class SqliteEventLog:
    """Event log stored in the `fleet_events` table of the registry database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(self, event: FleetEvent) -> None:
        row = FleetEventRow(
            subject_type=event.subject_type.value,
            subject_id=event.subject_id,
            kind=event.kind.value,
            detail_json=json.dumps(event.detail, ensure_ascii=False, sort_keys=True, default=str)
            if event.detail
            else None,
            created_at=to_db_datetime(event.created_at),
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except SQLAlchemyError as error:
            logger.warning(
                "Dropped %s event for %s %s: %s",
                event.kind.value,
                event.subject_type.value,
                event.subject_id,
                error,
            )

    def list_events(
        self,
        *,
        subject_id: str | None = None,
        kinds: Iterable[EventKind] | None = None,
        limit: int = 50,
    ) -> list[FleetEventView]:
        """Return recent events, newest first."""

        statement = (
            select(FleetEventRow)
            .order_by(col(FleetEventRow.created_at).desc(), col(FleetEventRow.event_id).desc())
            .limit(limit)
        )
        if subject_id is not None:
            statement = statement.where(FleetEventRow.subject_id == subject_id)
        if kinds is not None:
            statement = statement.where(col(FleetEventRow.kind).in_([kind.value for kind in kinds]))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()

        events: list[FleetEventView] = []
        for row in rows:
            detail = {}
            if row.detail_json:
                parsed = json.loads(row.detail_json)
                if isinstance(parsed, dict):
                    detail = parsed
            events.append(
                FleetEventView(
                    event_id=row.event_id or 0,
                    subject_type=SubjectType(row.subject_type),
                    subject_id=row.subject_id,
                    kind=row.kind,
                    created_at=to_utc_aware_datetime(row.created_at),
                    detail=detail,
                ),
            )
        return events


def agent_event(
    kind: EventKind,
    agent_id: str,
    now: datetime,
    **detail: object,
) -> FleetEvent:
    """Build an agent-subject event."""

    return FleetEvent(
        subject_type=SubjectType.AGENT,
        subject_id=agent_id,
        kind=kind,
        created_at=now,
        detail=dict(detail),
    )
