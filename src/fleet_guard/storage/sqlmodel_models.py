"""SQLModel ORM tables for the fleet registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("name", name="uq_agents_name"),
        CheckConstraint("consecutive_failures >= 0", name="ck_agents_failures_non_negative"),
        CheckConstraint("restart_level >= 0", name="ck_agents_restart_level_non_negative"),
        Index("idx_agents_status_heartbeat", "status", "last_heartbeat_at"),
    )

    agent_id: str = Field(primary_key=True)
    name: str
    role: str = Field(index=True)
    status: str
    status_reason: str | None = Field(default=None, sa_column=Column(Text))
    endpoint_url: str | None = None
    last_heartbeat_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    consecutive_failures: int = 0
    restart_level: int = 0
    restart_pending: bool = False
    last_restart_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    circuit_open_until: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    version: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduleTemplateRow(SQLModel, table=True):
    __tablename__ = "schedule_templates"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("name", name="uq_schedule_templates_name"),)

    template_id: str = Field(primary_key=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    trigger_spec: str
    target_selector_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    handler: str = "custom"
    payload_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    enabled: bool = Field(default=True, index=True)
    last_dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDispatchRow(SQLModel, table=True):
    __tablename__ = "task_dispatches"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_task_dispatches_scheduled_window",
            "template_id",
            "window_start",
            unique=True,
            sqlite_where=text("trigger_source = 'schedule'"),
        ),
        Index("idx_task_dispatches_outcome_next_attempt", "outcome", "next_attempt_at"),
        Index("idx_task_dispatches_agent_time", "agent_id", "dispatched_at"),
    )

    dispatch_id: str = Field(primary_key=True)
    template_id: str = Field(
        sa_column=Column(
            ForeignKey("schedule_templates.template_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    trigger_source: str = Field(
        default="schedule",
        sa_column=Column(String, nullable=False, server_default="schedule"),
    )
    dispatched_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    attempt: int = 1
    outcome: str
    next_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class FleetEventRow(SQLModel, table=True):
    __tablename__ = "fleet_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_fleet_events_subject_time", "subject_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    subject_type: str
    subject_id: str | None = None
    kind: str = Field(index=True)
    detail_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class FleetStateRow(SQLModel, table=True):
    __tablename__ = "fleet_state"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
