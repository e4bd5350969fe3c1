"""Fleet registry baseline: agents, schedule templates, dispatches, event log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("endpoint_url", sa.String(), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("restart_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("restart_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_restart_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("circuit_open_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
        sa.UniqueConstraint("name", name="uq_agents_name"),
        sa.CheckConstraint("consecutive_failures >= 0", name="ck_agents_failures_non_negative"),
        sa.CheckConstraint("restart_level >= 0", name="ck_agents_restart_level_non_negative"),
    )
    op.create_index("idx_agents_status_heartbeat", "agents", ["status", "last_heartbeat_at"])
    op.create_index("ix_agents_role", "agents", ["role"])

    op.create_table(
        "schedule_templates",
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_spec", sa.String(), nullable=False),
        sa.Column("target_selector_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("handler", sa.String(), nullable=False, server_default="custom"),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("template_id"),
        sa.UniqueConstraint("name", name="uq_schedule_templates_name"),
    )
    op.create_index("ix_schedule_templates_enabled", "schedule_templates", ["enabled"])

    op.create_table(
        "task_dispatches",
        sa.Column("dispatch_id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["template_id"],
            ["schedule_templates.template_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.agent_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("dispatch_id"),
        sa.UniqueConstraint(
            "template_id",
            "window_start",
            name="uq_task_dispatches_template_window",
        ),
    )
    op.create_index(
        "idx_task_dispatches_outcome_next_attempt",
        "task_dispatches",
        ["outcome", "next_attempt_at"],
    )
    op.create_index(
        "idx_task_dispatches_agent_time",
        "task_dispatches",
        ["agent_id", "dispatched_at"],
    )

    op.create_table(
        "fleet_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("detail_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_fleet_events_subject_time", "fleet_events", ["subject_id", "created_at"])
    op.create_index("ix_fleet_events_kind", "fleet_events", ["kind"])

    op.create_table(
        "fleet_state",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_index("ix_fleet_events_kind", table_name="fleet_events")
    op.drop_index("idx_fleet_events_subject_time", table_name="fleet_events")
    op.drop_index("idx_task_dispatches_agent_time", table_name="task_dispatches")
    op.drop_index("idx_task_dispatches_outcome_next_attempt", table_name="task_dispatches")
    op.drop_index("ix_schedule_templates_enabled", table_name="schedule_templates")
    op.drop_index("ix_agents_role", table_name="agents")
    op.drop_index("idx_agents_status_heartbeat", table_name="agents")
    op.drop_table("fleet_state")
    op.drop_table("fleet_events")
    op.drop_table("task_dispatches")
    op.drop_table("schedule_templates")
    op.drop_table("agents")
