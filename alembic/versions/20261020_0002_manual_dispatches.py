"""Allow operator run-now dispatches next to once-per-window scheduled ones."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261020_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("task_dispatches", recreate="always") as batch_op:
        batch_op.add_column(
            sa.Column("trigger_source", sa.String(), nullable=False, server_default="schedule"),
        )
        batch_op.drop_constraint("uq_task_dispatches_template_window", type_="unique")
    # Exactly-once only binds trigger windows; manual runs never consume one.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_task_dispatches_scheduled_window
            ON task_dispatches (template_id, window_start)
            WHERE trigger_source = 'schedule'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_task_dispatches_scheduled_window"))
    op.execute(sa.text("DELETE FROM task_dispatches WHERE trigger_source = 'manual'"))
    with op.batch_alter_table("task_dispatches", recreate="always") as batch_op:
        batch_op.drop_column("trigger_source")
        batch_op.create_unique_constraint(
            "uq_task_dispatches_template_window",
            ["template_id", "window_start"],
        )
