"""Add SQLite-backed work unit queue with leases and dead-letter status."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_units",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("visible_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("leased_by", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_work_units_status", "work_units", ["status"], unique=False)
    op.create_index(
        "idx_work_units_ready",
        "work_units",
        ["status", "visible_after"],
        unique=False,
    )
    op.create_index("idx_work_units_job_id", "work_units", ["job_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_work_units_job_id", table_name="work_units")
    op.drop_index("idx_work_units_ready", table_name="work_units")
    op.drop_index("ix_work_units_status", table_name="work_units")
    op.drop_table("work_units")
