"""Create generation job and generation history tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generation_jobs_status",
        ),
        sa.CheckConstraint(
            "model IN ('flux-schnell', 'sdxl-lightning', 'sdxl-base')",
            name="ck_generation_jobs_model",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_jobs_status",
        "generation_jobs",
        ["status"],
        unique=False,
    )
    op.create_index(
        "idx_generation_jobs_created",
        "generation_jobs",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_generations_created",
        "generations",
        ["created_at"],
        unique=False,
    )
    op.create_index(
        "uq_generations_job_id",
        "generations",
        ["job_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_generations_job_id", table_name="generations")
    op.drop_index("idx_generations_created", table_name="generations")
    op.drop_table("generations")
    op.drop_index("idx_generation_jobs_created", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_table("generation_jobs")
