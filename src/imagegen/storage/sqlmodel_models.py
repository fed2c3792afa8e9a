"""SQLModel ORM tables for jobs, generation history and the work queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generation_jobs_status",
        ),
        CheckConstraint(
            "model IN ('flux-schnell', 'sdxl-lightning', 'sdxl-base')",
            name="ck_generation_jobs_model",
        ),
        Index("idx_generation_jobs_created", "created_at"),
    )

    id: str = Field(primary_key=True)
    status: str = Field(index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    model: str
    image_url: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Generation(SQLModel, table=True):
    __tablename__ = "generations"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generations_created", "created_at"),
        Index("uq_generations_job_id", "job_id", unique=True),
    )

    id: str = Field(primary_key=True)
    job_id: str = Field(foreign_key="generation_jobs.id")
    image_url: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    model: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkUnit(SQLModel, table=True):
    __tablename__ = "work_units"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_work_units_ready", "status", "visible_after"),
        Index("idx_work_units_job_id", "job_id"),
    )

    message_id: str = Field(primary_key=True)
    job_id: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempts: int = 0
    max_attempts: int = 3
    visible_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    leased_by: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
