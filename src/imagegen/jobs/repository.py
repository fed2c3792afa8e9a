"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from imagegen.jobs.models import ImageModel, JobCreate, JobStatus, JobView, Page
from imagegen.storage.alembic_runner import upgrade_head
from imagegen.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from imagegen.storage.sqlmodel_models import GenerationJob


class JobRepository:
    """Job lifecycle persistence.

    Every write is a single-row guarded update. A ``completed`` row is never
    touched again, which keeps repeated deliveries of the same work unit from
    corrupting a finished job.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_job(self, payload: JobCreate) -> JobView:
        """Create a pending job with matching created/updated timestamps."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = GenerationJob(
                id=payload.job_id or str(uuid4()),
                status=JobStatus.PENDING.value,
                prompt=payload.prompt,
                model=payload.model.value,
                image_url=None,
                error=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def mark_processing(self, *, job_id: str) -> bool:
        """Enter ``processing``; valid from pending, processing and failed."""

        return self._guarded_update(
            job_id=job_id,
            status=JobStatus.PROCESSING,
            image_url=None,
            error=None,
        )

    def mark_completed(self, *, job_id: str, image_url: str) -> bool:
        """Finish a job; returns False when the row was already completed."""

        return self._guarded_update(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            image_url=image_url,
            error=None,
        )

    def mark_failed(self, *, job_id: str, error: str) -> bool:
        """Record a failed attempt; a completed row is left as is."""

        return self._guarded_update(
            job_id=job_id,
            status=JobStatus.FAILED,
            image_url=None,
            error=error,
        )

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_jobs(self, *, job_ids: Sequence[str]) -> list[JobView]:
        """Fetch several jobs; missing ids are simply absent from the result."""

        if not job_ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob).where(col(GenerationJob.id).in_(list(job_ids))),
            ).all()
        by_id = {row.id: _to_job_view(row) for row in rows}
        return [by_id[job_id] for job_id in job_ids if job_id in by_id]

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Page[JobView]:
        """List jobs most recent first, optionally filtered by status."""

        with Session(self.engine) as session:
            count_statement = select(func.count()).select_from(GenerationJob)
            statement = select(GenerationJob).order_by(
                col(GenerationJob.created_at).desc(),
                col(GenerationJob.id).desc(),
            )
            if status is not None:
                count_statement = count_statement.where(GenerationJob.status == status.value)
                statement = statement.where(GenerationJob.status == status.value)
            total = session.exec(count_statement).one()
            rows = session.exec(statement.offset(offset).limit(limit)).all()
        return Page(
            items=[_to_job_view(row) for row in rows],
            total_count=int(total),
            limit=limit,
            offset=offset,
        )

    def list_pending_created_before(self, *, cutoff: datetime) -> list[JobView]:
        """Pending jobs created before the cutoff, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(
                    GenerationJob.status == JobStatus.PENDING.value,
                    col(GenerationJob.created_at) < to_db_datetime(cutoff),
                )
                .order_by(col(GenerationJob.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def _guarded_update(
        self,
        *,
        job_id: str,
        status: JobStatus,
        image_url: str | None,
        error: str | None,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.id) == job_id,
                    col(GenerationJob.status) != JobStatus.COMPLETED.value,
                )
                .values(
                    status=status.value,
                    image_url=image_url,
                    error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.id,
        status=JobStatus(row.status),
        prompt=row.prompt,
        model=ImageModel(row.model),
        image_url=row.image_url,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
