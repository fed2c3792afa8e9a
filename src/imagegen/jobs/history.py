"""Append-only archive of completed generations."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from imagegen.jobs.models import GenerationView, GenerationWrite, ImageModel, Page
from imagegen.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from imagegen.storage.sqlmodel_models import Generation


class GenerationArchive:
    """History persistence facade; rows are only ever inserted."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def append(self, record: GenerationWrite) -> GenerationView | None:
        """Insert one generation; returns None if the job already has one."""

        with Session(self.engine) as session:
            row = Generation(
                id=str(uuid4()),
                job_id=record.job_id,
                image_url=record.image_url,
                prompt=record.prompt,
                model=record.model.value,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_generation_view(row)

    def get_for_job(self, *, job_id: str) -> GenerationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Generation).where(Generation.job_id == job_id),
            ).one_or_none()
        return _to_generation_view(row) if row is not None else None

    def list_generations(self, *, limit: int = 10, offset: int = 0) -> Page[GenerationView]:
        """List generations most recent first."""

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(Generation)).one()
            rows = session.exec(
                select(Generation)
                .order_by(col(Generation.created_at).desc(), col(Generation.id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
        return Page(
            items=[_to_generation_view(row) for row in rows],
            total_count=int(total),
            limit=limit,
            offset=offset,
        )


def _to_generation_view(row: Generation) -> GenerationView:
    return GenerationView(
        generation_id=row.id,
        job_id=row.job_id,
        image_url=row.image_url,
        prompt=row.prompt,
        model=ImageModel(row.model),
        created_at=to_utc_aware_datetime(row.created_at),
    )
