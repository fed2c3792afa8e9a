"""SQLite-backed work queue with at-least-once delivery.

Units are leased to a consumer for a visibility window. A unit that is neither
acked nor retried before its lease expires becomes visible again, so the same
work can be delivered twice and even processed concurrently. Retries are
bounded by ``max_attempts``; exhausted units move to the dead-letter status.
"""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from imagegen.jobs.models import WorkMessage, WorkUnitStatus, WorkUnitView
from imagegen.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from imagegen.storage.sqlmodel_models import WorkUnit

logger = logging.getLogger(__name__)


class WorkDispatcher(Protocol):
    """Producer side of the dispatch channel."""

    def send(self, message: WorkMessage) -> str:
        """Enqueue one work unit and return its message id."""


class RetryOutcome(str, Enum):
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    NOOP = "noop"


@dataclass(slots=True)
class Delivery:
    """One leased receipt of a work unit with ack/retry controls."""

    message_id: str
    attempt: int
    max_attempts: int
    message: WorkMessage
    queue: WorkQueue = field(repr=False)

    def ack(self) -> bool:
        return self.queue.ack(message_id=self.message_id)

    def retry(self, error: str) -> RetryOutcome:
        return self.queue.retry(message_id=self.message_id, error=error)


class WorkQueue:
    """Dispatch channel persisted in the ``work_units`` table."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 300,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._random = rng or random.Random()  # noqa: S311

    def close(self) -> None:
        self.engine.dispose()

    def send(self, message: WorkMessage) -> str:
        now = to_db_datetime(utc_now())
        message_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                WorkUnit(
                    message_id=message_id,
                    job_id=message.job_id,
                    payload_json=json.dumps(message.to_payload(), ensure_ascii=False),
                    status=WorkUnitStatus.QUEUED.value,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    visible_after=now,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        logger.debug("Enqueued work unit %s for job %s", message_id, message.job_id)
        return message_id

    def receive(
        self,
        *,
        worker_id: str,
        max_messages: int = 10,
        visibility_timeout_seconds: int = 300,
    ) -> list[Delivery]:
        """Lease up to ``max_messages`` visible units.

        A unit is leased at most once per call, even when the visibility
        timeout is short enough for its lease to expire mid-call.
        """

        if visibility_timeout_seconds < 0:
            raise ValueError("visibility_timeout_seconds must be >= 0.")
        deliveries: list[Delivery] = []
        claimed: set[str] = set()
        while len(deliveries) < max_messages:
            delivery = self._claim_one(
                worker_id=worker_id,
                visibility_timeout_seconds=visibility_timeout_seconds,
                exclude=claimed,
            )
            if delivery is None:
                break
            claimed.add(delivery.message_id)
            deliveries.append(delivery)
        return deliveries

    def ack(self, *, message_id: str) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkUnit)
                .where(
                    col(WorkUnit.message_id) == message_id,
                    col(WorkUnit.status) == WorkUnitStatus.LEASED.value,
                )
                .values(status=WorkUnitStatus.ACKED.value, leased_by=None, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def retry(self, *, message_id: str, error: str) -> RetryOutcome:
        """Requeue with backoff, or dead-letter once attempts are exhausted."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkUnit).where(
                    WorkUnit.message_id == message_id,
                    WorkUnit.status == WorkUnitStatus.LEASED.value,
                ),
            ).one_or_none()
            if row is None:
                return RetryOutcome.NOOP
            job_id = row.job_id
            attempts = row.attempts

            if attempts >= row.max_attempts:
                values: dict[str, object] = {"status": WorkUnitStatus.DEAD_LETTER.value}
                outcome = RetryOutcome.DEAD_LETTERED
            else:
                delay = self._compute_retry_delay(retry_number=attempts)
                values = {
                    "status": WorkUnitStatus.QUEUED.value,
                    "visible_after": to_db_datetime(now + timedelta(seconds=delay)),
                }
                outcome = RetryOutcome.REQUEUED

            result = session.exec(
                sa_update(WorkUnit)
                .where(
                    col(WorkUnit.message_id) == message_id,
                    col(WorkUnit.status) == WorkUnitStatus.LEASED.value,
                    col(WorkUnit.attempts) == attempts,
                )
                .values(
                    **values,
                    leased_by=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return RetryOutcome.NOOP
            session.commit()

        if outcome is RetryOutcome.DEAD_LETTERED:
            logger.warning(
                "Work unit %s for job %s dead-lettered after %d attempts: %s",
                message_id,
                job_id,
                attempts,
                error,
            )
        return outcome

    def list_dead_letters(self, *, limit: int = 50) -> list[WorkUnitView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnit)
                .where(WorkUnit.status == WorkUnitStatus.DEAD_LETTER.value)
                .order_by(col(WorkUnit.updated_at).desc())
                .limit(limit),
            ).all()
        return [_to_work_unit_view(row) for row in rows]

    def list_units_for_job(self, *, job_id: str) -> list[WorkUnitView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnit)
                .where(WorkUnit.job_id == job_id)
                .order_by(col(WorkUnit.created_at).asc()),
            ).all()
        return [_to_work_unit_view(row) for row in rows]

    def job_ids_with_units(self, *, job_ids: Iterable[str]) -> set[str]:
        wanted = list(job_ids)
        if not wanted:
            return set()
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnit.job_id).where(col(WorkUnit.job_id).in_(wanted)),
            ).all()
        return set(rows)

    def _claim_one(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: int,
        exclude: set[str],
    ) -> Delivery | None:
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(WorkUnit)
                    .where(
                        col(WorkUnit.status).in_(
                            [WorkUnitStatus.QUEUED.value, WorkUnitStatus.LEASED.value],
                        ),
                        col(WorkUnit.visible_after) <= to_db_datetime(now),
                        col(WorkUnit.message_id).not_in(exclude),
                    )
                    .order_by(
                        col(WorkUnit.visible_after).asc(),
                        col(WorkUnit.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if row is None:
                    return None
                candidate = _ClaimCandidate.from_row(row)

                # An expired lease on a unit with no attempts left is not redelivered.
                if candidate.attempts >= candidate.max_attempts:
                    self._dead_letter_expired(session=session, candidate=candidate)
                    continue

                result = session.exec(
                    sa_update(WorkUnit)
                    .where(
                        col(WorkUnit.message_id) == candidate.message_id,
                        col(WorkUnit.status) == candidate.status,
                        col(WorkUnit.attempts) == candidate.attempts,
                    )
                    .values(
                        status=WorkUnitStatus.LEASED.value,
                        attempts=candidate.attempts + 1,
                        leased_by=worker_id,
                        visible_after=to_db_datetime(
                            now + timedelta(seconds=visibility_timeout_seconds),
                        ),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

            if candidate.status == WorkUnitStatus.LEASED.value:
                logger.info(
                    "Redelivering work unit %s for job %s after lease expiry",
                    candidate.message_id,
                    candidate.job_id,
                )
            try:
                message = WorkMessage.from_payload(json.loads(candidate.payload_json))
            except (KeyError, TypeError, ValueError) as error:
                self._dead_letter_malformed(
                    message_id=candidate.message_id,
                    error=f"Malformed work unit payload: {error}",
                )
                continue

            return Delivery(
                message_id=candidate.message_id,
                attempt=candidate.attempts + 1,
                max_attempts=candidate.max_attempts,
                message=message,
                queue=self,
            )

    def _dead_letter_expired(self, *, session: Session, candidate: _ClaimCandidate) -> None:
        result = session.exec(
            sa_update(WorkUnit)
            .where(
                col(WorkUnit.message_id) == candidate.message_id,
                col(WorkUnit.status) == WorkUnitStatus.LEASED.value,
                col(WorkUnit.attempts) == candidate.attempts,
            )
            .values(
                status=WorkUnitStatus.DEAD_LETTER.value,
                leased_by=None,
                last_error=candidate.last_error or "Lease expired with no attempts left.",
                updated_at=to_db_datetime(utc_now()),
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return
        session.commit()
        logger.warning(
            "Work unit %s for job %s dead-lettered after lease expiry",
            candidate.message_id,
            candidate.job_id,
        )

    def _dead_letter_malformed(self, *, message_id: str, error: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkUnit)
                .where(col(WorkUnit.message_id) == message_id)
                .values(
                    status=WorkUnitStatus.DEAD_LETTER.value,
                    leased_by=None,
                    last_error=error,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.error("Work unit %s dead-lettered: %s", message_id, error)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)


def _to_work_unit_view(row: WorkUnit) -> WorkUnitView:
    return WorkUnitView(
        message_id=row.message_id,
        job_id=row.job_id,
        status=WorkUnitStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        visible_after=to_utc_aware_datetime(row.visible_after),
        leased_by=row.leased_by,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


@dataclass(slots=True, frozen=True)
class _ClaimCandidate:
    """Column values read before the claiming update mutates the row."""

    message_id: str
    job_id: str
    status: str
    attempts: int
    max_attempts: int
    payload_json: str
    last_error: str | None

    @classmethod
    def from_row(cls, row: WorkUnit) -> _ClaimCandidate:
        return cls(
            message_id=row.message_id,
            job_id=row.job_id,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            payload_json=row.payload_json,
            last_error=row.last_error,
        )
