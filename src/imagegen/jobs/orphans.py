"""Detection of pending jobs that never reached the work queue."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from imagegen.jobs.models import JobView
from imagegen.jobs.queue import WorkQueue
from imagegen.jobs.repository import JobRepository
from imagegen.storage.common import utc_now

logger = logging.getLogger(__name__)


def find_orphaned_jobs(
    *,
    repository: JobRepository,
    queue: WorkQueue,
    grace_seconds: int,
    now: datetime | None = None,
) -> list[JobView]:
    """Pending jobs older than the grace period with no work unit at all.

    These are left behind when enqueueing failed after the job row was
    written. Nothing is re-dispatched here; the list is for operators.
    """

    cutoff = (now or utc_now()) - timedelta(seconds=grace_seconds)
    candidates = repository.list_pending_created_before(cutoff=cutoff)
    if not candidates:
        return []
    queued = queue.job_ids_with_units(job_ids=[job.job_id for job in candidates])
    orphans = [job for job in candidates if job.job_id not in queued]
    if orphans:
        logger.warning("Found %d orphaned pending job(s)", len(orphans))
    return orphans
