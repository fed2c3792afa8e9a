"""Blocking wait for one or many jobs to reach a terminal state."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from imagegen.config import WaitSettings
from imagegen.jobs.errors import JobFailedError, NotFoundError, ValidationError, WaitTimeoutError
from imagegen.jobs.models import JobStatus, JobView
from imagegen.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


def completed_result(job: JobView) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "image_url": job.image_url,
        "prompt": job.prompt,
        "model": job.model.value,
    }


class WaitCoordinator:
    """Polls the job store until every requested job is terminal.

    The timeout scales with the number of jobs. Between polls the caller's
    thread sleeps through the injected ``sleep`` function, so no CPU is spent
    spinning while background processing runs.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        settings: WaitSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.settings = settings or WaitSettings()
        self._sleep = sleep
        self._clock = clock

    def timeout_for(self, job_count: int) -> float:
        return self.settings.base_timeout_seconds + self.settings.per_job_timeout_seconds * job_count

    def normalize_job_ids(self, job_ids: str | Sequence[str]) -> list[str]:
        """Accept one id or a list; collapse duplicates keeping first-seen order."""

        raw = [job_ids] if isinstance(job_ids, str) else list(job_ids)
        if not raw:
            raise ValidationError("At least one job id is required.")
        unique: list[str] = []
        for job_id in raw:
            if not isinstance(job_id, str) or not job_id:
                raise ValidationError("Job ids must be non-empty strings.")
            if job_id not in unique:
                unique.append(job_id)
        if len(unique) > self.settings.max_job_ids:
            raise ValidationError(f"At most {self.settings.max_job_ids} job ids can be waited on.")
        return unique

    def wait(self, job_ids: str | Sequence[str]) -> list[JobView]:
        """Return the completed jobs in request order.

        Raises:
            NotFoundError: any id is unknown; raised on the first poll.
            JobFailedError: any job failed; details carry the failed entries
                and the results of jobs already completed.
            WaitTimeoutError: the deadline passed with jobs still in flight.
        """

        ids = self.normalize_job_ids(job_ids)
        timeout = self.timeout_for(len(ids))
        deadline = self._clock() + timeout
        polls = 0
        while True:
            polls += 1
            jobs = self._poll(ids)
            failed = [job for job in jobs if job.status is JobStatus.FAILED]
            completed = [job for job in jobs if job.status is JobStatus.COMPLETED]
            if failed:
                raise JobFailedError(
                    _failure_message(failed, single=len(ids) == 1),
                    details={
                        "status": JobStatus.FAILED.value,
                        "failed": [{"job_id": job.job_id, "error": job.error} for job in failed],
                        "completed": [completed_result(job) for job in completed],
                    },
                )
            if len(completed) == len(ids):
                logger.debug("Wait for %d job(s) finished after %d poll(s)", len(ids), polls)
                return completed

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise WaitTimeoutError(
                    f"Timeout: Image generation took longer than {round(timeout)} seconds",
                    details={
                        "timeout_seconds": timeout,
                        "pending_job_ids": [
                            job.job_id for job in jobs if not job.status.is_terminal
                        ],
                        "completed": [completed_result(job) for job in completed],
                    },
                )
            self._sleep(min(self.settings.poll_interval_seconds, remaining))

    def _poll(self, ids: list[str]) -> list[JobView]:
        jobs = self.repository.get_jobs(job_ids=ids)
        if len(jobs) != len(ids):
            found = {job.job_id for job in jobs}
            missing = [job_id for job_id in ids if job_id not in found]
            message = "Job not found" if len(ids) == 1 else "One or more jobs not found"
            raise NotFoundError(message, details={"missing_job_ids": missing})
        return jobs


def _failure_message(failed: list[JobView], *, single: bool) -> str:
    if single:
        return failed[0].error or "Generation failed"
    return f"{len(failed)} job(s) failed"
