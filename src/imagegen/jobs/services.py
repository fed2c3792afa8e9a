"""Job creation and read-only status queries."""

from __future__ import annotations

import logging

from imagegen.config import JobSettings
from imagegen.jobs.errors import DispatchError, NotFoundError, ValidationError
from imagegen.jobs.history import GenerationArchive
from imagegen.jobs.models import (
    GenerationView,
    ImageModel,
    JobCreate,
    JobStatus,
    JobView,
    Page,
    WorkMessage,
)
from imagegen.jobs.queue import WorkDispatcher
from imagegen.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

ALL_STATUSES = "all"


class ImageJobService:
    """Creates jobs and answers status/listing queries."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        archive: GenerationArchive,
        dispatcher: WorkDispatcher,
        settings: JobSettings | None = None,
    ) -> None:
        self.repository = repository
        self.archive = archive
        self.dispatcher = dispatcher
        self.settings = settings or JobSettings()

    def create_jobs(
        self,
        *,
        prompt: str,
        model: ImageModel | str | None = None,
        count: int = 1,
    ) -> list[JobView]:
        """Insert ``count`` pending jobs and enqueue one work unit for each.

        Raises:
            ValidationError: on a bad prompt, model or count; nothing is written.
            DispatchError: when enqueueing fails after the job row exists. The
                job stays ``pending`` and its id is reported in the error details.
        """

        self._validate_prompt(prompt)
        resolved_model = self._resolve_model(model)
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValidationError("count must be an integer.")
        if not 1 <= count <= self.settings.max_count:
            raise ValidationError(f"count must be between 1 and {self.settings.max_count}.")

        created: list[JobView] = []
        for _ in range(count):
            job = self.repository.insert_job(JobCreate(prompt=prompt, model=resolved_model))
            created.append(job)
            try:
                self.dispatcher.send(
                    WorkMessage(job_id=job.job_id, prompt=prompt, model=resolved_model),
                )
            except Exception as error:
                logger.exception("Failed to dispatch job %s; it stays pending", job.job_id)
                raise DispatchError(
                    f"Job {job.job_id} was created but could not be queued: {error}",
                    details={
                        "job_id": job.job_id,
                        "created_job_ids": [item.job_id for item in created],
                    },
                ) from error
            logger.info("Job %s created with model %s", job.job_id, resolved_model.value)
        return created

    def get_job(self, *, job_id: str) -> JobView:
        if not job_id:
            raise ValidationError("job_id must be a non-empty string.")
        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": job_id})
        return job

    def list_jobs(
        self,
        *,
        status: JobStatus | str = ALL_STATUSES,
        limit: int | None = None,
        offset: int = 0,
    ) -> Page[JobView]:
        status_filter = _parse_status_filter(status)
        resolved_limit = self._validate_page(limit=limit, offset=offset)
        return self.repository.list_jobs(status=status_filter, limit=resolved_limit, offset=offset)

    def list_generations(self, *, limit: int | None = None, offset: int = 0) -> Page[GenerationView]:
        resolved_limit = self._validate_page(limit=limit, offset=offset)
        return self.archive.list_generations(limit=resolved_limit, offset=offset)

    def _validate_prompt(self, prompt: str) -> None:
        if not isinstance(prompt, str):
            raise ValidationError("prompt must be a string.")
        if not prompt.strip():
            raise ValidationError("prompt must not be empty.")
        if not self.settings.prompt_min_chars <= len(prompt) <= self.settings.prompt_max_chars:
            raise ValidationError(
                f"prompt must be between {self.settings.prompt_min_chars} and "
                f"{self.settings.prompt_max_chars} characters.",
            )

    def _resolve_model(self, model: ImageModel | str | None) -> ImageModel:
        if model is None:
            return self.settings.default_model
        try:
            return ImageModel(model)
        except ValueError as error:
            choices = ", ".join(item.value for item in ImageModel)
            raise ValidationError(
                f"Unsupported model {model!r}. Expected one of {choices}.",
            ) from error

    def _validate_page(self, *, limit: int | None, offset: int) -> int:
        resolved = self.settings.list_default_limit if limit is None else limit
        if not 1 <= resolved <= self.settings.list_max_limit:
            raise ValidationError(f"limit must be between 1 and {self.settings.list_max_limit}.")
        if offset < 0:
            raise ValidationError("offset must be >= 0.")
        return resolved


def _parse_status_filter(status: JobStatus | str) -> JobStatus | None:
    if status == ALL_STATUSES:
        return None
    try:
        return JobStatus(status)
    except ValueError as error:
        choices = ", ".join([ALL_STATUSES, *(item.value for item in JobStatus)])
        raise ValidationError(f"Unsupported status {status!r}. Expected one of {choices}.") from error
