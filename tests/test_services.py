from __future__ import annotations

import allure
import pytest

from imagegen.jobs.errors import DispatchError, NotFoundError, ValidationError
from imagegen.jobs.history import GenerationArchive
from imagegen.jobs.models import ImageModel, JobStatus, WorkMessage
from imagegen.jobs.queue import WorkQueue
from imagegen.jobs.repository import JobRepository
from imagegen.jobs.services import ImageJobService

pytestmark = [
    allure.epic("Status Query Service"),
    allure.feature("Creation and Listing"),
]


class BrokenDispatcher:
    def __init__(self, *, fail_after: int = 0) -> None:
        self.fail_after = fail_after
        self.sent: list[WorkMessage] = []

    def send(self, message: WorkMessage) -> str:
        if len(self.sent) >= self.fail_after:
            raise ConnectionError("queue unavailable")
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


@pytest.fixture()
def service(
    repository: JobRepository,
    archive: GenerationArchive,
    queue: WorkQueue,
) -> ImageJobService:
    return ImageJobService(repository=repository, archive=archive, dispatcher=queue)


def test_create_single_job_inserts_pending_and_enqueues(
    service: ImageJobService,
    queue: WorkQueue,
) -> None:
    (job,) = service.create_jobs(prompt="a red fox")

    assert job.status is JobStatus.PENDING
    assert job.prompt == "a red fox"
    assert job.model is ImageModel.FLUX_SCHNELL
    (delivery,) = queue.receive(worker_id="w1")
    assert delivery.message == WorkMessage(
        job_id=job.job_id,
        prompt="a red fox",
        model=ImageModel.FLUX_SCHNELL,
    )


def test_create_many_jobs_returns_ordered_distinct_ids(
    service: ImageJobService,
    queue: WorkQueue,
) -> None:
    jobs = service.create_jobs(prompt="five foxes", model="sdxl-base", count=5)

    assert len({job.job_id for job in jobs}) == 5
    assert all(job.model is ImageModel.SDXL_BASE for job in jobs)
    deliveries = queue.receive(worker_id="w1", max_messages=10)
    assert [item.message.job_id for item in deliveries] == [job.job_id for job in jobs]


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"prompt": ""}, "must not be empty"),
        ({"prompt": "   "}, "must not be empty"),
        ({"prompt": "ab"}, "between 3 and 1000"),
        ({"prompt": "x" * 1001}, "between 3 and 1000"),
        ({"prompt": "a fox", "model": "dall-e"}, "Unsupported model"),
        ({"prompt": "a fox", "count": 0}, "count must be between 1 and 20"),
        ({"prompt": "a fox", "count": 21}, "count must be between 1 and 20"),
        ({"prompt": "a fox", "count": True}, "count must be an integer"),
    ],
)
def test_create_rejects_invalid_input_without_writes(
    service: ImageJobService,
    repository: JobRepository,
    kwargs: dict,
    match: str,
) -> None:
    with pytest.raises(ValidationError, match=match):
        service.create_jobs(**kwargs)

    assert repository.list_jobs().total_count == 0


def test_dispatch_failure_leaves_stuck_pending_job(repository: JobRepository, archive) -> None:
    dispatcher = BrokenDispatcher(fail_after=1)
    service = ImageJobService(repository=repository, archive=archive, dispatcher=dispatcher)

    with pytest.raises(DispatchError) as raised:
        service.create_jobs(prompt="three foxes", count=3)

    stuck_id = raised.value.details["job_id"]
    assert raised.value.error_type == "dispatch_error"
    assert len(raised.value.details["created_job_ids"]) == 2
    assert repository.get_job(job_id=stuck_id).status is JobStatus.PENDING
    assert repository.list_jobs().total_count == 2
    assert len(dispatcher.sent) == 1


def test_get_job_missing_raises_not_found(service: ImageJobService) -> None:
    with pytest.raises(NotFoundError) as raised:
        service.get_job(job_id="does-not-exist")

    assert raised.value.to_envelope() == {
        "success": False,
        "error": "Job not found",
        "error_type": "not_found",
        "job_id": "does-not-exist",
    }


def test_list_jobs_pagination_is_consistent(service: ImageJobService) -> None:
    created = service.create_jobs(prompt="paged foxes", count=12)

    first = service.list_jobs()
    assert first.limit == 10
    assert first.returned_count == 10
    assert first.total_count == 12
    assert first.has_more

    second = service.list_jobs(limit=10, offset=10)
    assert second.returned_count == 2
    assert not second.has_more

    seen = [job.job_id for job in first.items + second.items]
    assert sorted(seen) == sorted(job.job_id for job in created)
    assert len(set(seen)) == 12


def test_list_jobs_filters_by_status(service: ImageJobService, repository: JobRepository) -> None:
    jobs = service.create_jobs(prompt="filter foxes", count=3)
    repository.mark_processing(job_id=jobs[0].job_id)
    repository.mark_failed(job_id=jobs[0].job_id, error="boom")

    failed = service.list_jobs(status="failed")
    assert [job.job_id for job in failed.items] == [jobs[0].job_id]
    assert service.list_jobs(status="pending").total_count == 2
    assert service.list_jobs(status=JobStatus.COMPLETED).total_count == 0


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"limit": 0}, "limit must be between 1 and 50"),
        ({"limit": 51}, "limit must be between 1 and 50"),
        ({"offset": -1}, "offset must be >= 0"),
        ({"status": "cancelled"}, "Unsupported status"),
    ],
)
def test_list_jobs_rejects_bad_bounds(service: ImageJobService, kwargs: dict, match: str) -> None:
    with pytest.raises(ValidationError, match=match):
        service.list_jobs(**kwargs)


def test_list_generations_empty_page(service: ImageJobService) -> None:
    page = service.list_generations(limit=5)

    assert page.items == []
    assert page.total_count == 0
    assert not page.has_more


def test_prompt_is_stored_verbatim(service: ImageJobService, queue: WorkQueue) -> None:
    (job,) = service.create_jobs(prompt="  a red fox  ")

    assert job.prompt == "  a red fox  "
    (delivery,) = queue.receive(worker_id="w1")
    assert delivery.message.prompt == "  a red fox  "
    assert service.create_jobs(prompt=" ab")[0].prompt == " ab"
