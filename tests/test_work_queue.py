from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from imagegen.jobs.models import ImageModel, WorkMessage, WorkUnitStatus
from imagegen.jobs.queue import RetryOutcome, WorkQueue
from imagegen.storage.sqlmodel_models import WorkUnit

pytestmark = [
    allure.epic("Work Dispatcher"),
    allure.feature("At-least-once Delivery"),
]


def _message(job_id: str = "job-1") -> WorkMessage:
    return WorkMessage(job_id=job_id, prompt="a quiet harbor", model=ImageModel.FLUX_SCHNELL)


def test_send_and_receive_leases_unit(queue: WorkQueue) -> None:
    message_id = queue.send(_message())

    deliveries = queue.receive(worker_id="w1", max_messages=5)

    assert len(deliveries) == 1
    delivery = deliveries[0]
    assert delivery.message_id == message_id
    assert delivery.message == _message()
    assert delivery.attempt == 1
    assert queue.receive(worker_id="w2") == []

    assert delivery.ack()
    units = queue.list_units_for_job(job_id="job-1")
    assert [unit.status for unit in units] == [WorkUnitStatus.ACKED]
    assert not delivery.ack()


def test_receive_respects_batch_size(queue: WorkQueue) -> None:
    for index in range(3):
        queue.send(_message(f"job-{index}"))

    first = queue.receive(worker_id="w1", max_messages=2)
    second = queue.receive(worker_id="w1", max_messages=2)

    assert [item.message.job_id for item in first] == ["job-0", "job-1"]
    assert [item.message.job_id for item in second] == ["job-2"]


def test_expired_lease_is_redelivered(queue: WorkQueue) -> None:
    queue.send(_message())

    first = queue.receive(worker_id="w1", visibility_timeout_seconds=0)
    second = queue.receive(worker_id="w2", visibility_timeout_seconds=300)

    assert len(first) == 1
    assert len(second) == 1
    assert second[0].message_id == first[0].message_id
    assert second[0].attempt == 2


def test_retry_requeues_then_dead_letters_after_max_attempts(queue: WorkQueue) -> None:
    queue.send(_message())

    outcomes = []
    for _ in range(3):
        (delivery,) = queue.receive(worker_id="w1")
        outcomes.append(delivery.retry("synthesis failed"))

    assert outcomes == [
        RetryOutcome.REQUEUED,
        RetryOutcome.REQUEUED,
        RetryOutcome.DEAD_LETTERED,
    ]
    assert queue.receive(worker_id="w1") == []
    (dead,) = queue.list_dead_letters()
    assert dead.job_id == "job-1"
    assert dead.attempts == 3
    assert dead.last_error == "synthesis failed"


def test_expired_lease_without_attempts_left_is_dead_lettered(db_path: Path) -> None:
    queue = WorkQueue(db_path, max_attempts=1, retry_base_seconds=0, retry_max_seconds=0)
    queue.send(_message())

    assert len(queue.receive(worker_id="w1", visibility_timeout_seconds=0)) == 1
    assert queue.receive(worker_id="w2") == []

    (dead,) = queue.list_dead_letters()
    assert dead.status is WorkUnitStatus.DEAD_LETTER
    queue.close()


def test_malformed_payload_is_dead_lettered(queue: WorkQueue) -> None:
    message_id = queue.send(_message())
    with Session(queue.engine) as session:
        session.exec(
            sa_update(WorkUnit)
            .where(col(WorkUnit.message_id) == message_id)
            .values(payload_json=json.dumps({"prompt": "missing job id"})),
        )
        session.commit()

    assert queue.receive(worker_id="w1") == []
    (dead,) = queue.list_dead_letters()
    assert "Malformed" in (dead.last_error or "")


def test_retry_of_acked_unit_is_noop(queue: WorkQueue) -> None:
    queue.send(_message())
    (delivery,) = queue.receive(worker_id="w1")
    delivery.ack()

    assert delivery.retry("late") is RetryOutcome.NOOP


def test_job_ids_with_units(queue: WorkQueue) -> None:
    queue.send(_message("job-a"))

    assert queue.job_ids_with_units(job_ids=["job-a", "job-b"]) == {"job-a"}
    assert queue.job_ids_with_units(job_ids=[]) == set()


def test_unit_is_leased_once_per_receive_even_if_lease_expires(queue: WorkQueue) -> None:
    queue.send(_message("job-a"))
    queue.send(_message("job-b"))

    deliveries = queue.receive(worker_id="w1", max_messages=10, visibility_timeout_seconds=0)

    assert sorted(item.message.job_id for item in deliveries) == ["job-a", "job-b"]
    assert [item.attempt for item in deliveries] == [1, 1]
    assert queue.list_dead_letters() == []
    (unit,) = queue.list_units_for_job(job_id="job-a")
    assert unit.status is WorkUnitStatus.LEASED
    assert unit.attempts == 1


def test_receive_rejects_negative_visibility_timeout(queue: WorkQueue) -> None:
    queue.send(_message())

    with pytest.raises(ValueError, match="visibility_timeout_seconds"):
        queue.receive(worker_id="w1", visibility_timeout_seconds=-1)
