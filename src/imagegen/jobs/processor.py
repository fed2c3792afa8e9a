"""Background processing of queued generation work units."""

from __future__ import annotations

import hashlib
import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from imagegen.jobs.artifacts import ArtifactStore, derive_object_key
from imagegen.jobs.errors import ProcessingError
from imagegen.jobs.history import GenerationArchive
from imagegen.jobs.models import ConsumerRunSummary, GenerationWrite, JobStatus, JobView
from imagegen.jobs.queue import Delivery, RetryOutcome, WorkQueue
from imagegen.jobs.repository import JobRepository
from imagegen.jobs.synthesis import ImageSynthesizer
from imagegen.storage.common import utc_now

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    FAILED = "failed"


class JobProcessor:
    """Runs one delivery through synthesis, storage and the job lifecycle.

    Deliveries are at-least-once. A job that is already ``completed`` is
    acked without reprocessing; its history row is appended if an earlier
    delivery committed the completion but failed before recording it. The
    unique ``job_id`` index keeps that append idempotent.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        archive: GenerationArchive,
        synthesizer: ImageSynthesizer,
        artifacts: ArtifactStore,
    ) -> None:
        self.repository = repository
        self.archive = archive
        self.synthesizer = synthesizer
        self.artifacts = artifacts

    def process(self, delivery: Delivery) -> ProcessOutcome:
        message = delivery.message
        job_id = message.job_id

        if not self.repository.mark_processing(job_id=job_id):
            job = self.repository.get_job(job_id=job_id)
            if job is None:
                logger.warning("Dropping work unit %s: job %s not found", delivery.message_id, job_id)
                delivery.ack()
                return ProcessOutcome.DROPPED
            logger.info("Job %s already completed; acking duplicate delivery", job_id)
            self._ensure_generation(job)
            delivery.ack()
            return ProcessOutcome.DUPLICATE

        logger.info("Job %s processing (attempt %d)", job_id, delivery.attempt)
        try:
            result = self.synthesizer.synthesize(prompt=message.prompt, model=message.model)
            generated_at = utc_now()
            key = derive_object_key(
                prompt=message.prompt,
                image_bytes=result.image_bytes,
                timestamp_ms=int(generated_at.timestamp() * 1000),
            )
            artifact = self.artifacts.store(
                image_bytes=result.image_bytes,
                name=key,
                metadata={
                    "prompt": message.prompt,
                    "model": message.model.value,
                    "generated_at": generated_at.isoformat(),
                    "generation_time_ms": result.generation_time_ms,
                    "size_bytes": len(result.image_bytes),
                    "sha256": hashlib.sha256(result.image_bytes).hexdigest(),
                },
            )
        except ProcessingError as error:
            return self._fail(delivery=delivery, error=error.message)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while processing job %s", job_id)
            return self._fail(delivery=delivery, error=f"Unexpected error: {error}")

        if not self.repository.mark_completed(job_id=job_id, image_url=artifact.url):
            logger.info("Job %s was completed by another delivery", job_id)
            job = self.repository.get_job(job_id=job_id)
            if job is not None:
                self._ensure_generation(job)
            delivery.ack()
            return ProcessOutcome.DUPLICATE

        self.archive.append(
            GenerationWrite(
                job_id=job_id,
                image_url=artifact.url,
                prompt=message.prompt,
                model=message.model,
            ),
        )
        delivery.ack()
        logger.info("Job %s completed: %s", job_id, artifact.url)
        return ProcessOutcome.COMPLETED

    def _ensure_generation(self, job: JobView) -> None:
        # Completion may have committed without its history row.
        if job.status is not JobStatus.COMPLETED or job.image_url is None:
            return
        restored = self.archive.append(
            GenerationWrite(
                job_id=job.job_id,
                image_url=job.image_url,
                prompt=job.prompt,
                model=job.model,
            ),
        )
        if restored is not None:
            logger.warning("Restored missing generation record for job %s", job.job_id)

    def _fail(self, *, delivery: Delivery, error: str) -> ProcessOutcome:
        job_id = delivery.message.job_id
        self.repository.mark_failed(job_id=job_id, error=error)
        logger.warning("Job %s failed on attempt %d: %s", job_id, delivery.attempt, error)
        outcome = delivery.retry(error)
        if outcome is RetryOutcome.REQUEUED:
            return ProcessOutcome.RETRIED
        if outcome is RetryOutcome.DEAD_LETTERED:
            logger.error("Job %s exhausted its attempts; work unit dead-lettered", job_id)
            return ProcessOutcome.DEAD_LETTERED
        return ProcessOutcome.FAILED


class QueueConsumer:
    """Drains the work queue in batches and feeds the processor."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: WorkQueue,
        processor: JobProcessor,
        worker_id: str,
        batch_size: int = 10,
        visibility_timeout_seconds: int = 300,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> ConsumerRunSummary:
        """Receive and process at most one batch."""

        summary = ConsumerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        deliveries = self.queue.receive(
            worker_id=self.worker_id,
            max_messages=self.batch_size,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
        )
        if not deliveries:
            summary.idle_polls = 1
            return summary

        for delivery in deliveries:
            if self._stop_requested:
                # Unprocessed leases expire and are redelivered.
                break
            summary.processed += 1
            try:
                outcome = self.processor.process(delivery)
            except Exception:  # noqa: BLE001
                # The lease expires and the unit is redelivered.
                logger.exception(
                    "Unhandled error processing work unit %s (job %s)",
                    delivery.message_id,
                    delivery.message.job_id,
                )
                summary.failed += 1
                continue
            _count_outcome(summary, outcome)
        return summary

    def run_loop(
        self,
        *,
        max_batches: int | None = None,
        max_idle_polls: int = 1,
    ) -> ConsumerRunSummary:
        """Run until the queue stays idle, ``max_batches`` is reached or a stop signal arrives.

        Args:
            max_batches: Stop after this many non-empty batches (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = ConsumerRunSummary()
        batches = 0
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_batches is not None and batches >= max_batches:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                batches += 1

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Consumer %s stop requested (%s)", self.worker_id, signal_name)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _count_outcome(summary: ConsumerRunSummary, outcome: ProcessOutcome) -> None:
    if outcome is ProcessOutcome.COMPLETED:
        summary.completed += 1
    elif outcome in {ProcessOutcome.DUPLICATE, ProcessOutcome.DROPPED}:
        summary.skipped += 1
    elif outcome is ProcessOutcome.RETRIED:
        summary.failed += 1
        summary.retried += 1
    elif outcome is ProcessOutcome.DEAD_LETTERED:
        summary.failed += 1
        summary.dead_lettered += 1
    else:
        summary.failed += 1
