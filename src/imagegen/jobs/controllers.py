"""Controllers for imagegen CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from imagegen.config import Settings
from imagegen.jobs.artifacts import LocalArtifactStore
from imagegen.jobs.history import GenerationArchive
from imagegen.jobs.orphans import find_orphaned_jobs
from imagegen.jobs.processor import JobProcessor, QueueConsumer
from imagegen.jobs.queue import WorkQueue
from imagegen.jobs.repository import JobRepository
from imagegen.jobs.services import ImageJobService
from imagegen.jobs.synthesis import build_synthesizer
from imagegen.jobs.tools import ToolRouter
from imagegen.jobs.waiter import WaitCoordinator


@dataclass(slots=True)
class ToolCallCommand:
    """CLI input for any routed tool call."""

    db_path: Path | None
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for consumer execution."""

    db_path: Path | None
    once: bool
    max_batches: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class OrphansCommand:
    db_path: Path | None
    grace_seconds: int | None


@dataclass(slots=True)
class CommandResult:
    """Printable output plus whether the command succeeded."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class _Stores:
    repository: JobRepository
    archive: GenerationArchive
    queue: WorkQueue


@dataclass(slots=True)
class ImageGenCliController:
    """Coordinates job, queue and inspection CLI operations."""

    def call_tool(self, command: ToolCallCommand) -> CommandResult:
        settings = _load_settings(command.db_path)
        with _stores(settings) as stores:
            router = ToolRouter(
                service=ImageJobService(
                    repository=stores.repository,
                    archive=stores.archive,
                    dispatcher=stores.queue,
                    settings=settings.jobs,
                ),
                waiter=WaitCoordinator(repository=stores.repository, settings=settings.wait),
            )
            envelope = router.call(command.name, command.arguments)
        return CommandResult(
            lines=[json.dumps(envelope, indent=2, ensure_ascii=False)],
            success=bool(envelope.get("success")),
        )

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        synthesizer = build_synthesizer(settings)
        try:
            with _stores(settings) as stores:
                consumer = QueueConsumer(
                    queue=stores.queue,
                    processor=JobProcessor(
                        repository=stores.repository,
                        archive=stores.archive,
                        synthesizer=synthesizer,
                        artifacts=LocalArtifactStore(
                            root_dir=settings.artifacts.root_dir,
                            public_base_url=settings.artifacts.public_base_url,
                        ),
                    ),
                    worker_id=settings.queue.worker_id,
                    batch_size=settings.queue.batch_size,
                    visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
                    poll_interval_seconds=settings.queue.poll_interval_seconds,
                )
                summary = (
                    consumer.run_once()
                    if command.once
                    else consumer.run_loop(
                        max_batches=command.max_batches,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            close = getattr(synthesizer, "close", None)
            if callable(close):
                close()

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered} skipped={summary.skipped} "
            f"idle_polls={summary.idle_polls}",
        ]

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _stores(settings) as stores:
            units = stores.queue.list_dead_letters(limit=command.limit)
        if not units:
            return ["No dead-lettered work units."]
        lines = [f"Dead-lettered work units: {len(units)}"]
        lines.extend(
            f"- message_id={unit.message_id} job_id={unit.job_id} "
            f"attempts={unit.attempts}/{unit.max_attempts} "
            f"updated_at={unit.updated_at.isoformat()} error={unit.last_error or '-'}"
            for unit in units
        )
        return lines

    def orphans(self, command: OrphansCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        grace_seconds = (
            settings.orphans.grace_seconds if command.grace_seconds is None else command.grace_seconds
        )
        with _stores(settings) as stores:
            jobs = find_orphaned_jobs(
                repository=stores.repository,
                queue=stores.queue,
                grace_seconds=grace_seconds,
            )
        if not jobs:
            return [f"No orphaned pending jobs older than {grace_seconds}s."]
        lines = [f"Orphaned pending jobs: {len(jobs)}"]
        lines.extend(
            f"- job_id={job.job_id} model={job.model.value} "
            f"created_at={job.created_at.isoformat()} prompt={job.prompt[:60]!r}"
            for job in jobs
        )
        return lines


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _stores(settings: Settings) -> Iterator[_Stores]:
    repository = JobRepository(db_path=settings.db_path)
    repository.init_schema()
    archive = GenerationArchive(db_path=settings.db_path)
    queue = WorkQueue(
        db_path=settings.db_path,
        max_attempts=settings.queue.max_attempts,
        retry_base_seconds=settings.queue.retry_base_seconds,
        retry_max_seconds=settings.queue.retry_max_seconds,
    )
    try:
        yield _Stores(repository=repository, archive=archive, queue=queue)
    finally:
        queue.close()
        archive.close()
        repository.close()
