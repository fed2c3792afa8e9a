"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from imagegen.jobs.artifacts import LocalArtifactStore
from imagegen.jobs.errors import SynthesisError
from imagegen.jobs.history import GenerationArchive
from imagegen.jobs.models import ImageModel
from imagegen.jobs.queue import WorkQueue
from imagegen.jobs.repository import JobRepository
from imagegen.jobs.synthesis import SynthesisResult

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"


class FakeSynthesizer:
    """Returns canned bytes, or raises for the first ``failures`` calls."""

    def __init__(self, *, image_bytes: bytes = PNG_BYTES, failures: int = 0) -> None:
        self.image_bytes = image_bytes
        self.failures = failures
        self.calls: list[tuple[str, ImageModel]] = []

    def synthesize(self, *, prompt: str, model: ImageModel) -> SynthesisResult:
        self.calls.append((prompt, model))
        if self.failures > 0:
            self.failures -= 1
            raise SynthesisError("Image generation failed: model overloaded")
        return SynthesisResult(image_bytes=self.image_bytes, model=model, generation_time_ms=12)


class FakeClock:
    """Monotonic clock advanced only by the fake sleeper."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "imagegen.db"
    repository = JobRepository(path)
    repository.init_schema()
    repository.close()
    return path


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def archive(db_path: Path) -> Iterator[GenerationArchive]:
    archive = GenerationArchive(db_path)
    yield archive
    archive.close()


@pytest.fixture()
def queue(db_path: Path) -> Iterator[WorkQueue]:
    queue = WorkQueue(db_path, max_attempts=3, retry_base_seconds=0, retry_max_seconds=0)
    yield queue
    queue.close()


@pytest.fixture()
def artifact_store(tmp_path: Path) -> LocalArtifactStore:
    return LocalArtifactStore(
        root_dir=tmp_path / "artifacts",
        public_base_url="https://images.example.com/generated",
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
