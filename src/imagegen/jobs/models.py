"""Domain models for image generation jobs, history and work units."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class ImageModel(str, Enum):
    """Supported synthesis models."""

    FLUX_SCHNELL = "flux-schnell"
    SDXL_LIGHTNING = "sdxl-lightning"
    SDXL_BASE = "sdxl-base"


DEFAULT_MODEL = ImageModel.FLUX_SCHNELL

# Workers AI catalog identifiers for each friendly model name.
WORKERS_AI_MODEL_IDS: dict[ImageModel, str] = {
    ImageModel.FLUX_SCHNELL: "@cf/black-forest-labs/flux-1-schnell",
    ImageModel.SDXL_LIGHTNING: "@cf/bytedance/stable-diffusion-xl-lightning",
    ImageModel.SDXL_BASE: "@cf/stabilityai/stable-diffusion-xl-base-1.0",
}


class WorkUnitStatus(str, Enum):
    """Delivery states of a queued work unit."""

    QUEUED = "queued"
    LEASED = "leased"
    ACKED = "acked"
    DEAD_LETTER = "dead_letter"


@dataclass(slots=True)
class JobCreate:
    """Input payload for inserting one pending job."""

    prompt: str
    model: ImageModel
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job row."""

    job_id: str
    status: JobStatus
    prompt: str
    model: ImageModel
    image_url: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "status": self.status.value,
            "prompt": self.prompt,
            "model": self.model.value,
            "image_url": self.image_url,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class GenerationWrite:
    """Immutable history fact appended when a job completes."""

    job_id: str
    image_url: str
    prompt: str
    model: ImageModel


@dataclass(slots=True)
class GenerationView:
    """Stored generation history row."""

    generation_id: str
    job_id: str
    image_url: str
    prompt: str
    model: ImageModel
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.generation_id,
            "job_id": self.job_id,
            "image_url": self.image_url,
            "prompt": self.prompt,
            "model": self.model.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class WorkMessage:
    """Body of one work unit: everything needed to process a job."""

    job_id: str
    prompt: str
    model: ImageModel

    def to_payload(self) -> dict[str, str]:
        return {"job_id": self.job_id, "prompt": self.prompt, "model": self.model.value}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkMessage:
        return cls(
            job_id=str(payload["job_id"]),
            prompt=str(payload["prompt"]),
            model=ImageModel(payload.get("model") or DEFAULT_MODEL.value),
        )


@dataclass(slots=True)
class WorkUnitView:
    """Queue row for inspection (dead letters, orphan checks)."""

    message_id: str
    job_id: str
    status: WorkUnitStatus
    attempts: int
    max_attempts: int
    visible_after: datetime
    leased_by: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class Page(Generic[T]):
    """One page of a creation-time-descending listing."""

    items: list[T]
    total_count: int
    limit: int
    offset: int

    @property
    def returned_count(self) -> int:
        return len(self.items)

    @property
    def has_more(self) -> bool:
        return self.offset + self.returned_count < self.total_count


@dataclass(slots=True)
class ConsumerRunSummary:
    """Aggregate consumer counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: ConsumerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls

