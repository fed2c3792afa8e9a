"""Runtime configuration for job creation, processing and waiting."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from imagegen.jobs.models import DEFAULT_MODEL, ImageModel

SUPPORTED_SYNTHESIS_BACKENDS = ("workers_ai", "placeholder")
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class JobSettings:
    """Job creation and listing bounds."""

    prompt_min_chars: int = 3
    prompt_max_chars: int = 1_000
    max_count: int = 20
    default_model: ImageModel = DEFAULT_MODEL
    list_default_limit: int = 10
    list_max_limit: int = 50
    estimated_time_seconds: int = 30


@dataclass(slots=True)
class WaitSettings:
    """Wait coordinator timing."""

    base_timeout_seconds: float = 60.0
    per_job_timeout_seconds: float = 3.0
    poll_interval_seconds: float = 3.0
    max_job_ids: int = 20


@dataclass(slots=True)
class QueueSettings:
    """Work queue delivery and consumer settings."""

    max_attempts: int = 3
    visibility_timeout_seconds: int = 300
    retry_base_seconds: int = 5
    retry_max_seconds: int = 300
    batch_size: int = 10
    poll_interval_seconds: float = 2.0
    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")


@dataclass(slots=True)
class SynthesisSettings:
    """Image synthesis backend settings."""

    backend: str = "workers_ai"
    account_id: str = ""
    api_token: str = ""
    api_base_url: str = "https://api.cloudflare.com/client/v4"
    request_timeout_seconds: float = 120.0
    max_retries: int = 2


@dataclass(slots=True)
class ArtifactSettings:
    """Local artifact storage settings."""

    root_dir: Path = Path(".imagegen_artifacts")
    public_base_url: str = "http://localhost:8000/images"


@dataclass(slots=True)
class OrphanSettings:
    """Detection window for jobs stuck in pending without a work unit."""

    grace_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".imagegen.db")
    log_level: str = "WARNING"
    jobs: JobSettings = field(default_factory=JobSettings)
    wait: WaitSettings = field(default_factory=WaitSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    synthesis: SynthesisSettings = field(default_factory=SynthesisSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)
    orphans: OrphanSettings = field(default_factory=OrphanSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IMAGEGEN_DB_PATH", ".imagegen.db")),
            log_level=os.getenv("IMAGEGEN_LOG_LEVEL", "WARNING").strip().upper(),
            jobs=JobSettings(
                prompt_max_chars=int(os.getenv("IMAGEGEN_PROMPT_MAX_CHARS", "1000")),
                max_count=int(os.getenv("IMAGEGEN_MAX_COUNT", "20")),
                default_model=_env_model("IMAGEGEN_DEFAULT_MODEL", DEFAULT_MODEL),
                list_default_limit=int(os.getenv("IMAGEGEN_LIST_DEFAULT_LIMIT", "10")),
                list_max_limit=int(os.getenv("IMAGEGEN_LIST_MAX_LIMIT", "50")),
            ),
            wait=WaitSettings(
                base_timeout_seconds=float(os.getenv("IMAGEGEN_WAIT_BASE_SECONDS", "60")),
                per_job_timeout_seconds=float(os.getenv("IMAGEGEN_WAIT_PER_JOB_SECONDS", "3")),
                poll_interval_seconds=float(os.getenv("IMAGEGEN_WAIT_POLL_SECONDS", "3")),
            ),
            queue=QueueSettings(
                max_attempts=int(os.getenv("IMAGEGEN_QUEUE_MAX_ATTEMPTS", "3")),
                visibility_timeout_seconds=int(
                    os.getenv("IMAGEGEN_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300"),
                ),
                retry_base_seconds=int(os.getenv("IMAGEGEN_QUEUE_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=int(os.getenv("IMAGEGEN_QUEUE_RETRY_MAX_SECONDS", "300")),
                batch_size=int(os.getenv("IMAGEGEN_QUEUE_BATCH_SIZE", "10")),
                poll_interval_seconds=float(os.getenv("IMAGEGEN_QUEUE_POLL_SECONDS", "2.0")),
                worker_id=os.getenv("IMAGEGEN_WORKER_ID", f"worker-{os.getpid()}"),
            ),
            synthesis=SynthesisSettings(
                backend=os.getenv("IMAGEGEN_SYNTHESIS_BACKEND", "workers_ai").strip().lower(),
                account_id=os.getenv("IMAGEGEN_CF_ACCOUNT_ID", ""),
                api_token=os.getenv("IMAGEGEN_CF_API_TOKEN", ""),
                api_base_url=os.getenv(
                    "IMAGEGEN_CF_API_BASE_URL",
                    "https://api.cloudflare.com/client/v4",
                ),
                request_timeout_seconds=float(
                    os.getenv("IMAGEGEN_SYNTHESIS_TIMEOUT_SECONDS", "120"),
                ),
                max_retries=int(os.getenv("IMAGEGEN_SYNTHESIS_MAX_RETRIES", "2")),
            ),
            artifacts=ArtifactSettings(
                root_dir=Path(os.getenv("IMAGEGEN_ARTIFACTS_DIR", ".imagegen_artifacts")),
                public_base_url=os.getenv(
                    "IMAGEGEN_PUBLIC_BASE_URL",
                    "http://localhost:8000/images",
                ),
            ),
            orphans=OrphanSettings(
                grace_seconds=int(os.getenv("IMAGEGEN_ORPHAN_GRACE_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"IMAGEGEN_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}.")
        if self.jobs.prompt_max_chars < self.jobs.prompt_min_chars:
            raise ValueError("IMAGEGEN_PROMPT_MAX_CHARS must be >= the minimum prompt length.")
        if self.jobs.max_count <= 0:
            raise ValueError("IMAGEGEN_MAX_COUNT must be > 0.")
        if not 0 < self.jobs.list_default_limit <= self.jobs.list_max_limit:
            raise ValueError(
                "IMAGEGEN_LIST_DEFAULT_LIMIT must be > 0 and <= IMAGEGEN_LIST_MAX_LIMIT.",
            )
        if self.wait.base_timeout_seconds < 0 or self.wait.per_job_timeout_seconds < 0:
            raise ValueError("Wait timeouts must be >= 0.")
        if self.wait.poll_interval_seconds <= 0:
            raise ValueError("IMAGEGEN_WAIT_POLL_SECONDS must be > 0.")
        if self.queue.max_attempts <= 0:
            raise ValueError("IMAGEGEN_QUEUE_MAX_ATTEMPTS must be > 0.")
        if self.queue.visibility_timeout_seconds <= 0:
            raise ValueError("IMAGEGEN_QUEUE_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.queue.batch_size <= 0:
            raise ValueError("IMAGEGEN_QUEUE_BATCH_SIZE must be > 0.")
        if self.synthesis.backend not in SUPPORTED_SYNTHESIS_BACKENDS:
            raise ValueError(
                "Unsupported IMAGEGEN_SYNTHESIS_BACKEND: "
                f"{self.synthesis.backend!r}. Expected one of "
                f"{', '.join(SUPPORTED_SYNTHESIS_BACKENDS)}.",
            )
        _validate_http_url(self.artifacts.public_base_url, name="IMAGEGEN_PUBLIC_BASE_URL")
        if self.orphans.grace_seconds < 0:
            raise ValueError("IMAGEGEN_ORPHAN_GRACE_SECONDS must be >= 0.")

    def validate_for_workers_ai(self) -> None:
        """Raise configuration error if Workers AI credentials are missing."""

        if not self.synthesis.account_id or not self.synthesis.api_token:
            raise ValueError(
                "Workers AI synthesis requires IMAGEGEN_CF_ACCOUNT_ID and IMAGEGEN_CF_API_TOKEN. "
                "Set IMAGEGEN_SYNTHESIS_BACKEND=placeholder for offline runs.",
            )
        _validate_http_url(self.synthesis.api_base_url, name="IMAGEGEN_CF_API_BASE_URL")


def _env_model(name: str, default: ImageModel) -> ImageModel:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return ImageModel(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(model.value for model in ImageModel)
        raise ValueError(f"Invalid {name}: {value!r}. Expected one of {choices}.") from error


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
