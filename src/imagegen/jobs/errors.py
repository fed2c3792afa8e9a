"""Error taxonomy surfaced by job operations.

Every public operation reports failures through one of these types; the tool
router turns them into ``{"success": False, ...}`` envelopes.
"""

from __future__ import annotations

from typing import Any


class ImageJobError(Exception):
    """Base class for typed, caller-visible failures."""

    error_type = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_envelope(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "error_type": self.error_type,
            **self.details,
        }


class ValidationError(ImageJobError):
    """Malformed input; no state was mutated."""

    error_type = "validation_error"


class NotFoundError(ImageJobError):
    """Referenced job identifier(s) are absent from the store."""

    error_type = "not_found"


class ProcessingError(ImageJobError):
    """Synthesis or storage failure during background processing."""

    error_type = "processing_error"


class SynthesisError(ProcessingError):
    """The synthesis collaborator failed or returned an unusable payload."""


class StorageError(ProcessingError):
    """The artifact store could not persist an image."""


class JobFailedError(ProcessingError):
    """A waited-on job reached the failed state."""


class WaitTimeoutError(ImageJobError):
    """Wait deadline passed while jobs were still pending or processing."""

    error_type = "timeout"


class DispatchError(ImageJobError):
    """A work unit could not be enqueued after its job row was created."""

    error_type = "dispatch_error"
