"""Artifact storage for generated images."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from imagegen.jobs.errors import StorageError

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")
SLUG_MAX_CHARS = 50


@dataclass(slots=True)
class StoredArtifact:
    key: str
    url: str
    size_bytes: int
    sha256: str


class ArtifactStore(Protocol):
    """Persists image bytes and returns a public URL."""

    def store(self, *, image_bytes: bytes, name: str, metadata: dict[str, Any]) -> StoredArtifact:
        """Write one object; raise StorageError on failure."""


def slugify_prompt(prompt: str) -> str:
    """Lower-case, collapse non-alphanumerics to ``-``, trim, cap at 50 chars."""

    slug = _SLUG_RE.sub("-", prompt.lower()).strip("-")
    return slug[:SLUG_MAX_CHARS]


def derive_object_key(*, prompt: str, image_bytes: bytes, timestamp_ms: int) -> str:
    sha8 = hashlib.sha256(image_bytes).hexdigest()[:8]
    slug = slugify_prompt(prompt) or "image"
    return f"{timestamp_ms}-{slug}-{sha8}.png"


class LocalArtifactStore:
    """Directory-backed store with a ``.meta.json`` sidecar per object."""

    def __init__(self, *, root_dir: Path, public_base_url: str) -> None:
        self.root_dir = root_dir
        self.public_base_url = public_base_url.rstrip("/")

    def store(self, *, image_bytes: bytes, name: str, metadata: dict[str, Any]) -> StoredArtifact:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise StorageError(f"Invalid artifact name: {name!r}")
        target = self.root_dir / name
        sidecar = self.root_dir / f"{name}.meta.json"
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            _atomic_write(target, image_bytes)
            _atomic_write(
                sidecar,
                json.dumps(
                    {"content_type": "image/png", **metadata},
                    ensure_ascii=False,
                    indent=2,
                    sort_keys=True,
                ).encode("utf-8"),
            )
        except OSError as error:
            raise StorageError(f"Image upload failed: {error}") from error

        url = f"{self.public_base_url}/{name}"
        logger.info("Stored artifact %s (%d bytes)", name, len(image_bytes))
        return StoredArtifact(
            key=name,
            url=url,
            size_bytes=len(image_bytes),
            sha256=hashlib.sha256(image_bytes).hexdigest(),
        )

    def read_metadata(self, name: str) -> dict[str, Any]:
        return json.loads((self.root_dir / f"{name}.meta.json").read_text("utf-8"))


def _atomic_write(path: Path, data: bytes) -> None:
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        Path(temp_name).replace(path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise
