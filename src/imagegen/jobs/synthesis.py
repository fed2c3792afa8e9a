"""Image synthesis collaborators and response-shape normalization."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import struct
import time
import zlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from imagegen.config import Settings
from imagegen.jobs.errors import SynthesisError
from imagegen.jobs.models import WORKERS_AI_MODEL_IDS, ImageModel

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "imagegen/1.0"


@dataclass(slots=True)
class SynthesisResult:
    """Raw image bytes plus how long the backend took."""

    image_bytes: bytes
    model: ImageModel
    generation_time_ms: int


class ImageSynthesizer(Protocol):
    """Turns a prompt into image bytes."""

    def synthesize(self, *, prompt: str, model: ImageModel) -> SynthesisResult:
        """Generate one image; raise SynthesisError on failure."""


def normalize_image_payload(payload: Any) -> bytes:
    """Reduce any supported backend response shape to raw image bytes.

    Checked in order:

    1. bytes-like values are returned as bytes.
    2. A mapping holding an ``image`` entry, optionally nested under
       ``result``; the entry may be base64 text, bytes or a list of ints.
    3. A byte stream: an object with ``read()`` or an iterable of chunks.

    Anything else raises SynthesisError.
    """

    if isinstance(payload, bytes | bytearray | memoryview):
        return _non_empty(bytes(payload))

    if isinstance(payload, Mapping):
        container: Any = payload
        inner = payload.get("result")
        if "image" not in container and isinstance(inner, Mapping):
            container = inner
        if "image" not in container:
            keys = ", ".join(sorted(str(key) for key in payload)) or "none"
            raise SynthesisError(f"Response object has no image field (keys: {keys}).")
        return _non_empty(_decode_image_value(container["image"]))

    reader = getattr(payload, "read", None)
    if callable(reader):
        data = reader()
        if not isinstance(data, bytes | bytearray | memoryview):
            raise SynthesisError(f"Stream returned {type(data).__name__}, expected bytes.")
        return _non_empty(bytes(data))

    if isinstance(payload, Iterable) and not isinstance(payload, str):
        chunks: list[bytes] = []
        for chunk in payload:
            if not isinstance(chunk, bytes | bytearray | memoryview):
                raise SynthesisError(
                    f"Stream yielded {type(chunk).__name__}, expected byte chunks.",
                )
            chunks.append(bytes(chunk))
        return _non_empty(b"".join(chunks))

    raise SynthesisError(f"Unexpected response type from synthesis: {type(payload).__name__}.")


def _decode_image_value(value: Any) -> bytes:
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as error:
            raise SynthesisError(f"Image field is not valid base64: {error}") from error
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value)
    if isinstance(value, list | tuple):
        try:
            return bytes(value)
        except (TypeError, ValueError) as error:
            raise SynthesisError(f"Image field is not a byte sequence: {error}") from error
    raise SynthesisError(f"Unsupported image field type: {type(value).__name__}.")


def _non_empty(data: bytes) -> bytes:
    if not data:
        raise SynthesisError("Synthesis returned an empty image.")
    return data


class WorkersAiSynthesizer:
    """Cloudflare Workers AI client over the REST ``ai/run`` endpoint."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        account_id: str,
        api_token: str,
        api_base_url: str = "https://api.cloudflare.com/client/v4",
        timeout_seconds: float = 120.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._account_id = account_id
        self._api_base_url = api_base_url.rstrip("/")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_token}",
                "User-Agent": DEFAULT_USER_AGENT,
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def endpoint_for(self, model: ImageModel) -> str:
        model_id = WORKERS_AI_MODEL_IDS[model]
        return f"{self._api_base_url}/accounts/{self._account_id}/ai/run/{model_id}"

    def synthesize(self, *, prompt: str, model: ImageModel) -> SynthesisResult:
        url = self.endpoint_for(model)
        logger.info("Generating image with model %s", WORKERS_AI_MODEL_IDS[model])
        started = time.monotonic()
        try:
            response = self._client.post(url, json={"prompt": prompt})
        except httpx.TimeoutException as error:
            raise SynthesisError(f"Image generation timed out: {error}") from error
        except httpx.HTTPError as error:
            raise SynthesisError(f"Image generation failed: {error}") from error

        if not response.is_success:
            raise SynthesisError(
                f"Image generation failed: HTTP {response.status_code} "
                f"{_error_summary(response)}".rstrip(),
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                body = response.json()
            except ValueError as error:
                raise SynthesisError(f"Malformed JSON from synthesis: {error}") from error
            if isinstance(body, Mapping) and body.get("success") is False:
                raise SynthesisError(f"Image generation failed: {_format_api_errors(body)}")
            image_bytes = normalize_image_payload(body)
        else:
            image_bytes = normalize_image_payload(response.content)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Image generated: %d bytes in %d ms", len(image_bytes), elapsed_ms)
        return SynthesisResult(
            image_bytes=image_bytes,
            model=model,
            generation_time_ms=elapsed_ms,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> WorkersAiSynthesizer:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_summary(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, Mapping):
        return _format_api_errors(body)
    return str(body)[:200]


def _format_api_errors(body: Mapping[str, Any]) -> str:
    errors = body.get("errors") or []
    messages = [
        str(item.get("message", item)) if isinstance(item, Mapping) else str(item)
        for item in errors
    ]
    return "; ".join(messages) or "unknown error"


class PlaceholderSynthesizer:
    """Offline synthesizer producing a small deterministic PNG per prompt."""

    def __init__(self, *, size: int = 64) -> None:
        self.size = size

    def synthesize(self, *, prompt: str, model: ImageModel) -> SynthesisResult:
        started = time.monotonic()
        digest = hashlib.sha256(f"{model.value}:{prompt}".encode()).digest()
        image_bytes = _solid_png(size=self.size, rgb=(digest[0], digest[1], digest[2]))
        return SynthesisResult(
            image_bytes=image_bytes,
            model=model,
            generation_time_ms=int((time.monotonic() - started) * 1000),
        )


def _solid_png(*, size: int, rgb: tuple[int, int, int]) -> bytes:
    row = b"\x00" + bytes(rgb) * size
    raw = row * size

    def chunk(tag: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(tag + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", size, size, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(raw))
        + chunk(b"IEND", b"")
    )


def build_synthesizer(settings: Settings) -> ImageSynthesizer:
    """Instantiate the configured synthesis backend."""

    backend = settings.synthesis.backend
    if backend == "placeholder":
        return PlaceholderSynthesizer()
    if backend == "workers_ai":
        settings.validate_for_workers_ai()
        return WorkersAiSynthesizer(
            account_id=settings.synthesis.account_id,
            api_token=settings.synthesis.api_token,
            api_base_url=settings.synthesis.api_base_url,
            timeout_seconds=settings.synthesis.request_timeout_seconds,
            max_retries=settings.synthesis.max_retries,
        )
    raise ValueError(f"Unsupported synthesis backend: {backend}")
