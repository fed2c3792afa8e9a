from __future__ import annotations

import base64
import io
import json

import allure
import httpx
import pytest

from imagegen.config import Settings, SynthesisSettings
from imagegen.jobs.errors import SynthesisError
from imagegen.jobs.models import ImageModel
from imagegen.jobs.synthesis import (
    PlaceholderSynthesizer,
    WorkersAiSynthesizer,
    build_synthesizer,
    normalize_image_payload,
)

pytestmark = [
    allure.epic("Job Processor"),
    allure.feature("Synthesis Response Shapes"),
]

IMAGE = b"\x89PNG\r\n\x1a\nbody"


@pytest.mark.parametrize(
    "payload",
    [
        IMAGE,
        bytearray(IMAGE),
        memoryview(IMAGE),
        {"image": base64.b64encode(IMAGE).decode("ascii")},
        {"image": IMAGE},
        {"image": list(IMAGE)},
        {"result": {"image": base64.b64encode(IMAGE).decode("ascii")}, "success": True},
        io.BytesIO(IMAGE),
        iter([IMAGE[:4], IMAGE[4:]]),
    ],
    ids=[
        "bytes",
        "bytearray",
        "memoryview",
        "base64-image",
        "bytes-image",
        "int-list-image",
        "result-envelope",
        "readable-stream",
        "chunk-iterator",
    ],
)
def test_normalize_image_payload_accepts_supported_shapes(payload: object) -> None:
    assert normalize_image_payload(payload) == IMAGE


@pytest.mark.parametrize(
    "payload",
    [
        None,
        42,
        "not-an-image",
        {"data": "x"},
        {"image": "***not base64***"},
        {"image": [256, 1]},
        {"image": 3.5},
        b"",
        iter(["text chunk"]),
    ],
    ids=[
        "none",
        "int",
        "str",
        "no-image-field",
        "bad-base64",
        "out-of-range-ints",
        "float-image",
        "empty-bytes",
        "text-chunks",
    ],
)
def test_normalize_image_payload_rejects_unusable_shapes(payload: object) -> None:
    with pytest.raises(SynthesisError):
        normalize_image_payload(payload)


def _synthesizer(handler) -> WorkersAiSynthesizer:
    return WorkersAiSynthesizer(
        account_id="acct-123",
        api_token="token-abc",
        api_base_url="https://api.example.com/client/v4",
        transport=httpx.MockTransport(handler),
    )


def test_workers_ai_decodes_json_base64_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"result": {"image": base64.b64encode(IMAGE).decode("ascii")}, "success": True},
        )

    with _synthesizer(handler) as synthesizer:
        result = synthesizer.synthesize(prompt="a red fox", model=ImageModel.FLUX_SCHNELL)

    assert result.image_bytes == IMAGE
    assert result.model is ImageModel.FLUX_SCHNELL
    assert result.generation_time_ms >= 0
    (request,) = seen
    assert request.url.host == "api.example.com"
    assert request.url.path == (
        "/client/v4/accounts/acct-123/ai/run/@cf/black-forest-labs/flux-1-schnell"
    )
    assert request.headers["Authorization"] == "Bearer token-abc"
    assert json.loads(request.content) == {"prompt": "a red fox"}


def test_workers_ai_accepts_binary_png_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=IMAGE, headers={"content-type": "image/png"})

    with _synthesizer(handler) as synthesizer:
        result = synthesizer.synthesize(prompt="a red fox", model=ImageModel.SDXL_BASE)

    assert result.image_bytes == IMAGE


def test_workers_ai_raises_on_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            500,
            json={"success": False, "errors": [{"message": "capacity exceeded"}]},
        )

    with (
        _synthesizer(handler) as synthesizer,
        pytest.raises(SynthesisError, match="HTTP 500 capacity exceeded"),
    ):
        synthesizer.synthesize(prompt="a red fox", model=ImageModel.SDXL_LIGHTNING)


def test_workers_ai_raises_on_unsuccessful_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "errors": [{"message": "nsfw"}]})

    with _synthesizer(handler) as synthesizer, pytest.raises(SynthesisError, match="nsfw"):
        synthesizer.synthesize(prompt="a red fox", model=ImageModel.FLUX_SCHNELL)


def test_workers_ai_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _synthesizer(handler) as synthesizer, pytest.raises(SynthesisError, match="refused"):
        synthesizer.synthesize(prompt="a red fox", model=ImageModel.FLUX_SCHNELL)


def test_placeholder_synthesizer_is_deterministic_png() -> None:
    synthesizer = PlaceholderSynthesizer(size=8)

    first = synthesizer.synthesize(prompt="a red fox", model=ImageModel.FLUX_SCHNELL)
    second = synthesizer.synthesize(prompt="a red fox", model=ImageModel.FLUX_SCHNELL)
    other = synthesizer.synthesize(prompt="a blue fox", model=ImageModel.FLUX_SCHNELL)

    assert first.image_bytes.startswith(b"\x89PNG\r\n\x1a\n")
    assert first.image_bytes == second.image_bytes
    assert first.image_bytes != other.image_bytes


def test_build_synthesizer_selects_backend() -> None:
    placeholder = build_synthesizer(Settings(synthesis=SynthesisSettings(backend="placeholder")))
    assert isinstance(placeholder, PlaceholderSynthesizer)

    with pytest.raises(ValueError, match="IMAGEGEN_CF_ACCOUNT_ID"):
        build_synthesizer(Settings(synthesis=SynthesisSettings(backend="workers_ai")))

    workers_ai = build_synthesizer(
        Settings(
            synthesis=SynthesisSettings(
                backend="workers_ai",
                account_id="acct",
                api_token="token",
            ),
        ),
    )
    assert isinstance(workers_ai, WorkersAiSynthesizer)
    workers_ai.close()
