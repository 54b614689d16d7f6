"""Provider characterization tests.

These tests verify the request/response transformations of the provider
layer. They use fake clients to capture the exact shapes sent to the Gemini
SDK without making real network calls.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from castor.errors import APIError, OverloadedError, RateLimitError
from castor.mutator import GenerationParams
from castor.providers import GeminiProvider, MediaPart, Message, MockProvider, ProviderRequest
from castor.providers._errors import extract_retry_after_s, wrap_provider_error

pytestmark = pytest.mark.unit

MODEL = "gemini-2.5-flash"


# =============================================================================
# Provider Error Mapping
# =============================================================================


def test_wrap_provider_error_extracts_status_and_retry_after_from_headers() -> None:
    class _Resp:
        def __init__(self) -> None:
            self.status_code = 429
            self.headers = {"Retry-After": "2"}

    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__("rate limited")
            self.response = _Resp()

    err = wrap_provider_error(
        _SdkError(), provider="gemini", phase="generate", message="Gemini generate failed"
    )

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retry_after_s == 2.0
    assert err.provider == "gemini"
    assert err.phase == "generate"
    assert "429" in str(err)
    assert err.hint is not None


def test_wrap_provider_error_reads_google_retry_info() -> None:
    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__("503 UNAVAILABLE")
            self.code = 503
            self.details = {
                "error": {
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.rpc.RetryInfo",
                            "retryDelay": "12s",
                        }
                    ]
                }
            }

    err = wrap_provider_error(_SdkError(), provider="gemini", phase="generate")

    assert isinstance(err, OverloadedError)
    assert err.retry_after_s == 12.0


def test_overloaded_without_structured_hint_falls_back_to_text() -> None:
    exc = RuntimeError('The model is overloaded {"retryDelay": "7s"}')

    err = wrap_provider_error(exc, provider="gemini", phase="generate")

    assert isinstance(err, OverloadedError)
    assert err.status_code is None
    assert err.retry_after_s == 7.0


def test_unmapped_status_code_is_plain_api_error() -> None:
    class _SdkError(Exception):
        status_code = 400

    err = wrap_provider_error(
        _SdkError("API key not valid"), provider="gemini", phase="generate"
    )

    assert type(err) is APIError
    assert err.status_code == 400
    assert err.hint is not None
    assert "GEMINI_API_KEYS" in err.hint


def test_existing_api_error_is_enriched_not_replaced() -> None:
    base = APIError("bad request", status_code=400)

    wrapped = wrap_provider_error(base, provider="gemini", phase="generate")

    assert wrapped is base
    assert wrapped.provider == "gemini"
    assert wrapped.phase == "generate"


def test_network_errors_get_a_hint() -> None:
    exc = httpx.ConnectTimeout("timed out")

    err = wrap_provider_error(exc, provider="gemini", phase="generate")

    assert err.hint is not None
    assert "Network" in err.hint


def test_cancelled_error_is_reraised() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_provider_error(asyncio.CancelledError(), provider="gemini", phase="generate")


def test_retry_after_is_found_on_the_cause() -> None:
    class _Inner(Exception):
        retry_after = 4

    try:
        try:
            raise _Inner("inner")
        except _Inner as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as outer:
        assert extract_retry_after_s(outer) == 4.0


# =============================================================================
# Mock Provider
# =============================================================================


@pytest.mark.asyncio
async def test_mock_provider_echoes_first_line() -> None:
    provider = MockProvider()
    request = ProviderRequest(
        model=MODEL, prompt="Leia o comprovante\nmais", media=(MediaPart(b"img"),)
    )

    response = await provider.generate(request, api_key="k")

    assert response.text == "echo: Leia o comprovante [media=1]"
    assert await provider.count_tokens("a b c", model=MODEL, api_key="k") == 3


def test_media_part_rejects_empty_payload() -> None:
    with pytest.raises(ValueError, match="non-empty"):
        MediaPart(b"")


# =============================================================================
# Gemini Provider (fake client)
# =============================================================================


class _FakeModels:
    def __init__(self, response: Any = None, error: BaseException | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.response = response
        self.error = error

    async def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response

    async def count_tokens(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return SimpleNamespace(total_tokens=17)


class _FakeFiles:
    def __init__(self) -> None:
        self.uploaded: list[dict[str, Any]] = []
        self.deleted: list[str] = []

    async def upload(self, **kwargs: Any) -> Any:
        self.uploaded.append(kwargs)
        return SimpleNamespace(name="files/1", uri="https://files/1", state="ACTIVE")

    async def delete(self, *, name: str) -> None:
        self.deleted.append(name)


def _provider_with(
    models: _FakeModels, files: _FakeFiles | None = None, **kwargs: Any
) -> GeminiProvider:
    provider = GeminiProvider(**kwargs)
    client = SimpleNamespace(aio=SimpleNamespace(models=models, files=files or _FakeFiles()))
    provider._clients["test-key"] = client
    return provider


def _response(text: str) -> Any:
    fake = MagicMock()
    fake.text = text
    fake.usage_metadata = SimpleNamespace(
        prompt_token_count=10, candidates_token_count=5, total_token_count=15
    )
    return fake


@pytest.mark.asyncio
async def test_gemini_generate_sends_media_history_and_config() -> None:
    models = _FakeModels(response=_response("02-07 ACME 10,00"))
    provider = _provider_with(models)
    request = ProviderRequest(
        model=MODEL,
        prompt="Extraia os dados",
        media=(MediaPart(b"\xff\xd8jpeg", "image/jpeg"),),
        history=(Message("user", "oi"), Message("model", "olá")),
        params=GenerationParams(temperature=0.12, top_k=42, top_p=0.96),
        system_instruction="Responda em uma linha.",
    )

    result = await provider.generate(request, api_key="test-key")

    assert result.text == "02-07 ACME 10,00"
    assert result.usage == {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}
    call = models.calls[0]
    assert call["model"] == MODEL
    contents = call["contents"]
    assert [c.role for c in contents] == ["user", "model", "user"]
    user_parts = contents[-1].parts
    assert user_parts[0].inline_data.data == b"\xff\xd8jpeg"
    assert user_parts[-1].text == "Extraia os dados"
    config = call["config"]
    assert config.temperature == 0.12
    assert config.top_k == 42
    assert config.max_output_tokens == 8192
    assert config.system_instruction == "Responda em uma linha."


@pytest.mark.asyncio
async def test_gemini_large_pdf_goes_through_file_api_and_is_deleted() -> None:
    models = _FakeModels(response=_response("ok"))
    files = _FakeFiles()
    provider = _provider_with(models, files, upload_threshold_bytes=4)
    request = ProviderRequest(
        model=MODEL, prompt="Resuma", media=(MediaPart(b"%PDF-1.7", "application/pdf"),)
    )

    await provider.generate(request, api_key="test-key")

    assert files.uploaded[0]["config"] == {"mime_type": "application/pdf"}
    part = models.calls[0]["contents"][-1].parts[0]
    assert part.file_data.file_uri == "https://files/1"
    assert files.deleted == ["files/1"]


@pytest.mark.asyncio
async def test_gemini_errors_are_wrapped_and_uploads_still_deleted() -> None:
    class _SdkError(Exception):
        code = 429

    models = _FakeModels(error=_SdkError("RESOURCE_EXHAUSTED"))
    files = _FakeFiles()
    provider = _provider_with(models, files, upload_threshold_bytes=4)
    request = ProviderRequest(
        model=MODEL, prompt="Resuma", media=(MediaPart(b"%PDF-1.7", "application/pdf"),)
    )

    with pytest.raises(RateLimitError) as exc_info:
        await provider.generate(request, api_key="test-key")

    assert exc_info.value.provider == "gemini"
    assert files.deleted == ["files/1"]


@pytest.mark.asyncio
async def test_gemini_count_tokens() -> None:
    models = _FakeModels()
    provider = _provider_with(models)

    assert await provider.count_tokens("a b", model=MODEL, api_key="test-key") == 17
    assert models.calls[0] == {"model": MODEL, "contents": "a b"}


@pytest.mark.asyncio
async def test_gemini_aclose_drops_clients() -> None:
    provider = _provider_with(_FakeModels())
    await provider.aclose()
    assert provider._clients == {}
