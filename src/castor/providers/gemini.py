"""Gemini provider implementation."""

from __future__ import annotations

import asyncio
import io
import logging
import time
from typing import Any

from castor._http import INLINE_PAYLOAD_MAX_BYTES
from castor.credentials import mask_key
from castor.errors import APIError
from castor.providers._errors import wrap_provider_error
from castor.providers.models import MediaPart, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


class GeminiProvider:
    """Google Gemini API provider.

    One SDK client is created lazily per API key and reused for every call
    made with that key.
    """

    def __init__(self, *, upload_threshold_bytes: int = INLINE_PAYLOAD_MAX_BYTES) -> None:
        """Create a provider; PDFs above *upload_threshold_bytes* go through the file API."""
        self.upload_threshold_bytes = upload_threshold_bytes
        self._clients: dict[str, Any] = {}

    def _get_client(self, api_key: str) -> Any:
        """Lazy-initialize the Gemini client for *api_key*."""
        client = self._clients.get(api_key)
        if client is None:
            try:
                from google import genai
            except ImportError as e:
                raise APIError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                ) from e

            client = genai.Client(api_key=api_key)
            self._clients[api_key] = client
            logger.debug("Created Gemini client for %s", mask_key(api_key))
        return client

    def _config(self, request: ProviderRequest) -> Any:
        from google.genai import types

        config_kwargs: dict[str, Any] = {}
        if request.system_instruction is not None:
            config_kwargs["system_instruction"] = request.system_instruction
        params = request.params
        if params is not None:
            config_kwargs.update(
                temperature=params.temperature,
                top_k=params.top_k,
                top_p=params.top_p,
                max_output_tokens=params.max_output_tokens,
                candidate_count=params.candidate_count,
            )
        return types.GenerateContentConfig(**config_kwargs)

    async def generate(
        self, request: ProviderRequest, *, api_key: str
    ) -> ProviderResponse:
        """Generate content from the Gemini model."""
        client = self._get_client(api_key)
        from google.genai import types

        uploaded: list[str] = []
        try:
            user_parts: list[Any] = []
            for media in request.media:
                if self._needs_upload(media):
                    name, uri = await self._upload(client, media)
                    uploaded.append(name)
                    user_parts.append(
                        types.Part(
                            file_data=types.FileData(
                                file_uri=uri, mime_type=media.mime_type
                            )
                        )
                    )
                else:
                    user_parts.append(
                        types.Part.from_bytes(data=media.data, mime_type=media.mime_type)
                    )
            user_parts.append(types.Part.from_text(text=request.prompt))

            contents: list[Any] = [
                types.Content(role=m.role, parts=[types.Part.from_text(text=m.content)])
                for m in request.history
                if m.content
            ]
            contents.append(types.Content(role="user", parts=user_parts))

            response = await client.aio.models.generate_content(
                model=request.model,
                contents=contents,
                config=self._config(request),
            )
            if not response:
                raise APIError("Gemini returned an empty response.")
            return self._parse_response(response)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="generate",
                message="Gemini generate failed",
            ) from e
        finally:
            for name in uploaded:
                await self._delete_quietly(client, name)

    async def count_tokens(self, text: str, *, model: str, api_key: str) -> int:
        """Count tokens with the remote tokenizer."""
        client = self._get_client(api_key)
        try:
            result = await client.aio.models.count_tokens(model=model, contents=text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="count_tokens",
                message="Gemini token counting failed",
            ) from e
        return int(getattr(result, "total_tokens", 0) or 0)

    def _needs_upload(self, media: MediaPart) -> bool:
        return media.mime_type == PDF_MIME_TYPE and media.size > self.upload_threshold_bytes

    async def _upload(self, client: Any, media: MediaPart) -> tuple[str, str]:
        """Upload *media* and return ``(file name, file uri)`` once it is ACTIVE."""
        logger.info("Uploading %d-byte %s through the file API", media.size, media.mime_type)
        result = await client.aio.files.upload(
            file=io.BytesIO(media.data), config={"mime_type": media.mime_type}
        )
        file_name = getattr(result, "name", None)
        if not isinstance(file_name, str) or not file_name:
            raise APIError("Gemini upload did not return a file name")

        state = self._file_state_name(result)
        if state == "FAILED":
            raise APIError(f"File processing failed: {self._file_error_message(result)}")
        if state != "ACTIVE":
            result = await self._wait_for_file_active(client, file_name)

        file_uri = getattr(result, "uri", None)
        if not isinstance(file_uri, str) or not file_uri:
            raise APIError("Gemini upload did not return a file uri")
        return file_name, file_uri

    async def _wait_for_file_active(
        self,
        client: Any,
        file_name: str,
        *,
        timeout_seconds: float = 300.0,
        poll_interval: float = 2.0,
    ) -> Any:
        """Poll file status until it becomes ACTIVE or errors out."""
        deadline = time.monotonic() + timeout_seconds
        last_state = "STATE_UNSPECIFIED"

        while time.monotonic() < deadline:
            file_obj = await client.aio.files.get(name=file_name)
            state = self._file_state_name(file_obj)
            last_state = state

            if state == "ACTIVE":
                return file_obj
            if state == "FAILED":
                raise APIError(
                    f"File processing failed: {self._file_error_message(file_obj)}"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))

        raise APIError(
            f"File did not become active within {timeout_seconds}s (stuck in {last_state})"
        )

    @staticmethod
    async def _delete_quietly(client: Any, file_name: str) -> None:
        try:
            await client.aio.files.delete(name=file_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Cleanup should never mask the primary outcome.
            logger.warning("Failed to delete uploaded file %s: %s", file_name, exc)

    @staticmethod
    def _file_state_name(file_obj: Any) -> str:
        """Extract a stable string state from Gemini file objects."""
        state = getattr(file_obj, "state", None)
        if isinstance(state, str) and state:
            return state
        for attr in ("name", "value"):
            value = getattr(state, attr, None)
            if isinstance(value, str) and value:
                return value
        return "STATE_UNSPECIFIED"

    @staticmethod
    def _file_error_message(file_obj: Any) -> str:
        """Extract a human-readable processing error message."""
        error = getattr(file_obj, "error", None)
        if isinstance(error, str) and error:
            return error
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        return "Unknown error"

    @staticmethod
    def _parse_response(response: Any) -> ProviderResponse:
        """Parse a Gemini response into a ProviderResponse."""
        text = getattr(response, "text", None) or ""
        usage: dict[str, int] = {}
        um = getattr(response, "usage_metadata", None)
        if um is not None:
            usage = {
                "input_tokens": getattr(um, "prompt_token_count", 0) or 0,
                "output_tokens": getattr(um, "candidates_token_count", 0) or 0,
                "total_tokens": getattr(um, "total_token_count", 0) or 0,
            }
        return ProviderResponse(text=text, usage=usage)

    async def aclose(self) -> None:
        """Drop cached SDK clients."""
        self._clients.clear()
