"""Provider protocol: minimal interface for the remote generative API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from castor.providers.models import ProviderRequest, ProviderResponse


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: generate and count tokens.

    The credential is passed per call so one provider instance can serve
    every key in the pool. Implementations raise ``APIError`` subclasses
    (``RateLimitError``, ``OverloadedError``) with status metadata attached.
    """

    async def generate(
        self, request: ProviderRequest, *, api_key: str
    ) -> ProviderResponse:
        """Generate content from the model."""
        ...

    async def count_tokens(self, text: str, *, model: str, api_key: str) -> int:
        """Return the token count of *text* for *model*."""
        ...
