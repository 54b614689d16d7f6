"""Mock provider for testing without API calls."""

from __future__ import annotations

from castor.providers.models import ProviderRequest, ProviderResponse


class MockProvider:
    """Deterministic echo provider.

    Returns the first line of the prompt prefixed with ``echo:`` plus the
    number of attached media parts, so pipelines can be exercised offline.
    """

    async def generate(
        self,
        request: ProviderRequest,
        *,
        api_key: str,  # noqa: ARG002
    ) -> ProviderResponse:
        """Return a deterministic mock response."""
        first_line = request.prompt.strip().splitlines()[0] if request.prompt.strip() else ""
        suffix = f" [media={len(request.media)}]" if request.media else ""
        return ProviderResponse(
            text=f"echo: {first_line[:100]}{suffix}",
            usage={"input_tokens": 10, "total_tokens": 20},
        )

    async def count_tokens(
        self,
        text: str,
        *,
        model: str,  # noqa: ARG002
        api_key: str,  # noqa: ARG002
    ) -> int:
        """Whitespace token count."""
        return len(text.split())
