"""Provider implementations."""

from .base import Provider
from .gemini import GeminiProvider
from .mock import MockProvider
from .models import MediaPart, Message, ProviderRequest, ProviderResponse

__all__ = [
    "GeminiProvider",
    "MediaPart",
    "Message",
    "MockProvider",
    "Provider",
    "ProviderRequest",
    "ProviderResponse",
]
