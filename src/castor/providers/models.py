"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from castor.mutator import GenerationParams


@dataclass(frozen=True)
class MediaPart:
    """Inline binary payload (image or PDF) sent alongside the prompt."""

    data: bytes = field(repr=False)
    mime_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        """Reject empty payloads before they reach the wire."""
        if not self.data:
            raise ValueError("MediaPart.data must be non-empty")

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.data)


@dataclass(frozen=True)
class Message:
    """One conversational turn."""

    role: Literal["user", "model"]
    content: str = ""


@dataclass(frozen=True)
class ProviderRequest:
    """A unified request payload for one generation call."""

    model: str
    prompt: str
    media: tuple[MediaPart, ...] = ()
    history: tuple[Message, ...] = ()
    params: GenerationParams | None = None
    system_instruction: str | None = None


@dataclass
class ProviderResponse:
    """A standardized response from one generation call."""

    text: str = ""
    usage: dict[str, int] = field(default_factory=dict)
