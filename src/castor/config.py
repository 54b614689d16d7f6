"""Configuration: Frozen Config with environment-resolved API keys."""

from __future__ import annotations

from dataclasses import dataclass, field
import os

from dotenv import load_dotenv

from castor.backoff import BackoffPolicy
from castor.errors import ConfigurationError
from castor.mutator import TestPromptPolicy

load_dotenv()

DEFAULT_MODEL = "gemini-2.5-flash"
MOCK_API_KEY = "mock-api-key"

# Checked in order; the first non-empty variable wins.
_API_KEY_ENV_VARS = ("GEMINI_API_KEYS", "GEMINI_API_KEY")


def _split_keys(raw: str) -> tuple[str, ...]:
    return tuple(k.strip() for k in raw.split(",") if k.strip())


def resolve_api_keys() -> tuple[str, ...]:
    """Read API keys from ``GEMINI_API_KEYS`` (comma-separated) or ``GEMINI_API_KEY``."""
    for name in _API_KEY_ENV_VARS:
        keys = _split_keys(os.environ.get(name, ""))
        if keys:
            return keys
    return ()


@dataclass(frozen=True)
class Config:
    """Immutable configuration for an ExtractionService.

    API keys are auto-resolved from the environment when not given.

    Example:
        config = Config(model="gemini-2.5-flash")
        # keys come from GEMINI_API_KEYS=key1,key2 or GEMINI_API_KEY
    """

    model: str = DEFAULT_MODEL
    #: Auto-resolved from ``GEMINI_API_KEYS`` / ``GEMINI_API_KEY`` when empty.
    api_keys: tuple[str, ...] = ()
    use_mock: bool = False
    max_requests_per_window: int = 12
    window_s: float = 60.0
    min_interval_s: float = 5.0
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)
    #: Parallel fan-out width; None means one in-flight call per key.
    parallelism: int | None = None
    max_requeues: int = 3
    disable_timeout_s: float = 60.0
    cache_entries: int = 100
    enable_cache: bool = True
    test_prompts: TestPromptPolicy = field(default_factory=TestPromptPolicy)

    def __post_init__(self) -> None:
        """Auto-resolve API keys and validate configuration."""
        if not self.model or not self.model.strip():
            raise ConfigurationError(
                "model must be a non-empty string",
                hint=f"For example Config(model={DEFAULT_MODEL!r}).",
            )

        keys = self.api_keys
        if isinstance(keys, str):
            keys = _split_keys(keys)
        keys = tuple(k.strip() for k in keys if k and k.strip())
        if not keys:
            keys = resolve_api_keys()
        if not keys and self.use_mock:
            keys = (MOCK_API_KEY,)
        object.__setattr__(self, "api_keys", keys)

        if not self.api_keys:
            raise ConfigurationError(
                "At least one Gemini API key is required",
                hint="Set GEMINI_API_KEYS=key1,key2 (or GEMINI_API_KEY) or pass api_keys=...",
            )

        if self.max_requests_per_window < 1:
            raise ConfigurationError(
                f"max_requests_per_window must be ≥ 1, got {self.max_requests_per_window}",
                hint="This caps serial dispatches inside one rate window.",
            )
        if self.window_s <= 0:
            raise ConfigurationError(f"window_s must be > 0, got {self.window_s}")
        if self.min_interval_s < 0:
            raise ConfigurationError(
                f"min_interval_s must be ≥ 0, got {self.min_interval_s}",
                hint="This is the minimum spacing between serial dispatches.",
            )
        if self.parallelism is not None and self.parallelism < 1:
            raise ConfigurationError(
                f"parallelism must be ≥ 1, got {self.parallelism}",
                hint="Leave it as None to run one call per API key.",
            )
        if self.max_requeues < 0:
            raise ConfigurationError(f"max_requeues must be ≥ 0, got {self.max_requeues}")
        if self.disable_timeout_s < 0:
            raise ConfigurationError(
                f"disable_timeout_s must be ≥ 0, got {self.disable_timeout_s}"
            )
        if self.cache_entries < 1:
            raise ConfigurationError(
                f"cache_entries must be ≥ 1, got {self.cache_entries}",
                hint="Use enable_cache=False to turn the result cache off.",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(model={self.model!r}, api_keys=[{len(self.api_keys)} REDACTED], "
            f"use_mock={self.use_mock})"
        )

    __repr__ = __str__
