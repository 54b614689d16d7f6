"""Failure classification and bounded async retry.

Design goals:
- Classify once: typed errors from the client adapter decide directly, the
  message text is only consulted for errors that did not come through it
- Explicit state (policy + attempt counter as loop state, not recursion)
- Server hints win over computed backoff for overloaded responses
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import enum
import logging
import random
import re
from typing import TYPE_CHECKING, TypeVar

from castor.errors import APIError, OverloadedError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class FailureKind(enum.Enum):
    """How a failed remote call should be handled."""

    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    OTHER = "other"


_RATE_LIMITED_MARKERS = ("429", "Too Many Requests", "quota", "rate limit")
_OVERLOADED_MARKERS = ("503", "Service Unavailable", "overloaded")

# Tried in order; the first match is the server's suggested delay.
_HINT_PATTERNS = (
    re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"'),
    re.compile(r"retry after (\d+(?:\.\d+)?)s", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)s\b"),
)


def classify_message(text: str) -> FailureKind:
    """Classify a raw error message by its status phrases."""
    if any(marker in text for marker in _RATE_LIMITED_MARKERS):
        return FailureKind.RATE_LIMITED
    if any(marker in text for marker in _OVERLOADED_MARKERS):
        return FailureKind.OVERLOADED
    return FailureKind.OTHER


def hint_from_message(text: str) -> float | None:
    """Extract a server-suggested delay in seconds from error text."""
    for pattern in _HINT_PATTERNS:
        m = pattern.search(text)
        if m:
            return float(m.group(1))
    return None


def classify(exc: BaseException) -> FailureKind:
    """Return the failure class of *exc*.

    Cancellation is never retryable.
    """
    if isinstance(exc, asyncio.CancelledError):
        return FailureKind.OTHER
    if isinstance(exc, RateLimitError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, OverloadedError):
        return FailureKind.OVERLOADED
    if isinstance(exc, APIError) and exc.status_code is not None:
        # The adapter saw a status code and still chose the base class.
        return FailureKind.OTHER
    return classify_message(str(exc))


def server_hint_s(exc: BaseException) -> float | None:
    """Return the server-suggested retry delay for *exc*, if any."""
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return hint_from_message(str(exc))


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded retry policy keyed on the failure class.

    ``max_attempts`` counts physical remote calls, the first one included.
    """

    max_attempts: int = 5
    # Rotating credentials, not waiting, is what clears a quota error.
    rate_limited_delay_s: float = 2.0
    overloaded_base_delay_s: float = 30.0
    overloaded_max_delay_s: float = 300.0
    hint_multiplier: float = 1.5
    jitter_ratio: float = 0.25
    jitter: bool = True

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("BackoffPolicy.max_attempts must be >= 1")
        if self.rate_limited_delay_s < 0:
            raise ValueError("BackoffPolicy.rate_limited_delay_s must be >= 0")
        if self.overloaded_base_delay_s < 0:
            raise ValueError("BackoffPolicy.overloaded_base_delay_s must be >= 0")
        if self.overloaded_max_delay_s < 0:
            raise ValueError("BackoffPolicy.overloaded_max_delay_s must be >= 0")
        if self.hint_multiplier < 1:
            raise ValueError("BackoffPolicy.hint_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("BackoffPolicy.jitter_ratio must be within [0, 1]")

    def classify(self, exc: BaseException) -> FailureKind:
        """Return the failure class of *exc*."""
        return classify(exc)

    def delay_for(self, exc: BaseException, attempt: int) -> float | None:
        """Return seconds to wait before retrying, or None to give up now.

        *attempt* is zero-based: 0 for the wait after the first failure.
        """
        kind = classify(exc)
        if kind is FailureKind.RATE_LIMITED:
            return self.rate_limited_delay_s
        if kind is FailureKind.OVERLOADED:
            hint = server_hint_s(exc)
            if hint is not None:
                return hint * (self.hint_multiplier**attempt)
            return self._exponential_delay(attempt)
        return None

    def _exponential_delay(self, attempt: int) -> float:
        base = self.overloaded_base_delay_s * (2 ** max(0, attempt))
        extra = 0.0
        if self.jitter:
            extra = random.random() * self.jitter_ratio * base  # noqa: S311
        return min(base + extra, self.overloaded_max_delay_s)


def attach_attempts(exc: BaseException, attempts: int) -> None:
    """Record how many physical calls were made before *exc* surfaced."""
    if isinstance(exc, APIError):
        exc.attempts = attempts
    else:
        exc.add_note(f"gave up after {attempts} attempt(s)")


async def retry_async(
    factory: Callable[[int], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    before_attempt: Callable[[], Awaitable[object]] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run *factory* with bounded, failure-class-aware retries.

    *factory* receives the zero-based attempt number. *before_attempt* runs
    ahead of every physical call (the serial dispatcher's rate gate).
    """
    attempt = 0
    while True:
        if before_attempt is not None:
            await before_attempt()
        try:
            return await factory(attempt)
        except Exception as exc:
            done = attempt + 1
            delay = policy.delay_for(exc, attempt)
            if delay is None or done >= policy.max_attempts:
                attach_attempts(exc, done)
                raise

            logger.info(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                done,
                policy.max_attempts,
                classify(exc).value,
                delay,
            )
            if delay > 0:
                await sleep(delay)
            attempt += 1
