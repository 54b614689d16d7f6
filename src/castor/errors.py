"""Exception hierarchy for Castor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class PromptError(CastorError):
    """No usable prompt for the requested profile and analysis kind.

    Permanent: raised before any remote call and never retried.
    """


class DispatcherClosedError(CastorError):
    """A job was submitted to (or still queued on) a closed dispatcher."""


class APIError(CastorError):
    """Remote call failed.

    The client adapter classifies failures once, into this class or one of
    its subclasses, so the retry machinery does not have to re-parse text.
    ``attempts`` is filled in when the error escapes a retry loop.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        attempts: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.attempts = attempts


class RateLimitError(APIError):
    """Quota exceeded (HTTP 429). Resolved by rotating credentials."""


class OverloadedError(APIError):
    """Service overloaded (HTTP 503). Resolved by backing off."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)


def with_operation(exc: BaseException, operation: str) -> APIError:
    """Return an APIError whose message names the failed *operation*.

    The typed subclass and remote metadata are preserved so callers can still
    tell a quota failure from an overload after the prefix is applied.
    """
    message = f"{operation} failed: {exc}"
    if isinstance(exc, APIError):
        cls: type[APIError] = type(exc)
        return cls(
            message,
            hint=exc.hint,
            status_code=exc.status_code,
            retry_after_s=exc.retry_after_s,
            provider=exc.provider,
            phase=exc.phase,
            attempts=exc.attempts,
        )
    return APIError(message, phase=operation)
