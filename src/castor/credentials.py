"""Credential pool: round-robin API key rotation with temporary disablement."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import time
from typing import TYPE_CHECKING

from castor.backoff import FailureKind, classify
from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable

logger = logging.getLogger(__name__)

DEFAULT_DISABLE_TIMEOUT_S = 60.0


def mask_key(key: str) -> str:
    """Return a log-safe rendering of an API key."""
    if not key:
        return "<empty>"
    if len(key) <= 10:
        return key[:2] + "..."
    return f"{key[:6]}...{key[-4:]}"


@dataclass(eq=False)
class Credential:
    """One API key plus its counters. Owned by a CredentialPool."""

    index: int
    secret: str = field(repr=False)
    usage: int = 0
    errors: int = 0
    disabled_at: float | None = None
    disabled_until: float | None = None

    @property
    def masked(self) -> str:
        """Log-safe form of the secret."""
        return mask_key(self.secret)

    @property
    def is_disabled(self) -> bool:
        """Whether the credential is currently out of rotation."""
        return self.disabled_until is not None

    def __repr__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Credential(index={self.index}, key={self.masked!r}, "
            f"usage={self.usage}, errors={self.errors}, "
            f"disabled={self.is_disabled})"
        )


@dataclass(frozen=True)
class KeyStats:
    """Point-in-time pool counters."""

    total: int
    active: int
    disabled: int
    usage: int
    errors: int
    current_index: int


class CredentialPool:
    """Hands out credentials in round-robin order, skipping disabled ones.

    Disablement expires lazily: every pool access first reinstates
    credentials whose timeout has elapsed, so no timers are involved and the
    clock can be injected in tests.
    """

    def __init__(
        self,
        keys: Iterable[str],
        *,
        disable_timeout_s: float = DEFAULT_DISABLE_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a pool over *keys*; at least one non-empty key is required."""
        secrets = [k.strip() for k in keys if k and k.strip()]
        if not secrets:
            raise ConfigurationError(
                "CredentialPool needs at least one API key",
                hint="Set GEMINI_API_KEYS=key1,key2 or pass Config(api_keys=...).",
            )
        if disable_timeout_s < 0:
            raise ConfigurationError(
                f"disable_timeout_s must be >= 0, got {disable_timeout_s}"
            )
        self._credentials = [Credential(i, s) for i, s in enumerate(secrets)]
        self._index = -1
        self._clock = clock
        self.disable_timeout_s = disable_timeout_s
        logger.debug("Credential pool initialized with %d key(s)", len(secrets))

    @classmethod
    def from_env(cls, **kwargs: float | Callable[[], float]) -> CredentialPool:
        """Build a pool from ``GEMINI_API_KEYS`` (comma-separated) or ``GEMINI_API_KEY``."""
        raw = os.environ.get("GEMINI_API_KEYS") or os.environ.get("GEMINI_API_KEY")
        return cls((raw or "").split(","), **kwargs)  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> tuple[Credential, ...]:
        """All credentials, in rotation order."""
        return tuple(self._credentials)

    def next(self) -> Credential:
        """Return the next usable credential in round-robin order.

        If every credential is disabled, the one disabled longest ago is
        reinstated first. Never blocks and never raises: when nothing is
        usable the credential at the current index is returned anyway.
        """
        self._expire()
        if all(c.is_disabled for c in self._credentials):
            logger.warning("All %d credentials are disabled", len(self))
            self._reactivate_oldest(self._credentials)

        cred = self._advance(skip=())
        if cred is None:
            cred = self._credentials[self._index]
            logger.warning("No usable credential; falling back to %s", cred.masked)
        cred.usage += 1
        logger.debug(
            "Using credential #%d %s (%d uses)", cred.index + 1, cred.masked, cred.usage
        )
        return cred

    def checkout(self, busy: Collection[int]) -> Credential | None:
        """Like ``next()`` but never returns a credential whose index is in *busy*.

        Returns None when every idle credential is disabled or busy. Unlike
        ``next()`` nothing is reactivated early; callers with no work in
        flight fall back to ``next()``.
        """
        self._expire()
        cred = self._advance(skip=busy)
        if cred is not None:
            cred.usage += 1
            logger.debug(
                "Checked out credential #%d %s (%d uses)",
                cred.index + 1,
                cred.masked,
                cred.usage,
            )
        return cred

    def report_failure(self, credential: Credential, error: BaseException) -> None:
        """Count a failure; quota failures pull the credential from rotation."""
        credential.errors += 1
        logger.debug(
            "Credential %s failed (%d errors): %s",
            credential.masked,
            credential.errors,
            error,
        )
        if classify(error) is FailureKind.RATE_LIMITED:
            self.disable(credential)

    def disable(self, credential: Credential, timeout_s: float | None = None) -> None:
        """Take *credential* out of rotation for *timeout_s* seconds."""
        timeout = self.disable_timeout_s if timeout_s is None else timeout_s
        now = self._clock()
        credential.disabled_at = now
        credential.disabled_until = now + timeout
        logger.info(
            "Credential %s disabled for %.0fs after a quota error",
            credential.masked,
            timeout,
        )

    def stats(self) -> KeyStats:
        """Return aggregate counters for the pool."""
        self._expire()
        disabled = sum(1 for c in self._credentials if c.is_disabled)
        return KeyStats(
            total=len(self._credentials),
            active=len(self._credentials) - disabled,
            disabled=disabled,
            usage=sum(c.usage for c in self._credentials),
            errors=sum(c.errors for c in self._credentials),
            current_index=max(self._index, 0),
        )

    def _advance(self, *, skip: Collection[int]) -> Credential | None:
        n = len(self._credentials)
        for _ in range(n):
            self._index = (self._index + 1) % n
            cred = self._credentials[self._index]
            if not cred.is_disabled and cred.index not in skip:
                return cred
        return None

    def _expire(self) -> None:
        now = self._clock()
        for cred in self._credentials:
            if cred.disabled_until is not None and now >= cred.disabled_until:
                self._reinstate(cred)

    def _reactivate_oldest(self, candidates: Iterable[Credential]) -> None:
        disabled = [c for c in candidates if c.disabled_at is not None]
        if not disabled:
            return
        oldest = min(disabled, key=lambda c: c.disabled_at or 0.0)
        logger.info("Reactivating least recently disabled credential")
        self._reinstate(oldest)

    @staticmethod
    def _reinstate(cred: Credential) -> None:
        cred.disabled_at = None
        cred.disabled_until = None
        logger.info("Credential %s reactivated", cred.masked)
