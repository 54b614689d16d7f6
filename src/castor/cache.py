"""Result cache: content-hash identity with LRU eviction and single-flight."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
import hashlib
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100


def _digest(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def compute_cache_key(identity: bytes | str, prompt: str, kind: str) -> str:
    """Compute the deterministic cache key for one analysis.

    Key = sha256(payload) | sha256(prompt) | kind. The full prompt is hashed
    so prompts sharing a long prefix never collide.
    """
    return f"{_digest(identity)}|{_digest(prompt)}|{kind}"


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache counters."""

    size: int
    max_entries: int
    hits: int
    misses: int
    enabled: bool

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from the cache."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    if not fut.cancelled():
        fut.exception()


class ResultCache:
    """Process-lifetime map from (payload, prompt, kind) to a result string.

    Entries are never invalidated, only evicted least-recently-used first
    once ``max_entries`` is exceeded.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, *, enabled: bool = True):
        if max_entries < 1:
            raise ValueError("ResultCache.max_entries must be >= 1")
        self.max_entries = max_entries
        self.enabled = enabled
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[str]] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, identity: bytes | str, prompt: str, kind: str) -> str | None:
        """Return the cached result, or None on a miss or when disabled."""
        if not self.enabled:
            return None
        return self._get(compute_cache_key(identity, prompt, kind))

    def store(self, identity: bytes | str, prompt: str, kind: str, value: str) -> None:
        """Insert a result, evicting the least recently used entry if full."""
        if not self.enabled:
            return
        self._set(compute_cache_key(identity, prompt, kind), value)

    def clear(self) -> None:
        """Drop every entry and reset counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        logger.debug("Result cache cleared")

    def stats(self) -> CacheStats:
        """Return cache counters."""
        return CacheStats(
            size=len(self._entries),
            max_entries=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            enabled=self.enabled,
        )

    async def get_or_compute(
        self,
        identity: bytes | str,
        prompt: str,
        kind: str,
        work: Callable[[], Awaitable[str]],
    ) -> str:
        """Return the cached value, or compute it once with single-flight.

        - If cached, returns immediately.
        - If an identical computation is in flight, awaits its Future.
        - Otherwise runs *work* as the single creator and stores the result.

        Failures are never cached; every waiter sees the creator's exception.
        """
        if not self.enabled:
            return await work()

        key = compute_cache_key(identity, prompt, kind)
        cached = self._get(key)
        if cached is not None:
            return cached

        async with self._lock:
            # A creator may have finished while we waited for the lock.
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                self._hits += 1
                return cached
            fut = self._inflight.get(key)
            if fut is None:
                fut = asyncio.get_running_loop().create_future()
                fut.add_done_callback(_consume_future_exception)
                self._inflight[key] = fut
                creator = True
            else:
                creator = False

        if not creator:
            logger.debug("Joining in-flight computation for %s", key[:16])
            return await asyncio.shield(fut)

        try:
            value = await work()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            raise
        else:
            self._set(key, value)
            fut.set_result(value)
            return value
        finally:
            async with self._lock:
                self._inflight.pop(key, None)

    def _get(self, key: str) -> str | None:
        value = self._entries.get(key)
        if value is None:
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def _set(self, key: str, value: str) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry %s", evicted[:16])
