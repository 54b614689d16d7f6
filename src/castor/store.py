"""In-memory store of finished analyses, grouped by batch for bulk cleanup."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredAnalysis:
    """One stored result with its provenance."""

    result: str
    file_name: str
    kind: str
    batch_id: str | None = None
    stored_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StoreStats:
    """Point-in-time store counters."""

    size: int
    batches: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups that found a result."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class AnalysisStore:
    """Keeps analysis results keyed by (file name, content hash, kind).

    Results tagged with a batch id can be dropped together once the batch
    has been delivered.
    """

    def __init__(self) -> None:
        self._entries: dict[str, StoredAnalysis] = {}
        self._batches: dict[str, set[str]] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(file_name: str, file_hash: str, kind: str) -> str:
        """Build the lookup key for one analysis."""
        return f"{file_name}_{file_hash}_{kind}"

    def __len__(self) -> int:
        return len(self._entries)

    def store_analysis(
        self,
        file_name: str,
        file_hash: str,
        kind: str,
        value: str,
        batch_id: str | None = None,
    ) -> None:
        """Store *value*, replacing any previous result under the same key."""
        key = self.make_key(file_name, file_hash, kind)
        self._entries[key] = StoredAnalysis(value, file_name, kind, batch_id)
        if batch_id:
            self._batches.setdefault(batch_id, set()).add(key)
        logger.debug("Stored result for %r (%s) batch=%s", file_name, kind, batch_id)

    def get_analysis(self, file_name: str, file_hash: str, kind: str) -> str | None:
        """Return the stored result, or None."""
        entry = self._entries.get(self.make_key(file_name, file_hash, kind))
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry.result

    def clear_batch(self, batch_id: str) -> int:
        """Drop every result stored under *batch_id*; return how many were removed."""
        keys = self._batches.pop(batch_id, None)
        if keys is None:
            logger.debug("Batch %s not found", batch_id)
            return 0
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        logger.info("Cleared batch %s (%d entries)", batch_id, removed)
        return removed

    def clear_all(self) -> None:
        """Drop everything."""
        count = len(self._entries)
        self._entries.clear()
        self._batches.clear()
        logger.info("Cleared analysis store (%d entries)", count)

    def stats(self) -> StoreStats:
        """Return store counters."""
        return StoreStats(
            size=len(self._entries),
            batches=len(self._batches),
            hits=self._hits,
            misses=self._misses,
        )
