"""Retrieval caches.

`RetrievalCache` is the only state shared across jobs: a time-boxed map of
index query results. `CacheArena` hands out per-job scopes that are dropped
when the job finishes.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Sequence
from typing import Any

from draftforge.constants import RETRIEVAL_CACHE_MAX_ENTRIES, RETRIEVAL_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


def retrieval_key(
    query: str, source_ids: Sequence[str], limit: int, threshold: float
) -> tuple[str, tuple[str, ...], int, float]:
    return (query, tuple(sorted(source_ids)), limit, threshold)


class RetrievalCache:
    """TTL-evicted cache. Concurrent readers may both miss and recompute."""

    def __init__(
        self,
        ttl_seconds: float = RETRIEVAL_CACHE_TTL_SECONDS,
        max_entries: int = RETRIEVAL_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class CacheArena:
    """Per-job cache scopes keyed by job id."""

    def __init__(self) -> None:
        self._scopes: dict[str, dict[Hashable, Any]] = {}

    def scope(self, job_id: str) -> dict[Hashable, Any]:
        return self._scopes.setdefault(job_id, {})

    def release(self, job_id: str) -> None:
        dropped = self._scopes.pop(job_id, None)
        if dropped is not None:
            logger.debug("cache arena: released job %s (%d entries)", job_id, len(dropped))

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._scopes
