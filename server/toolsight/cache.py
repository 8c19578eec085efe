"""结果缓存 — 指纹 → 规范化记录，cachetools LRU 有界。"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from cachetools import LRUCache

from toolsight.models import CanonicalRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int


class _CountingLRU(LRUCache):
    """容量淘汰时计数。LRUCache 只在超出 maxsize 时调用 popitem。"""

    def __init__(self, maxsize: int) -> None:
        super().__init__(maxsize=maxsize)
        self.evictions = 0

    def popitem(self):
        key, value = super().popitem()
        self.evictions += 1
        logger.debug("Evicted cache entry %s", key[:12])
        return key, value


class ResultCache:
    """容量有界的 LRU 缓存。get 命中会刷新条目的新鲜度。"""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Cache capacity must be positive: {capacity}")
        self.capacity = capacity
        self._cache: _CountingLRU = _CountingLRU(maxsize=capacity)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, fingerprint: str) -> CanonicalRecord | None:
        with self._lock:
            record = self._cache.get(fingerprint)
            if record is None:
                self._misses += 1
            else:
                self._hits += 1
            return record

    def put(self, fingerprint: str, record: CanonicalRecord) -> None:
        with self._lock:
            self._cache[fingerprint] = record

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        # MutableMapping.clear 走 popitem，会被误记为淘汰
        with self._lock:
            for fingerprint in list(self._cache):
                del self._cache[fingerprint]

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._cache),
                capacity=self.capacity,
                hits=self._hits,
                misses=self._misses,
                evictions=self._cache.evictions,
            )
