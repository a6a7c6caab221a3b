from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Sequence, TypeVar

from .models import Candle

log = logging.getLogger("cache")

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    hash: str


def window_hash(candles: Sequence[Candle]) -> str:
    """Length, first time and second-to-last time; the live last candle never affects it."""
    if not candles:
        return "empty"
    second_to_last = candles[-2].time if len(candles) >= 2 else 0
    return f"{len(candles)}-{candles[0].time}-{second_to_last}"


class ResultCache:
    def __init__(self, *, ttl_s: float = 60.0, max_size: int = 100, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(purpose: str, candles: Sequence[Candle]) -> str:
        return f"{purpose}-{window_hash(candles)}"

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, candles: Sequence[Candle]) -> Optional[Any]:
        full_key = self.make_key(key, candles)
        entry = self._entries.get(full_key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.timestamp > self.ttl_s:
            del self._entries[full_key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.data

    def set(self, key: str, candles: Sequence[Candle], data: Any) -> None:
        full_key = self.make_key(key, candles)
        if full_key not in self._entries and len(self._entries) >= self.max_size:
            oldest = min(self._entries.items(), key=lambda kv: kv[1].timestamp)[0]
            del self._entries[oldest]
            log.debug("cache_evict key=%s", oldest)
        self._entries[full_key] = CacheEntry(data=data, timestamp=self._clock(), hash=window_hash(candles))

    def invalidate(self, prefix: Optional[str] = None) -> int:
        if prefix is None:
            n = len(self._entries)
            self._entries.clear()
            return n
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def stats(self) -> Dict[str, float]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
