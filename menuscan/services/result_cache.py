"""
Bounded in-memory caches.

BoundedLRU is a thread-safe least-recently-used map capped both by entry count
and by an aggregate cost. ResultCache layers a time-to-live on top of it for
analysis results keyed by image content hash.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from menuscan.models.data_models import CachedResult, Menu


logger = logging.getLogger(__name__)

V = TypeVar("V")

RESULT_TTL_SECONDS = 300.0
RESULT_CACHE_CAPACITY = 20
RESULT_CACHE_MAX_COST = 10 * 1024 * 1024


class BoundedLRU(Generic[V]):
    """LRU map bounded by entry count and total cost."""

    def __init__(self, capacity: int, max_cost: Optional[int] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.max_cost = max_cost
        self._entries: "OrderedDict[str, Tuple[V, int]]" = OrderedDict()
        self._total_cost = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry[0]

    def put(self, key: str, value: V, cost: int = 0) -> None:
        with self._lock:
            if self.max_cost is not None and cost > self.max_cost:
                logger.debug(f"Entry cost {cost} exceeds cache limit {self.max_cost}, not cached")
                self._discard(key)
                return

            self._discard(key)
            self._entries[key] = (value, cost)
            self._total_cost += cost
            self._evict()

    def pop(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            self._discard(key)
            return entry[0] if entry else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_cost = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def total_cost(self) -> int:
        with self._lock:
            return self._total_cost

    def _discard(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_cost -= entry[1]

    def _evict(self) -> None:
        while len(self._entries) > self.capacity or (
            self.max_cost is not None and self._total_cost > self.max_cost
        ):
            key, (_, cost) = self._entries.popitem(last=False)
            self._total_cost -= cost
            logger.debug(f"Evicted cache entry {key[:8]}...")


class ResultCache:
    """
    Content-addressed store of prior analysis results.

    Entries older than the TTL are treated as misses even when still present.
    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self,
                 ttl: float = RESULT_TTL_SECONDS,
                 capacity: int = RESULT_CACHE_CAPACITY,
                 max_cost: int = RESULT_CACHE_MAX_COST,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._store: BoundedLRU[CachedResult] = BoundedLRU(capacity, max_cost)

    def get(self, image_hash: str) -> Optional[CachedResult]:
        cached = self._store.get(image_hash)
        if cached is None:
            return None

        age = self.clock() - cached.inserted_at
        if age >= self.ttl:
            logger.debug(f"Cached result for {image_hash[:8]}... expired ({age:.0f}s old)")
            self._store.pop(image_hash)
            return None

        return cached

    def put(self, image_hash: str, menu: Menu) -> CachedResult:
        cached = CachedResult(hash=image_hash, menu=menu, inserted_at=self.clock())
        self._store.put(image_hash, cached, cost=self._estimate_cost(menu))
        logger.debug(f"Cached analysis result for image hash: {image_hash[:8]}...")
        return cached

    def clear(self) -> None:
        self._store.clear()
        logger.info("Result cache cleared")

    def __len__(self) -> int:
        return len(self._store)

    def get_cache_info(self) -> Dict[str, Any]:
        return {
            "entries": len(self._store),
            "capacity": self._store.capacity,
            "total_cost": self._store.total_cost,
            "max_cost": self._store.max_cost,
            "ttl_seconds": self.ttl,
        }

    @staticmethod
    def _estimate_cost(menu: Menu) -> int:
        return len(menu.model_dump_json().encode("utf-8"))
