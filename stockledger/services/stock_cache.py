import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from stockledger.config import settings


@dataclass
class CacheEntry:
    item_id: str
    current_stock: int
    cached_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.cached_at >= self.ttl


class StockCache:
    """Short-TTL read accelerator for current stock. Never authoritative.

    Entries are evicted oldest-first once ``max_entries`` is reached.

    A reader takes ``generation(item_id)`` before it loads from the store and
    passes it back to ``set``. If the item was invalidated in between, the
    value it loaded may predate a committed write and is dropped.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = settings.STOCK_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = settings.STOCK_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, item_id: str) -> int | None:
        with self._lock:
            entry = self._entries.get(item_id)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[item_id]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.current_stock

    def generation(self, item_id: str) -> tuple[int, int]:
        with self._lock:
            return self._epoch, self._generations.get(item_id, 0)

    def set(
        self,
        item_id: str,
        stock: int,
        ttl: float | None = None,
        generation: tuple[int, int] | None = None,
    ) -> bool:
        """Store ``stock``; returns False when ``generation`` is out of date."""
        with self._lock:
            if generation is not None and generation != (self._epoch, self._generations.get(item_id, 0)):
                return False
            now = self._clock()
            self._purge_expired(now)
            self._entries.pop(item_id, None)
            self._entries[item_id] = CacheEntry(item_id, stock, now, self.ttl if ttl is None else ttl)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, item_id: str) -> None:
        with self._lock:
            self._entries.pop(item_id, None)
            self._generations[item_id] = self._generations.get(item_id, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "size": len(self._entries),
                "hit_rate": self.hits / lookups if lookups else 0.0,
                "ttl_seconds": self.ttl,
                "max_entries": self.max_entries,
            }

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
