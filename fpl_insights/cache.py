import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fpl_insights.config import MODEL_CONFIG

logger = logging.getLogger("fpl_insights")


class TTLCache:
    """
    In-memory key/value cache with per-entry expiry.

    Expired entries are evicted lazily when read. `get_or_load` adds
    single-flight loading: concurrent misses for the same key await one shared
    task instead of each calling the loader.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}  # key -> (value, expires_at)
        self._in_flight: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return not self.is_expired(key)

    def is_expired(self, key: str) -> bool:
        """True when the key is missing or past its expiry."""
        entry = self._entries.get(key)
        return entry is None or self._clock() > entry[1]

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry[1]:
            del self._entries[key]
            return None
        return entry[0]

    def set(self, key: str, value: Any, ttl: Optional[float] = None):
        ttl = self.ttl if ttl is None else ttl
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self):
        self._entries.clear()

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value, or run `loader` once for all concurrent callers."""
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._in_flight[key] = task

            def _on_done(done: asyncio.Task):
                self._in_flight.pop(key, None)
                if done.cancelled() or done.exception() is not None:
                    return
                result = done.result()
                if result is not None:
                    self.set(key, result, ttl)

            task.add_done_callback(_on_done)

        # Shield so one cancelled caller does not cancel the load for the others
        return await asyncio.shield(task)


_cache_config = MODEL_CONFIG["cache"]

# Raw upstream payloads keyed by endpoint path
shared_cache = TTLCache(_cache_config.bootstrap_ttl)
# League snapshot (team aggregates)
long_cache = TTLCache(_cache_config.league_snapshot_ttl)
# Derived metric views
metrics_cache = TTLCache(_cache_config.metrics_ttl)
# Optional provider snapshots read from disk
provider_cache = TTLCache(_cache_config.provider_snapshot_ttl)
# Projection views and their shared context
insights_cache = TTLCache(_cache_config.insights_ttl)


def clear_all_caches():
    for c in (shared_cache, long_cache, metrics_cache, provider_cache, insights_cache):
        c.clear()
    logger.info("All caches cleared")
