"""
Cache Service Module

Time-bounded cache for data the pipeline reads often and changes rarely
(responder definitions). Entries expire after a TTL; ``invalidate`` drops
entries locally and publishes a CacheInvalidatedEvent so every other cache
attached to the same EventBus drops them too.
"""

import asyncio
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, Tuple

from tutor.logger import get_logger
from tutor.pipeline.events import CacheInvalidatedEvent, EventBus

logger = get_logger(__name__)


class CacheService:
    """TTL cache with LRU eviction and bus-wide invalidation."""

    def __init__(
        self,
        namespace: str,
        ttl_seconds: float = 300,
        max_size: int = 256,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.namespace = namespace
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._bus = event_bus
        self._instance_id = uuid.uuid4().hex[:8]
        self._load_locks: dict = {}
        self.hits = 0
        self.misses = 0

        if self._bus is not None:
            self._bus.subscribe(CacheInvalidatedEvent, self._on_invalidated)

    def get(self, key: str) -> Optional[Any]:
        """Get cached value if it exists and has not expired."""
        if key not in self._cache:
            self.misses += 1
            return None

        stored_at, value = self._cache[key]
        if self._clock() - stored_at > self._ttl:
            del self._cache[key]
            self.misses += 1
            return None

        self._cache.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        while len(self._cache) >= self._max_size:
            self._cache.popitem(last=False)
        self._cache[key] = (self._clock(), value)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, loading it once per expiry under a per-key lock."""
        value = self.get(key)
        if value is not None:
            return value

        lock = self._load_locks.setdefault(key, asyncio.Lock())
        async with lock:
            value = self.get(key)
            if value is not None:
                return value
            value = await loader()
            self.set(key, value)
            return value

    def _drop(self, key: Optional[str]) -> None:
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key (or everything) here and on every cache sharing the bus."""
        self._drop(key)
        logger.info(f"Cache '{self.namespace}' invalidated ({key or 'all'})")
        if self._bus is not None:
            await self._bus.publish_immediate(
                CacheInvalidatedEvent(namespace=self.namespace, key=key, origin=self._instance_id)
            )

    async def _on_invalidated(self, event: CacheInvalidatedEvent) -> None:
        if event.namespace != self.namespace or event.origin == self._instance_id:
            return
        self._drop(event.key)
        logger.debug(f"Cache '{self.namespace}' dropped {event.key or 'all'} on remote invalidation")

    def clear(self) -> None:
        """Clear all cached entries without notifying other caches."""
        self._cache.clear()

    @property
    def size(self) -> int:
        return len(self._cache)
