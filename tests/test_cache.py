"""
Tests for the TTL cache and bus-wide invalidation.
"""

import asyncio

import pytest

from tutor.core.cache import CacheService
from tutor.pipeline.events import CacheInvalidatedEvent, EventBus


class Clock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestExpiry:
    """Tests for TTL expiry."""

    def test_fresh_entry_is_returned(self):
        clock = Clock()
        cache = CacheService("responders", ttl_seconds=60, clock=clock)
        cache.set("registry", "v1")

        clock.now += 59
        assert cache.get("registry") == "v1"
        assert cache.hits == 1

    def test_expired_entry_is_dropped(self):
        """Entries older than the TTL are never served."""
        clock = Clock()
        cache = CacheService("responders", ttl_seconds=60, clock=clock)
        cache.set("registry", "v1")

        clock.now += 61
        assert cache.get("registry") is None
        assert cache.size == 0
        assert cache.misses == 1

    def test_lru_eviction(self):
        """The least recently used entry goes first when full."""
        cache = CacheService("responders", max_size=2, clock=Clock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3


class TestGetOrLoad:
    """Tests for loading through the cache."""

    @pytest.mark.asyncio
    async def test_loads_once_while_fresh(self):
        clock = Clock()
        cache = CacheService("responders", ttl_seconds=10, clock=clock)
        loads = []

        async def loader():
            loads.append(1)
            return f"v{len(loads)}"

        assert await cache.get_or_load("registry", loader) == "v1"
        assert await cache.get_or_load("registry", loader) == "v1"
        clock.now += 11
        assert await cache.get_or_load("registry", loader) == "v2"
        assert len(loads) == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self):
        """Concurrent callers wait for a single load."""
        cache = CacheService("responders", clock=Clock())
        loads = []

        async def loader():
            loads.append(1)
            await asyncio.sleep(0.01)
            return "value"

        results = await asyncio.gather(*[cache.get_or_load("k", loader) for _ in range(5)])

        assert results == ["value"] * 5
        assert len(loads) == 1


class TestInvalidation:
    """Tests for local and bus-wide invalidation."""

    @pytest.mark.asyncio
    async def test_local_invalidate(self):
        cache = CacheService("responders")
        cache.set("registry", "v1")
        cache.set("other", "x")

        await cache.invalidate("registry")
        assert cache.get("registry") is None
        assert cache.get("other") == "x"

        await cache.invalidate()
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_invalidate_reaches_other_instances(self):
        """Every cache of the namespace on the bus drops the key."""
        bus = EventBus()
        first = CacheService("responders", event_bus=bus)
        second = CacheService("responders", event_bus=bus)
        unrelated = CacheService("lessons", event_bus=bus)
        for cache in (first, second, unrelated):
            cache.set("registry", "v1")

        await first.invalidate("registry")

        assert first.get("registry") is None
        assert second.get("registry") is None
        assert unrelated.get("registry") == "v1"

    @pytest.mark.asyncio
    async def test_invalidation_event_is_published(self):
        bus = EventBus()
        seen = []

        async def on_invalidated(event):
            seen.append(event)

        bus.subscribe(CacheInvalidatedEvent, on_invalidated)
        cache = CacheService("responders", event_bus=bus)

        await cache.invalidate()

        assert len(seen) == 1
        assert seen[0].namespace == "responders"
        assert seen[0].key is None

    @pytest.mark.asyncio
    async def test_own_event_is_ignored(self):
        """A cache does not reprocess its own invalidation."""
        bus = EventBus()
        cache = CacheService("responders", event_bus=bus)
        await cache.invalidate("registry")
        cache.set("registry", "v2")

        await bus.publish_immediate(
            CacheInvalidatedEvent(namespace="responders", key="registry", origin=cache._instance_id)
        )

        assert cache.get("registry") == "v2"
