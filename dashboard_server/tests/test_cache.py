"""Tests for the TTL-tiered cache layer."""

import logging as python_logging
from unittest.mock import AsyncMock, Mock

import pytest

from dashboard_server.libs.backing_store import MemoryStore
from dashboard_server.libs.cache import CacheLayer
from dashboard_server.libs.exceptions import BackingStoreError, InternalError
from dashboard_server.libs.models import EventType
from dashboard_server.tests.conftest import FakeClock


@pytest.fixture
def broken_store() -> Mock:
    store = Mock(distributed=True)
    for method in ("get", "set", "delete", "delete_pattern"):
        setattr(store, method, AsyncMock(side_effect=BackingStoreError("down")))
    store.health_check = AsyncMock(return_value=False)
    return store


class TestKeysAndTtls:
    def test_build_key(self) -> None:
        assert CacheLayer.build_key("workItems", "Alpha", "item", 42) == "cache:workItems:Alpha:item:42"

    def test_ttl_for_tier_and_key(self, cache: CacheLayer) -> None:
        assert cache.ttl_for("workItems") == 300
        assert cache.ttl_for("iterations") == 3600
        assert cache.ttl_for("areas") == 3600
        assert cache.ttl_for("teams") == 1800
        assert cache.ttl_for("cache:teams:Alpha:all") == 1800
        assert cache.ttl_for("cache:unknown:Alpha") == 300

    def test_ttl_overrides(self, memory_store: MemoryStore, logger: python_logging.Logger) -> None:
        cache = CacheLayer(store=memory_store, logger=logger, ttls={"workItems": 60})
        assert cache.ttl_for("workItems") == 60
        assert cache.ttl_for("teams") == 1800


class TestGetSet:
    @pytest.mark.asyncio
    async def test_work_item_entry_expires_after_tier_ttl(self, cache: CacheLayer, clock: FakeClock) -> None:
        key = cache.build_key("workItems", "Alpha", "query", "abc")
        assert await cache.set(key, [{"id": 1}]) is True

        clock.advance(299)
        assert await cache.get(key) == [{"id": 1}]

        clock.advance(2)
        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, cache: CacheLayer, clock: FakeClock) -> None:
        await cache.set("cache:teams:Alpha:all", {"a": 1}, ttl=5)
        clock.advance(5)
        assert await cache.get("cache:teams:Alpha:all") is None

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_a_miss(self, cache: CacheLayer, memory_store: MemoryStore) -> None:
        await memory_store.set("cache:workItems:Alpha:x", "{not json", 60)
        assert await cache.get("cache:workItems:Alpha:x") is None

    @pytest.mark.asyncio
    async def test_get_or_set(self, cache: CacheLayer) -> None:
        factory = AsyncMock(return_value={"value": 1})

        assert await cache.get_or_set("cache:teams:Alpha:all", factory) == {"value": 1}
        assert await cache.get_or_set("cache:teams:Alpha:all", factory) == {"value": 1}
        factory.assert_awaited_once()

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["hitRate"] == 50.0

    @pytest.mark.asyncio
    async def test_get_or_set_does_not_cache_none(self, cache: CacheLayer) -> None:
        factory = AsyncMock(return_value=None)
        await cache.get_or_set("cache:teams:Alpha:all", factory)
        await cache.get_or_set("cache:teams:Alpha:all", factory)
        assert factory.await_count == 2


class TestInvalidation:
    async def _populate(self, cache: CacheLayer) -> None:
        for key in (
            "cache:workItems:Alpha:item:42",
            "cache:workItems:Alpha:item:43",
            "cache:workItems:Alpha:query:abc",
            "cache:workItems:Beta:query:abc",
            "cache:iterations:Alpha:Alpha Team:all",
            "cache:teams:Alpha:all",
        ):
            await cache.set(key, {"key": key})

    @pytest.mark.asyncio
    async def test_update_invalidates_only_project_work_items(self, cache: CacheLayer) -> None:
        await self._populate(cache)

        target = await cache.invalidate_work_items("Alpha", 42, EventType.UPDATED)

        assert target == "cache:workItems:Alpha:*"
        assert await cache.get("cache:workItems:Alpha:item:42") is None
        assert await cache.get("cache:workItems:Alpha:query:abc") is None
        assert await cache.get("cache:workItems:Beta:query:abc") is not None
        assert await cache.get("cache:iterations:Alpha:Alpha Team:all") is not None
        assert await cache.get("cache:teams:Alpha:all") is not None

    @pytest.mark.asyncio
    async def test_comment_invalidates_single_item(self, cache: CacheLayer) -> None:
        await self._populate(cache)

        target = await cache.invalidate_work_items("Alpha", 42, EventType.COMMENTED)

        assert target == "cache:workItems:Alpha:item:42"
        assert await cache.get("cache:workItems:Alpha:item:42") is None
        assert await cache.get("cache:workItems:Alpha:item:43") is not None
        assert await cache.get("cache:workItems:Alpha:query:abc") is not None

    @pytest.mark.asyncio
    async def test_unknown_project_invalidates_all_work_items(self, cache: CacheLayer) -> None:
        await self._populate(cache)

        target = await cache.invalidate_work_items(None, 42, EventType.CREATED)

        assert target == "cache:workItems:*"
        assert await cache.get("cache:workItems:Beta:query:abc") is None
        assert await cache.get("cache:teams:Alpha:all") is not None

    @pytest.mark.asyncio
    async def test_invalidate_single_key(self, cache: CacheLayer) -> None:
        await cache.set("cache:teams:Alpha:all", [1])
        assert await cache.invalidate("cache:teams:Alpha:all") is True
        assert await cache.get("cache:teams:Alpha:all") is None
        assert cache.get_stats()["invalidations"] == 1


class TestBackendFailure:
    @pytest.mark.asyncio
    async def test_fail_open_degrades_to_miss(self, broken_store: Mock, logger: python_logging.Logger) -> None:
        cache = CacheLayer(store=broken_store, logger=logger, fail_open=True)

        assert await cache.get("cache:workItems:Alpha:x") is None
        assert await cache.set("cache:workItems:Alpha:x", [1]) is False
        assert await cache.invalidate("cache:workItems:Alpha:*") is False
        assert cache.get_stats()["errors"] == 3

    @pytest.mark.asyncio
    async def test_fail_open_get_or_set_still_computes(
        self, broken_store: Mock, logger: python_logging.Logger
    ) -> None:
        cache = CacheLayer(store=broken_store, logger=logger)
        factory = AsyncMock(return_value=[1, 2])

        assert await cache.get_or_set("cache:workItems:Alpha:x", factory) == [1, 2]

    @pytest.mark.asyncio
    async def test_fail_closed_raises_internal_error(self, broken_store: Mock, logger: python_logging.Logger) -> None:
        cache = CacheLayer(store=broken_store, logger=logger, fail_open=False)

        with pytest.raises(InternalError):
            await cache.get("cache:workItems:Alpha:x")

    @pytest.mark.asyncio
    async def test_health_reports_degraded(self, broken_store: Mock, logger: python_logging.Logger) -> None:
        cache = CacheLayer(store=broken_store, logger=logger)
        health = await cache.health()

        assert health["status"] == "degraded"
        assert health["distributed"] is True
        assert health["failOpen"] is True

    @pytest.mark.asyncio
    async def test_health_memory_store(self, cache: CacheLayer) -> None:
        health = await cache.health()
        assert health["status"] == "healthy"
        assert health["distributed"] is False
