"""
TTL-tiered cache over the shared backing store.

Keys are namespaced as ``cache:{tier}:{project}:{...}`` where tier is one of
workItems, iterations, areas or teams. The tier selects the default TTL.

Webhook-driven invalidation is targeted: a work item change deletes only the
owning project's workItems bucket (or a single work item entry for comments),
never other tiers or other projects.

With ``fail_open`` (default) a backend failure turns every read into a miss and
every write/invalidation into a logged no-op returning False.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from dashboard_server.libs.backing_store import MemoryStore, RedisStore
from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import BackingStoreError, InternalError
from dashboard_server.libs.models import EventType
from dashboard_server.utils.constants import (
    CACHE_KEY_PREFIX,
    CACHE_TIER_AREAS,
    CACHE_TIER_ITERATIONS,
    CACHE_TIER_TEAMS,
    CACHE_TIER_WORK_ITEMS,
    DEFAULT_CACHE_TTLS,
)

_PATTERN_CHARS = frozenset("*?[")

_CONFIG_TTL_KEYS: dict[str, str] = {
    CACHE_TIER_WORK_ITEMS: "work-items",
    CACHE_TIER_ITERATIONS: "iterations",
    CACHE_TIER_AREAS: "areas",
    CACHE_TIER_TEAMS: "teams",
}


class CacheLayer:
    """
    Owner of every cache entry; no other component writes cache keys.

    Architecture guarantees:
    - store is ALWAYS provided (required parameter) - no defensive checks needed
    - logger is ALWAYS provided (required parameter) - no defensive checks needed
    """

    def __init__(
        self,
        store: RedisStore | MemoryStore,
        logger: logging.Logger,
        ttls: dict[str, int] | None = None,
        fail_open: bool = True,
    ) -> None:
        self.store = store
        self.logger = logger
        self.fail_open = fail_open
        self.ttls: dict[str, int] = {**DEFAULT_CACHE_TTLS, **(ttls or {})}

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._invalidations = 0
        self._errors = 0

    @classmethod
    def from_config(cls, config: Config, store: RedisStore | MemoryStore, logger: logging.Logger) -> CacheLayer:
        ttls: dict[str, int] = {}
        for tier, config_key in _CONFIG_TTL_KEYS.items():
            value = config.get_value(f"cache.ttl.{config_key}")
            if value is not None:
                ttls[tier] = int(value)

        return cls(
            store=store,
            logger=logger,
            ttls=ttls,
            fail_open=config.get_value("cache.fail-open", return_on_none=True),
        )

    @staticmethod
    def build_key(tier: str, project: str, *parts: Any) -> str:
        """Build a namespaced key, e.g. ``cache:workItems:Alpha:item:42``."""
        segments = [CACHE_KEY_PREFIX, tier, project, *(str(part) for part in parts)]
        return ":".join(segments)

    def ttl_for(self, key_or_tier: str) -> int:
        """Return the default TTL for a tier name or a namespaced key."""
        tier = key_or_tier
        if key_or_tier.startswith(f"{CACHE_KEY_PREFIX}:"):
            tier = key_or_tier.split(":", 2)[1]

        return self.ttls.get(tier, self.ttls[CACHE_TIER_WORK_ITEMS])

    def _handle_store_error(self, operation: str, key: str, ex: BackingStoreError) -> None:
        self._errors += 1
        if not self.fail_open:
            raise InternalError(f"Cache backend unavailable during {operation}") from ex

        self.logger.warning(f"Cache {operation} failed for {key}, degrading to miss: {ex}")

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.store.get(key)
        except BackingStoreError as ex:
            self._handle_store_error("get", key, ex)
            self._misses += 1
            return None

        if raw is None:
            self._misses += 1
            return None

        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning(f"Discarding undecodable cache entry {key}")
            self._misses += 1
            return None

        self._hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store a JSON-serializable value; ttl defaults to the key's tier TTL."""
        ttl_seconds = ttl if ttl is not None else self.ttl_for(key)
        payload = json.dumps(value, default=str)

        try:
            await self.store.set(key, payload, ttl_seconds)
        except BackingStoreError as ex:
            self._handle_store_error("set", key, ex)
            return False

        self._sets += 1
        return True

    async def invalidate(self, key_or_pattern: str) -> bool:
        """Delete a single key or every key matching a glob pattern."""
        try:
            if _PATTERN_CHARS.intersection(key_or_pattern):
                deleted = await self.store.delete_pattern(key_or_pattern)
            else:
                deleted = int(await self.store.delete(key_or_pattern))
        except BackingStoreError as ex:
            self._handle_store_error("invalidate", key_or_pattern, ex)
            return False

        self._invalidations += 1
        self.logger.debug(f"Invalidated {deleted} cache entries for {key_or_pattern}")
        return True

    async def invalidate_work_items(self, project: str | None, work_item_id: int, event_type: EventType) -> str:
        """
        Invalidate cache entries affected by a work item event.

        Comments only touch the work item's own detail entry; every other event
        type drops the project's whole workItems bucket. Unknown project falls
        back to the workItems bucket of every project.

        Returns:
            The key or pattern that was invalidated
        """
        if event_type == EventType.COMMENTED and project:
            target = self.build_key(CACHE_TIER_WORK_ITEMS, project, "item", work_item_id)
        elif project:
            target = self.build_key(CACHE_TIER_WORK_ITEMS, project, "*")
        else:
            target = f"{CACHE_KEY_PREFIX}:{CACHE_TIER_WORK_ITEMS}:*"

        await self.invalidate(target)
        return target

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]], ttl: int | None = None) -> Any:
        """Return the cached value or compute it with `factory` and cache the result."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await factory()
        if value is not None:
            await self.set(key, value, ttl)

        return value

    def get_stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "invalidations": self._invalidations,
            "errors": self._errors,
            "hitRate": round(self._hits / lookups * 100, 2) if lookups else 0.0,
            "ttls": dict(self.ttls),
        }

    async def health(self) -> dict[str, Any]:
        healthy = await self.store.health_check()
        return {
            "status": "healthy" if healthy else "degraded",
            "distributed": self.store.distributed,
            "failOpen": self.fail_open,
            **self.get_stats(),
        }
