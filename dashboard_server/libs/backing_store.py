"""
Shared key/value and counter stores backing the cache, rate limiter and
webhook idempotency keys.

Two implementations share one async interface:
- RedisStore: redis-py asyncio client, shared by every worker/instance
- MemoryStore: process-local dict with lazy expiry, NOT distributed

Every operation raises BackingStoreError when the backend is unavailable.
Owners (CacheLayer, TieredRateLimiter, IdempotencyStore) decide whether to
fail open or closed; stores never swallow errors themselves.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import BackingStoreError
from dashboard_server.utils.constants import MEMORY_STORE_SWEEP_INTERVAL_SECONDS


class RedisStore:
    """
    Async Redis store using redis-py.

    Architecture guarantees:
    - config is ALWAYS provided (required parameter) - no defensive checks needed
    - logger is ALWAYS provided (required parameter) - no defensive checks needed
    - client starts as None (lazy initialization) - defensive check acceptable

    Example:
        async with RedisStore(config, logger) as store:
            await store.set("key", "value", ttl=300)
            value = await store.get("key")
    """

    distributed: bool = True

    def __init__(self, config: Config, logger: logging.Logger) -> None:
        self.config = config
        self.logger = logger
        self.client: redis_async.Redis | None = None

        redis_config = self.config.root_data.get("redis") or {}
        self.host: str = redis_config.get("host", "localhost")
        self.port: int = redis_config.get("port", 6379)
        self.password: str | None = redis_config.get("password")
        self.db: int = redis_config.get("db", 0)

    async def connect(self) -> None:
        """
        Create connection to Redis server and validate it with PING.

        Raises:
            BackingStoreError: If connection fails
            ValueError: If client already exists
        """
        if self.client is not None:
            raise ValueError("Redis client already exists. Call disconnect() first.")

        self.logger.info(f"Connecting to Redis: {self.host}:{self.port}/{self.db}")

        try:
            self.client = redis_async.Redis(
                host=self.host,
                port=self.port,
                password=self.password,
                db=self.db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            await self.client.ping()
            self.logger.info("Redis connection established successfully")
        except RedisError as ex:
            self.logger.exception("Failed to connect to Redis")
            if self.client:
                await self.client.aclose()
                self.client = None
            raise BackingStoreError(f"Redis connection failed: {ex}") from ex

    async def disconnect(self) -> None:
        """Close Redis connection gracefully. Safe to call multiple times."""
        if self.client is not None:
            self.logger.info("Closing Redis connection")
            try:
                await self.client.aclose()
                self.logger.info("Redis connection closed successfully")
            except RedisError:
                self.logger.exception("Error closing Redis connection")
            finally:
                self.client = None

    def _require_client(self) -> redis_async.Redis:
        if self.client is None:  # Legitimate check - lazy initialization
            raise BackingStoreError("Redis client not initialized. Call connect() first.")
        return self.client

    async def get(self, key: str) -> str | None:
        client = self._require_client()
        try:
            return await client.get(key)
        except RedisError as ex:
            raise BackingStoreError(f"Failed to get key from Redis: {key}") from ex

    async def set(self, key: str, value: str, ttl: int) -> bool:
        client = self._require_client()
        try:
            await client.set(key, value, ex=ttl)
            return True
        except RedisError as ex:
            raise BackingStoreError(f"Failed to set key in Redis: {key}") from ex

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Atomically store `value` only when `key` does not exist (SET NX EX).

        Returns:
            True if the key was created, False if it already existed
        """
        client = self._require_client()
        try:
            return bool(await client.set(key, value, ex=ttl, nx=True))
        except RedisError as ex:
            raise BackingStoreError(f"Failed to set-if-absent key in Redis: {key}") from ex

    async def delete(self, key: str) -> bool:
        client = self._require_client()
        try:
            return await client.delete(key) > 0
        except RedisError as ex:
            raise BackingStoreError(f"Failed to delete key from Redis: {key}") from ex

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern using SCAN (never KEYS)."""
        client = self._require_client()
        deleted = 0
        try:
            batch: list[str] = []
            async for key in client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await client.delete(*batch)
                    batch = []

            if batch:
                deleted += await client.delete(*batch)

            return deleted
        except RedisError as ex:
            raise BackingStoreError(f"Failed to delete pattern from Redis: {pattern}") from ex

    async def increment_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        """
        Increment a fixed-window counter.

        The first increment in a window sets the expiry; later increments keep it.

        Returns:
            Tuple of (count in current window, seconds until the window resets)
        """
        client = self._require_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.ttl(key)
                count, ttl = await pipe.execute()

            if ttl < 0:
                await client.expire(key, window_seconds)
                ttl = window_seconds

            return int(count), int(ttl)
        except RedisError as ex:
            raise BackingStoreError(f"Failed to increment counter in Redis: {key}") from ex

    async def health_check(self) -> bool:
        try:
            await self._require_client().ping()
            return True
        except (RedisError, BackingStoreError):
            self.logger.exception("Redis health check failed")
            return False

    async def __aenter__(self) -> RedisStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()


class MemoryStore:
    """
    Process-local store with the RedisStore interface.

    Suitable for a single instance only: counters and idempotency keys are not
    shared between workers. Expiry is evaluated on access against `clock`, which
    tests replace to move time without sleeping. Writes also sweep every expired
    entry at most once per `sweep_interval` seconds, so keys that are never read
    again (dedup keys, per-IP counters) do not accumulate.
    """

    distributed: bool = False

    def __init__(
        self,
        logger: logging.Logger,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = MEMORY_STORE_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.logger = logger
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._data: dict[str, tuple[str, float | None]] = {}
        self._next_sweep_at = clock() + sweep_interval

    async def connect(self) -> None:
        self.logger.warning("Using in-memory backing store - rate limits and dedup keys are not distributed")

    async def disconnect(self) -> None:
        self._data.clear()

    def _live_value(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self._data[key]
            return None

        return value

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self.clock()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._data[key]

        self._next_sweep_at = now + self.sweep_interval
        if expired:
            self.logger.debug(f"Purged {len(expired)} expired in-memory entries")
        return len(expired)

    def _write(self, key: str, value: str, expires_at: float | None) -> None:
        if self.clock() >= self._next_sweep_at:
            self.purge_expired()
        self._data[key] = (value, expires_at)

        return value

    async def get(self, key: str) -> str | None:
        return self._live_value(key)

    async def set(self, key: str, value: str, ttl: int) -> bool:
        self._write(key, value, self.clock() + ttl)
        return True

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        # No await between check and write: atomic within the event loop.
        if self._live_value(key) is not None:
            return False

        self._write(key, value, self.clock() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        matching = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
        for key in matching:
            del self._data[key]

        return len(matching)

    async def increment_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = self.clock()
        current = self._live_value(key)

        if current is None:
            self._write(key, "1", now + window_seconds)
            return 1, window_seconds

        _, expires_at = self._data[key]
        count = int(current) + 1
        self._write(key, str(count), expires_at)
        remaining = window_seconds if expires_at is None else max(1, int(round(expires_at - now)))
        return count, remaining

    async def health_check(self) -> bool:
        return True

    async def __aenter__(self) -> MemoryStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()


def get_backing_store(config: Config, logger: logging.Logger) -> RedisStore | MemoryStore:
    """
    Factory selecting the backing store from `redis.enabled`.

    Returns:
        RedisStore when Redis is enabled, otherwise MemoryStore
    """
    if config.get_value("redis.enabled", return_on_none=False):
        return RedisStore(config=config, logger=logger)

    return MemoryStore(logger=logger)
