"""Tiered fixed-window rate limiting backed by the shared counter store.

Tiers (defaults):
- auth: 5 requests / 60s, keyed by IP + email
- webhooks: 100 requests / 60s, keyed by IP
- api: 1000 requests / 3600s, keyed by IP
- general: 500 requests / 900s, keyed by IP

Health check and favicon paths bypass every tier. When the backing store is
unavailable the limiter follows its `fail_open` policy: allow (default) or deny.
"""

import logging
from dataclasses import dataclass
from typing import Any

from dashboard_server.libs.backing_store import MemoryStore, RedisStore
from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import BackingStoreError
from dashboard_server.utils.constants import (
    DEFAULT_RATE_LIMITS,
    RATE_LIMIT_BYPASS_PATHS,
    RATE_LIMIT_KEY_PREFIX,
    RATE_LIMIT_TIER_API,
    RATE_LIMIT_TIER_AUTH,
    RATE_LIMIT_TIER_GENERAL,
    RATE_LIMIT_TIER_WEBHOOKS,
)


@dataclass(frozen=True)
class RateLimitTier:
    """Limit policy for one tier."""

    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate limit check."""

    allowed: bool
    retry_after_seconds: int
    remaining: int
    limit: int
    degraded: bool = False


def is_bypassed(path: str) -> bool:
    """Return True for paths that are never rate limited."""
    return path.rstrip("/") in RATE_LIMIT_BYPASS_PATHS or path in RATE_LIMIT_BYPASS_PATHS


def resolve_tier(path: str) -> str:
    """Map a request path to its rate limit tier."""
    if path.startswith("/api/auth"):
        return RATE_LIMIT_TIER_AUTH
    if path.startswith("/webhooks"):
        return RATE_LIMIT_TIER_WEBHOOKS
    if path.startswith("/api"):
        return RATE_LIMIT_TIER_API
    return RATE_LIMIT_TIER_GENERAL


def build_identifier(tier: str, client_ip: str, email: str | None = None) -> str:
    """Build the counter identifier; the auth tier is keyed by IP and email."""
    if tier == RATE_LIMIT_TIER_AUTH:
        return f"{client_ip}:{(email or 'anonymous').lower()}"
    return client_ip


class TieredRateLimiter:
    """
    Fixed-window request limiter with named tiers.

    Architecture guarantees:
    - store is ALWAYS provided (required parameter) - no defensive checks needed
    - logger is ALWAYS provided (required parameter) - no defensive checks needed
    """

    def __init__(
        self,
        store: RedisStore | MemoryStore,
        logger: logging.Logger,
        tiers: dict[str, RateLimitTier] | None = None,
        enabled: bool = True,
        fail_open: bool = True,
    ) -> None:
        self.store = store
        self.logger = logger
        self.enabled = enabled
        self.fail_open = fail_open
        self.tiers: dict[str, RateLimitTier] = tiers or {
            name: RateLimitTier(name=name, limit=limit, window_seconds=window)
            for name, (limit, window) in DEFAULT_RATE_LIMITS.items()
        }

        # Statistics
        self._total_checks = 0
        self._rejected = 0
        self._store_errors = 0

    @classmethod
    def from_config(cls, config: Config, store: RedisStore | MemoryStore, logger: logging.Logger) -> "TieredRateLimiter":
        """Build a limiter from the `rate-limit` config section, falling back to default tiers."""
        tier_overrides: dict[str, Any] = config.get_value("rate-limit.tiers", return_on_none={})
        tiers: dict[str, RateLimitTier] = {}

        for name, (default_limit, default_window) in DEFAULT_RATE_LIMITS.items():
            override = tier_overrides.get(name) or {}
            tiers[name] = RateLimitTier(
                name=name,
                limit=int(override.get("limit", default_limit)),
                window_seconds=int(override.get("window-seconds", default_window)),
            )

        return cls(
            store=store,
            logger=logger,
            tiers=tiers,
            enabled=config.get_value("rate-limit.enabled", return_on_none=True),
            fail_open=config.get_value("rate-limit.fail-open", return_on_none=True),
        )

    async def check(self, tier: str, identifier: str) -> RateLimitResult:
        """Count one request for `identifier` in `tier` and decide whether it is allowed.

        Args:
            tier: Tier name (auth, webhooks, api, general)
            identifier: Counter identity (client IP, or IP + email for auth)

        Returns:
            RateLimitResult with allowed flag, retry-after seconds and remaining quota

        Raises:
            KeyError: If tier is unknown
        """
        policy = self.tiers[tier]

        if not self.enabled:
            return RateLimitResult(allowed=True, retry_after_seconds=0, remaining=policy.limit, limit=policy.limit)

        self._total_checks += 1
        key = f"{RATE_LIMIT_KEY_PREFIX}:{tier}:{identifier}"

        try:
            count, reset_in = await self.store.increment_window(key, policy.window_seconds)
        except BackingStoreError as ex:
            self._store_errors += 1
            if self.fail_open:
                self.logger.warning(f"Rate limit store unavailable, allowing request (tier={tier}): {ex}")
                return RateLimitResult(
                    allowed=True, retry_after_seconds=0, remaining=policy.limit, limit=policy.limit, degraded=True
                )

            self.logger.warning(f"Rate limit store unavailable, denying request (tier={tier}): {ex}")
            self._rejected += 1
            return RateLimitResult(
                allowed=False,
                retry_after_seconds=policy.window_seconds,
                remaining=0,
                limit=policy.limit,
                degraded=True,
            )

        if count > policy.limit:
            self._rejected += 1
            return RateLimitResult(
                allowed=False,
                retry_after_seconds=max(1, reset_in),
                remaining=0,
                limit=policy.limit,
            )

        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            remaining=policy.limit - count,
            limit=policy.limit,
        )

    def log_limit_exceeded(self, tier: str, identifier: str, endpoint: str, result: RateLimitResult) -> None:
        """Log the security event for a rejected request."""
        self.logger.warning(
            f"security_event=RATE_LIMIT_EXCEEDED tier={tier} identifier={identifier} "
            f"endpoint={endpoint} limit={result.limit}/{self.tiers[tier].window_seconds}s "
            f"retry_after={result.retry_after_seconds}s"
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "failOpen": self.fail_open,
            "distributed": self.store.distributed,
            "totalChecks": self._total_checks,
            "rejected": self._rejected,
            "storeErrors": self._store_errors,
            "tiers": {
                name: {"limit": tier.limit, "windowSeconds": tier.window_seconds} for name, tier in self.tiers.items()
            },
        }
