"""Idempotency keys for at-least-once webhook delivery.

A delivery is identified by (subscriptionId, notificationId). When the
notification id is missing, (eventType, workItemId, System.ChangedDate) is used
instead; two edits of the same work item within the same ChangedDate
resolution would collide under that fallback.

Claiming a key is a single atomic set-if-absent with TTL, so concurrent
duplicate deliveries cannot both win.
"""

import hashlib
import logging

from dashboard_server.libs.backing_store import MemoryStore, RedisStore
from dashboard_server.libs.exceptions import BackingStoreError
from dashboard_server.libs.models import WebhookEvent
from dashboard_server.utils.constants import DEFAULT_IDEMPOTENCY_TTL_SECONDS, IDEMPOTENCY_KEY_PREFIX


def build_idempotency_key(event: WebhookEvent) -> str:
    if event.notification_id:
        identity = f"notification:{event.subscription_id or '-'}:{event.notification_id}"
    else:
        identity = f"change:{event.event_type.value}:{event.work_item_id}:{event.changed_date or '-'}"

    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:32]
    return f"{IDEMPOTENCY_KEY_PREFIX}:{digest}"


class IdempotencyStore:
    """
    Claims and releases dedup keys in the backing store.

    Store failures fail open: the event is treated as new and a warning logged.
    """

    def __init__(
        self,
        store: RedisStore | MemoryStore,
        logger: logging.Logger,
        ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.logger = logger
        self.ttl_seconds = ttl_seconds

    async def claim(self, key: str, event_id: str) -> bool:
        """Mark `key` as seen.

        Returns:
            True if this caller claimed the key (first delivery), False for a duplicate
        """
        try:
            return await self.store.set_if_absent(key, event_id, self.ttl_seconds)
        except BackingStoreError as ex:
            self.logger.warning(f"Idempotency store unavailable, processing {event_id} as new: {ex}")
            return True

    async def release(self, key: str) -> None:
        """Forget `key` so a redelivery of a failed event is processed again."""
        try:
            await self.store.delete(key)
        except BackingStoreError as ex:
            self.logger.warning(f"Failed to release idempotency key {key}: {ex}")
