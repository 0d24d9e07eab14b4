import hashlib
import hmac
import json
import logging as python_logging
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

os.environ["DASHBOARD_SERVER_DATA_DIR"] = "dashboard_server/tests/manifests"
os.environ.pop("AZURE_DEVOPS_WEBHOOK_SECRET", None)
os.environ.pop("AZURE_DEVOPS_PAT", None)

from dashboard_server.libs.backing_store import MemoryStore  # noqa: E402
from dashboard_server.libs.cache import CacheLayer  # noqa: E402
from dashboard_server.libs.idempotency import IdempotencyStore  # noqa: E402
from dashboard_server.libs.webhook_processor import WebhookEventProcessor  # noqa: E402
from dashboard_server.web.realtime_broadcaster import RealtimeBroadcaster  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    """Manually advanced clock.

    `monotonic` feeds the stores (TTL, rate windows), `utcnow` feeds the
    processor and aggregator. Both move together with `advance`.
    """

    def __init__(self, start: datetime = datetime(2025, 11, 24, 12, 0, tzinfo=UTC)) -> None:
        self.now = start
        self._monotonic = 1000.0

    def monotonic(self) -> float:
        return self._monotonic

    def utcnow(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self.now += timedelta(seconds=seconds)


def sign(body: bytes, secret: str = WEBHOOK_SECRET, algorithm: str = "sha256") -> str:
    digest = hmac.new(secret.encode("utf-8"), msg=body, digestmod=getattr(hashlib, algorithm)).hexdigest()
    return f"{algorithm}={digest}"


def make_payload(
    event_type: str = "workitem.created",
    work_item_id: int = 12345,
    notification_id: int | None = 1,
    subscription_id: str | None = "sub-1",
    project: str | None = "Alpha",
    **fields: Any,
) -> dict[str, Any]:
    resource_fields: dict[str, Any] = {
        "System.Title": "Test",
        "System.WorkItemType": "Task",
        "System.State": "New",
        "System.ChangedDate": "2025-11-24T11:59:00Z",
        **fields,
    }
    if project:
        resource_fields["System.TeamProject"] = project

    payload: dict[str, Any] = {
        "id": f"evt-{work_item_id}-{notification_id}",
        "eventType": event_type,
        "publisherId": "tfs",
        "resource": {"id": work_item_id, "fields": resource_fields},
    }
    if notification_id is not None:
        payload["notificationId"] = notification_id
    if subscription_id is not None:
        payload["subscriptionId"] = subscription_id

    return payload


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def logger() -> python_logging.Logger:
    return python_logging.getLogger("dashboard-server-tests")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(logger: python_logging.Logger, clock: FakeClock) -> MemoryStore:
    return MemoryStore(logger=logger, clock=clock.monotonic)


@pytest.fixture
def cache(memory_store: MemoryStore, logger: python_logging.Logger) -> CacheLayer:
    return CacheLayer(store=memory_store, logger=logger)


@pytest.fixture
def mock_broadcaster() -> AsyncMock:
    broadcaster = AsyncMock(spec=RealtimeBroadcaster)
    broadcaster.broadcast_work_item_update = AsyncMock(return_value=1)
    return broadcaster


@pytest.fixture
def make_processor(
    cache: CacheLayer,
    mock_broadcaster: AsyncMock,
    memory_store: MemoryStore,
    logger: python_logging.Logger,
    clock: FakeClock,
) -> Callable[..., WebhookEventProcessor]:
    def _make(**kwargs: Any) -> WebhookEventProcessor:
        options: dict[str, Any] = {
            "cache": cache,
            "broadcaster": mock_broadcaster,
            "idempotency": IdempotencyStore(store=memory_store, logger=logger),
            "logger": logger,
            "clock": clock.utcnow,
            "sleep": AsyncMock(),
            **kwargs,
        }
        return WebhookEventProcessor(**options)

    return _make


@pytest.fixture
def processor(make_processor: Callable[..., WebhookEventProcessor]) -> WebhookEventProcessor:
    return make_processor()
