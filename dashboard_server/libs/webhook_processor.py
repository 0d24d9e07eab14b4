"""
Azure DevOps webhook event processing.

Each delivery moves through: Received -> Validated -> Deduplicated/Rejected ->
Processed(success|failure).

- Received: the raw body must be a JSON object (ParseError otherwise)
- Validated: signature (when a secret is configured), eventType and resource.id
- Deduplicated: an atomic claim on the idempotency key; duplicates succeed
  without side effects
- Processed: the handler for the event type invalidates the affected cache
  bucket and broadcasts the change; failures are retried with exponential
  backoff and then recorded, never raised

Rejections (parse, signature, validation) raise DashboardError subclasses for the
HTTP layer to render. Processing failures are returned as ProcessingResult.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from dashboard_server.libs.cache import CacheLayer
from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import (
    AuthenticationError,
    ParseError,
    UnsupportedEventTypeError,
    ValidationError,
)
from dashboard_server.libs.idempotency import IdempotencyStore, build_idempotency_key
from dashboard_server.libs.models import (
    SUPPORTED_EVENT_TYPES,
    AlertThresholds,
    AlertThresholdsUpdate,
    EventType,
    ProcessingResult,
    WebhookEvent,
)
from dashboard_server.utils.app_utils import signature_validation_status, verify_signature
from dashboard_server.utils.constants import (
    ALERT_HISTORY_SIZE,
    ALERT_HISTORY_VIEW_SIZE,
    DEFAULT_HANDLER_MAX_RETRIES,
    DEFAULT_HANDLER_RETRY_DELAY_SECONDS,
    DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    DEFAULT_METRICS_RETENTION,
    FIELD_CHANGED_DATE,
    FIELD_TEAM_PROJECT,
    FIELD_TITLE,
    FIELD_WORK_ITEM_TYPE,
)
from dashboard_server.utils.helpers import format_task_fields, prepare_log_prefix

if TYPE_CHECKING:
    from dashboard_server.libs.backing_store import MemoryStore, RedisStore
    from dashboard_server.web.realtime_broadcaster import RealtimeBroadcaster

TIMEFRAME_PATTERN = re.compile(r"^(\d+)([hdwm])$")
TIMEFRAME_UNITS: dict[str, timedelta] = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
}
DEFAULT_TIMEFRAME = "24h"

ALERT_STATUS_ORDER: dict[str, int] = {"healthy": 0, "warning": 1, "critical": 2}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timeframe(timeframe: str) -> timedelta:
    """Parse a timeframe such as ``1h``, ``24h``, ``7d``, ``2w`` or ``1m`` (30 days).

    Raises:
        ValidationError: If the timeframe does not match ``<number><h|d|w|m>``
    """
    match = TIMEFRAME_PATTERN.match(timeframe.strip()) if timeframe else None
    if not match or int(match.group(1)) == 0:
        raise ValidationError(
            f"Invalid timeframe: {timeframe!r}. Expected <number><h|d|w|m>, e.g. 24h or 7d",
            details=[{"field": "timeframe", "message": "must match ^\\d+[hdwm]$ and be positive"}],
        )

    return int(match.group(1)) * TIMEFRAME_UNITS[match.group(2)]


def _resource_field_errors(resource: dict[str, Any]) -> list[dict[str, str]]:
    """Shape errors in resource.fields, resource.revision and System.TeamProject."""
    errors: list[dict[str, str]] = []
    fields = resource.get("fields")
    if fields is not None and not isinstance(fields, dict):
        errors.append({"field": "resource.fields", "message": "must be an object"})

    revision = resource.get("revision")
    if revision is not None and not isinstance(revision, dict):
        errors.append({"field": "resource.revision", "message": "must be an object"})
    elif isinstance(revision, dict) and revision.get("fields") is not None:
        if not isinstance(revision["fields"], dict):
            errors.append({"field": "resource.revision.fields", "message": "must be an object"})
        else:
            fields = revision["fields"]

    if isinstance(fields, dict):
        project = fields.get(FIELD_TEAM_PROJECT)
        if project is not None and not isinstance(project, str):
            errors.append({"field": f"resource.fields.{FIELD_TEAM_PROJECT}", "message": "must be a string"})

    return errors


@dataclass(frozen=True)
class EventRecord:
    """One processed delivery, kept for windowed metrics."""

    timestamp: datetime
    event_type: str
    success: bool
    processing_time_ms: float
    duplicate: bool = False


class WebhookEventProcessor:
    """
    Validates, deduplicates and dispatches Azure DevOps webhook events.

    Owns the process statistics and alert thresholds. Instances are created
    once per application (see app lifespan) and injected into request handlers.

    Architecture guarantees:
    - cache, broadcaster, idempotency and logger are ALWAYS provided - no defensive checks
    - clock returns timezone-aware UTC datetimes
    """

    def __init__(
        self,
        cache: CacheLayer,
        broadcaster: RealtimeBroadcaster,
        idempotency: IdempotencyStore,
        logger: logging.Logger,
        secret: str | None = None,
        thresholds: AlertThresholds | None = None,
        max_retries: int = DEFAULT_HANDLER_MAX_RETRIES,
        retry_delay: float = DEFAULT_HANDLER_RETRY_DELAY_SECONDS,
        metrics_retention: int = DEFAULT_METRICS_RETENTION,
        default_project: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
        timer: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.broadcaster = broadcaster
        self.idempotency = idempotency
        self.logger = logger
        self.secret = secret
        self.thresholds = thresholds or AlertThresholds()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_project = default_project
        self.clock = clock
        self.timer = timer
        self.sleep = sleep

        self._handlers: dict[EventType, Callable[[WebhookEvent], Awaitable[None]]] = {
            EventType.CREATED: self._handle_created,
            EventType.UPDATED: self._handle_updated,
            EventType.DELETED: self._handle_deleted,
            EventType.RESTORED: self._handle_restored,
            EventType.COMMENTED: self._handle_commented,
        }

        self._pending: dict[int, WebhookEvent] = {}
        self._pending_ids = itertools.count()
        self._records: deque[EventRecord] = deque(maxlen=metrics_retention)
        self._alert_history: deque[dict[str, Any]] = deque(maxlen=ALERT_HISTORY_SIZE)
        self._active_alerts: dict[str, dict[str, Any]] = {}
        self._reset_counters()

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: RedisStore | MemoryStore,
        cache: CacheLayer,
        broadcaster: RealtimeBroadcaster,
        logger: logging.Logger,
    ) -> WebhookEventProcessor:
        alert_config: dict[str, Any] = config.get_value("webhook-alerts", return_on_none={})
        threshold_values = {
            field_name: alert_config[config_key]
            for field_name, config_key in (
                ("success_rate_threshold", "success-rate-threshold"),
                ("processing_time_threshold", "processing-time-threshold"),
                ("error_rate_threshold", "error-rate-threshold"),
                ("queue_size_threshold", "queue-size-threshold"),
            )
            if alert_config.get(config_key) is not None
        }

        return cls(
            cache=cache,
            broadcaster=broadcaster,
            idempotency=IdempotencyStore(
                store=store,
                logger=logger,
                ttl_seconds=config.get_value("webhook.idempotency-ttl", return_on_none=DEFAULT_IDEMPOTENCY_TTL_SECONDS),
            ),
            logger=logger,
            secret=config.get_webhook_secret(),
            thresholds=AlertThresholds(**threshold_values),
            max_retries=config.get_value("webhook.max-retries", return_on_none=DEFAULT_HANDLER_MAX_RETRIES),
            retry_delay=config.get_value("webhook.retry-delay", return_on_none=DEFAULT_HANDLER_RETRY_DELAY_SECONDS),
            metrics_retention=config.get_value("webhook.metrics-retention", return_on_none=DEFAULT_METRICS_RETENTION),
            default_project=config.get_value("azure-devops.project"),
        )

    def _reset_counters(self) -> None:
        self._total_received = 0
        self._total_processed = 0
        self._total_failed = 0
        self._total_rejected = 0
        self._total_duplicates = 0
        self._invalid_signatures = 0
        self._by_event_type: dict[str, int] = {}
        self._total_processing_ms = 0.0
        self._timed_events = 0
        self._last_event_time: datetime | None = None

    # Ingestion

    async def process_webhook(self, raw_body: bytes, signature_header: str | None = None) -> ProcessingResult:
        """
        Process one webhook delivery.

        Args:
            raw_body: Request body exactly as received; the signature is computed over these bytes
            signature_header: Value of X-Hub-Signature-256 / X-Hub-Signature, if any

        Returns:
            ProcessingResult (success, or a recorded handler failure)

        Raises:
            ParseError: Body is not a JSON object
            AuthenticationError: A secret is configured and the signature is missing or wrong
            ValidationError: eventType or resource.id missing, or event type unsupported
        """
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as ex:
            self._total_rejected += 1
            raise ParseError("Invalid JSON payload", details=str(ex)) from ex

        if not isinstance(payload, dict):
            self._total_rejected += 1
            raise ParseError("Webhook payload must be a JSON object")

        if not verify_signature(payload_body=raw_body, signature_header=signature_header, secret=self.secret):
            self._total_rejected += 1
            self._invalid_signatures += 1
            reason = "missing" if not signature_header else "invalid"
            self.logger.warning(
                f"security_event=INVALID_SIGNATURE reason={reason} eventType={str(payload.get('eventType'))[:100]}"
            )
            raise AuthenticationError(f"Webhook signature {reason}")

        return await self._process_payload(payload=payload, signature_present=bool(signature_header))

    async def process_test_event(self, body: dict[str, Any]) -> ProcessingResult:
        """Run a synthetic event built from a partial body through the pipeline (no signature)."""
        resource: dict[str, Any] = body.get("resource") or {}
        fields: dict[str, Any] = {
            FIELD_TITLE: "Webhook test work item",
            FIELD_WORK_ITEM_TYPE: "Task",
            **(resource.get("fields") or {}),
        }
        fields.setdefault(FIELD_CHANGED_DATE, self.clock().isoformat())

        payload: dict[str, Any] = {
            "id": f"test-{uuid4().hex[:12]}",
            "eventType": body.get("eventType", EventType.UPDATED.value),
            "publisherId": "tfs",
            "resource": {**resource, "id": resource.get("id", 1), "fields": fields},
        }
        self.logger.info(f"Processing test webhook event {payload['id']}")
        return await self._process_payload(payload=payload, signature_present=False)

    def _validate_payload(self, payload: dict[str, Any]) -> None:
        errors: list[dict[str, str]] = []
        event_type = payload.get("eventType")
        resource = payload.get("resource")

        if not event_type or not isinstance(event_type, str):
            errors.append({"field": "eventType", "message": "eventType is required"})

        if not isinstance(resource, dict) or resource.get("id") is None:
            errors.append({"field": "resource.id", "message": "resource.id is required"})
        else:
            try:
                int(resource.get("workItemId") or resource["id"])
            except (TypeError, ValueError):
                errors.append({"field": "resource.id", "message": "resource.id must be an integer"})
            errors.extend(_resource_field_errors(resource))

        if errors:
            self._total_rejected += 1
            raise ValidationError("Invalid webhook payload", details=errors)

        if event_type not in SUPPORTED_EVENT_TYPES:
            self._total_rejected += 1
            self.logger.warning(f"Rejecting unsupported event type: {str(event_type)[:100]}")
            raise UnsupportedEventTypeError(
                f"Unsupported event type: {event_type}",
                details={"supportedEvents": [event.value for event in EventType]},
            )

    async def _process_payload(self, payload: dict[str, Any], signature_present: bool) -> ProcessingResult:
        start = self.timer()
        self._validate_payload(payload)

        try:
            event = WebhookEvent.from_payload(
                payload,
                received_at=self.clock(),
                signature_present=signature_present,
                default_project=self.default_project,
            )
        except PydanticValidationError as ex:
            self._total_rejected += 1
            raise ValidationError(
                "Invalid webhook payload",
                details=[
                    {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                    for error in ex.errors()
                ],
            ) from ex
        log_prefix = prepare_log_prefix(event.event_type.value, event.event_id, event.work_item_id)

        self._total_received += 1
        self._by_event_type[event.event_type.value] = self._by_event_type.get(event.event_type.value, 0) + 1
        self._last_event_time = event.received_at

        pending_id = next(self._pending_ids)
        self._pending[pending_id] = event

        try:
            key = build_idempotency_key(event)
            if not await self.idempotency.claim(key, event.event_id):
                self._total_duplicates += 1
                self._total_processed += 1
                self.logger.info(f"{log_prefix} Duplicate delivery, skipping side effects")
                return self._finish(event, start, success=True, duplicate=True)

            self.logger.info(
                f"{log_prefix} {format_task_fields('webhook_processing', 'event_dispatch', 'started')} "
                f"Processing {event.event_type.value} for project {event.project}"
            )
            error = await self._dispatch_with_retry(event, log_prefix)

            if error is None:
                self._total_processed += 1
                self.logger.info(
                    f"{log_prefix} {format_task_fields('webhook_processing', 'event_dispatch', 'completed')}"
                )
                return self._finish(event, start, success=True)

            self._total_failed += 1
            await self.idempotency.release(key)
            self.logger.error(
                f"{log_prefix} {format_task_fields('webhook_processing', 'event_dispatch', 'failed')} {error}"
            )
            return self._finish(event, start, success=False, error=error)

        finally:
            self._pending.pop(pending_id, None)
            self._evaluate_alerts()

    async def _dispatch_with_retry(self, event: WebhookEvent, log_prefix: str) -> str | None:
        """Run the event handler, retrying with exponential backoff.

        Returns:
            None on success, otherwise the last error message
        """
        handler = self._handlers[event.event_type]
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                await handler(event)
                return None
            except Exception as ex:
                if attempt + 1 >= attempts:
                    self.logger.exception(f"{log_prefix} Handler failed after {attempts} attempt(s)")
                    return f"Failed to process {event.event_type.value}: {ex}"

                delay = self.retry_delay * (2**attempt)
                self.logger.warning(
                    f"{log_prefix} Handler attempt {attempt + 1}/{attempts} failed: {ex}. Retrying in {delay:.2f}s"
                )
                await self.sleep(delay)

        return None

    def _finish(
        self,
        event: WebhookEvent,
        start: float,
        success: bool,
        error: str | None = None,
        duplicate: bool = False,
    ) -> ProcessingResult:
        processing_time_ms = (self.timer() - start) * 1000
        self._total_processing_ms += processing_time_ms
        self._timed_events += 1
        self._records.append(
            EventRecord(
                timestamp=event.received_at,
                event_type=event.event_type.value,
                success=success,
                processing_time_ms=processing_time_ms,
                duplicate=duplicate,
            )
        )

        return ProcessingResult(
            success=success,
            event_type=event.event_type.value,
            event_id=event.event_id,
            error=error,
            code=None if success else "PROCESSING_ERROR",
            processing_time_ms=processing_time_ms,
            duplicate=duplicate,
        )

    # Per event type handlers

    async def _apply(self, event: WebhookEvent, metadata: dict[str, Any]) -> None:
        invalidated = await self.cache.invalidate_work_items(event.project, event.work_item_id, event.event_type)
        await self.broadcaster.broadcast_work_item_update(
            action=event.event_type.action,
            project=event.project,
            work_item=event.broadcast_summary(),
            metadata={"eventId": event.event_id, "invalidated": invalidated, **metadata},
        )

    async def _handle_created(self, event: WebhookEvent) -> None:
        await self._apply(event, metadata={})

    async def _handle_updated(self, event: WebhookEvent) -> None:
        await self._apply(event, metadata={"changedFields": event.changed_fields})

    async def _handle_deleted(self, event: WebhookEvent) -> None:
        await self._apply(event, metadata={"deleted": True})

    async def _handle_restored(self, event: WebhookEvent) -> None:
        await self._apply(event, metadata={"restored": True})

    async def _handle_commented(self, event: WebhookEvent) -> None:
        await self._apply(event, metadata={"commented": True, "comment": event.comment})

    # Statistics

    @property
    def queue_size(self) -> int:
        return len(self._pending)

    def _success_rate(self) -> float:
        completed = self._total_processed + self._total_failed
        if not completed:
            return 100.0
        return round(self._total_processed / completed * 100, 2)

    def _error_rate(self) -> float:
        completed = self._total_processed + self._total_failed
        if not completed:
            return 0.0
        return round(self._total_failed / completed * 100, 2)

    def _average_processing_time(self) -> float:
        if not self._timed_events:
            return 0.0
        return round(self._total_processing_ms / self._timed_events, 3)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "totalReceived": self._total_received,
            "totalProcessed": self._total_processed,
            "totalFailed": self._total_failed,
            "totalRejected": self._total_rejected,
            "totalDuplicates": self._total_duplicates,
            "invalidSignatures": self._invalid_signatures,
            "byEventType": dict(self._by_event_type),
            "successRate": self._success_rate(),
            "errorRate": self._error_rate(),
            "averageProcessingTimeMs": self._average_processing_time(),
            "queueSize": self.queue_size,
            "lastEventTime": self._last_event_time.isoformat() if self._last_event_time else None,
            "configuration": {
                "signatureValidation": signature_validation_status(self.secret),
                "supportedEvents": [event.value for event in EventType],
                "maxRetries": self.max_retries,
                "retryDelaySeconds": self.retry_delay,
                "idempotencyTtlSeconds": self.idempotency.ttl_seconds,
                "distributed": self.idempotency.store.distributed,
            },
        }

    def get_detailed_metrics(self, timeframe: str = DEFAULT_TIMEFRAME) -> dict[str, Any]:
        """Success rate and processing time over a rolling window.

        Raises:
            ValidationError: If timeframe is malformed
        """
        window = parse_timeframe(timeframe)
        window_end = self.clock()
        window_start = window_end - window
        records = [record for record in self._records if record.timestamp >= window_start]

        times = [record.processing_time_ms for record in records]
        successful = sum(1 for record in records if record.success)
        by_type: dict[str, dict[str, int]] = {}
        for record in records:
            bucket = by_type.setdefault(record.event_type, {"total": 0, "successful": 0, "failed": 0})
            bucket["total"] += 1
            bucket["successful" if record.success else "failed"] += 1

        hours = window.total_seconds() / 3600
        return {
            "timeframe": timeframe,
            "windowStart": window_start.isoformat(),
            "windowEnd": window_end.isoformat(),
            "totalEvents": len(records),
            "successfulEvents": successful,
            "failedEvents": len(records) - successful,
            "duplicateEvents": sum(1 for record in records if record.duplicate),
            "successRate": round(successful / len(records) * 100, 2) if records else 100.0,
            "averageProcessingTimeMs": round(sum(times) / len(times), 3) if times else 0.0,
            "minProcessingTimeMs": round(min(times), 3) if times else 0.0,
            "maxProcessingTimeMs": round(max(times), 3) if times else 0.0,
            "eventsPerHour": round(len(records) / hours, 3),
            "byEventType": by_type,
        }

    # Alerts

    def _metric_statuses(self) -> dict[str, dict[str, Any]]:
        success_rate = self._success_rate()
        error_rate = self._error_rate()
        avg_time = self._average_processing_time()
        queue_size = self.queue_size
        thresholds = self.thresholds

        return {
            "successRate": {
                "value": success_rate,
                "threshold": thresholds.success_rate_threshold,
                "status": "critical" if success_rate < thresholds.success_rate_threshold else "healthy",
                "message": f"Success rate {success_rate}% is below {thresholds.success_rate_threshold}%",
            },
            "processingTime": {
                "value": avg_time,
                "threshold": thresholds.processing_time_threshold,
                "status": "warning" if avg_time > thresholds.processing_time_threshold else "healthy",
                "message": (
                    f"Average processing time {avg_time}ms exceeds {thresholds.processing_time_threshold}ms"
                ),
            },
            "errorRate": {
                "value": error_rate,
                "threshold": thresholds.error_rate_threshold,
                "status": "critical" if error_rate > thresholds.error_rate_threshold else "healthy",
                "message": f"Error rate {error_rate}% exceeds {thresholds.error_rate_threshold}%",
            },
            "queueSize": {
                "value": queue_size,
                "threshold": thresholds.queue_size_threshold,
                "status": "warning" if queue_size > thresholds.queue_size_threshold else "healthy",
                "message": f"Queue size {queue_size} exceeds {thresholds.queue_size_threshold}",
            },
        }

    def _evaluate_alerts(self) -> dict[str, dict[str, Any]]:
        statuses = self._metric_statuses()
        now = self.clock().isoformat()

        for metric, status in statuses.items():
            breached = status["status"] != "healthy"
            active = self._active_alerts.get(metric)

            if breached and active is None:
                alert = {
                    "metric": metric,
                    "severity": status["status"],
                    "message": status["message"],
                    "value": status["value"],
                    "threshold": status["threshold"],
                    "raisedAt": now,
                }
                self._active_alerts[metric] = alert
                self._alert_history.append({**alert, "event": "raised", "timestamp": now})
                self.logger.warning(f"Webhook alert raised: {status['message']}")
            elif breached and active is not None:
                active.update(value=status["value"], message=status["message"])
            elif not breached and active is not None:
                del self._active_alerts[metric]
                self._alert_history.append({**active, "event": "resolved", "timestamp": now})
                self.logger.info(f"Webhook alert resolved: {metric}")

        return statuses

    def get_alert_status(self) -> dict[str, Any]:
        statuses = self._evaluate_alerts()
        overall = max((status["status"] for status in statuses.values()), key=ALERT_STATUS_ORDER.__getitem__)

        return {
            "status": overall,
            "metrics": {
                metric: {key: status[key] for key in ("status", "value", "threshold")}
                for metric, status in statuses.items()
            },
            "alerts": list(self._active_alerts.values()),
            "history": list(self._alert_history)[-ALERT_HISTORY_VIEW_SIZE:],
            "thresholds": self.thresholds.to_dict(),
            "timestamp": self.clock().isoformat(),
        }

    def configure_alerts(self, updates: Any) -> AlertThresholds:
        """Merge a partial threshold update into the current thresholds.

        Raises:
            ValidationError: If the body is not an object, has unknown keys, or a value is not a non-negative number
        """
        if not isinstance(updates, dict):
            raise ValidationError("Alert configuration must be a JSON object")

        try:
            parsed = AlertThresholdsUpdate.model_validate(updates)
        except PydanticValidationError as ex:
            raise ValidationError(
                "Invalid alert configuration",
                details=[
                    {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                    for error in ex.errors()
                ],
            ) from ex

        self.thresholds = self.thresholds.model_copy(update=parsed.model_dump(exclude_none=True))
        self.logger.info(f"Webhook alert thresholds updated: {self.thresholds.to_dict()}")
        self._evaluate_alerts()
        return self.thresholds

    # Administration

    def clear_queue(self) -> int:
        cleared = len(self._pending)
        self._pending.clear()
        self.logger.warning(f"Webhook queue cleared ({cleared} pending event(s) discarded)")
        return cleared

    def reset_statistics(self) -> None:
        self._reset_counters()
        self._records.clear()
        self._active_alerts.clear()
        self.logger.warning("Webhook statistics reset")
