"""Pydantic models for webhook ingestion and dashboard metrics.

Provides type-safe data structures for:
- Azure DevOps webhook events and their processing results
- Alert thresholds (including partial updates from the admin API)
- Metrics request filters
- Normalized work items and iterations from the upstream source
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dashboard_server.utils.constants import (
    DEFAULT_ALERT_THRESHOLDS,
    FIELD_AREA_PATH,
    FIELD_ASSIGNED_TO,
    FIELD_CHANGED_BY,
    FIELD_CHANGED_DATE,
    FIELD_CLOSED_DATE,
    FIELD_CREATED_DATE,
    FIELD_ITERATION_PATH,
    FIELD_PRIORITY,
    FIELD_REMAINING_WORK,
    FIELD_STATE,
    FIELD_STORY_POINTS,
    FIELD_TEAM_PROJECT,
    FIELD_TITLE,
    FIELD_WORK_ITEM_TYPE,
)


class EventType(str, Enum):  # noqa: UP042
    """Supported Azure DevOps work item event types."""

    CREATED = "workitem.created"
    UPDATED = "workitem.updated"
    DELETED = "workitem.deleted"
    RESTORED = "workitem.restored"
    COMMENTED = "workitem.commented"

    @property
    def action(self) -> str:
        """Short action name used in broadcasts (e.g. 'created')."""
        return self.value.split(".", 1)[1]


SUPPORTED_EVENT_TYPES: frozenset[str] = frozenset(event.value for event in EventType)


def _display_name(value: Any) -> str | None:
    # Identity fields arrive either as a plain string or as {"displayName": ...}
    if isinstance(value, dict):
        return value.get("displayName") or value.get("uniqueName")
    return value


def _to_float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _parse_azure_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class WebhookEvent(BaseModel):
    """A validated Azure DevOps webhook delivery.

    Created on receipt, never persisted. `resource_fields` is the sparse field
    map of the work item (the revision fields for update events).
    """

    event_type: EventType
    event_id: str
    subscription_id: str | None = None
    notification_id: str | None = None
    work_item_id: int
    project: str | None = None
    resource_fields: dict[str, Any] = Field(default_factory=dict)
    changed_fields: list[str] = Field(default_factory=list)
    comment: str | None = None
    received_at: datetime
    signature_present: bool = False

    @property
    def changed_date(self) -> str | None:
        value = self.resource_fields.get(FIELD_CHANGED_DATE)
        return str(value) if value is not None else None

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        received_at: datetime,
        signature_present: bool,
        default_project: str | None = None,
    ) -> WebhookEvent:
        """Build an event from a payload that already passed field validation."""
        resource: dict[str, Any] = payload["resource"]
        revision = resource.get("revision")
        changed_fields: list[str] = []
        if isinstance(revision, dict) and isinstance(revision.get("fields"), dict):
            fields: dict[str, Any] = revision["fields"]
            # Update events list the changed fields as {field: {oldValue, newValue}}
            changed_fields = sorted(resource.get("fields") or {})
        else:
            fields = resource.get("fields") or {}

        # Update events carry the update id in `id` and the work item in `workItemId`
        work_item_id = int(resource.get("workItemId") or resource["id"])
        project = fields.get(FIELD_TEAM_PROJECT) or default_project

        event_id = payload.get("id")
        if not event_id:
            digest_source = json.dumps(
                {
                    "eventType": payload["eventType"],
                    "workItemId": work_item_id,
                    "timestamp": payload.get("createdDate") or received_at.isoformat(),
                },
                sort_keys=True,
            )
            event_id = hashlib.sha256(digest_source.encode("utf-8")).hexdigest()[:16]

        message = payload.get("message")
        if isinstance(message, dict):
            message = message.get("text")

        notification_id = payload.get("notificationId")
        subscription_id = payload.get("subscriptionId")

        return cls(
            event_type=EventType(payload["eventType"]),
            event_id=str(event_id),
            subscription_id=str(subscription_id) if subscription_id is not None else None,
            notification_id=str(notification_id) if notification_id is not None else None,
            work_item_id=work_item_id,
            project=project,
            resource_fields=fields,
            changed_fields=changed_fields,
            comment=message if isinstance(message, str) else None,
            received_at=received_at,
            signature_present=signature_present,
        )

    def broadcast_summary(self) -> dict[str, Any]:
        fields = self.resource_fields
        return {
            "id": self.work_item_id,
            "title": fields.get(FIELD_TITLE),
            "type": fields.get(FIELD_WORK_ITEM_TYPE),
            "state": fields.get(FIELD_STATE),
            "assignedTo": _display_name(fields.get(FIELD_ASSIGNED_TO)),
            "changedBy": _display_name(fields.get(FIELD_CHANGED_BY)),
            "changedDate": fields.get(FIELD_CHANGED_DATE),
        }


class ProcessingResult(BaseModel):
    """Outcome of a single webhook delivery, returned to the caller."""

    success: bool
    event_type: str
    event_id: str | None = None
    error: str | None = None
    code: str | None = None
    processing_time_ms: float = 0.0
    duplicate: bool = False

    def to_response(self, timestamp: str) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": self.success,
            "eventType": self.event_type,
            "eventId": self.event_id,
            "processingTime": round(self.processing_time_ms, 3),
            "timestamp": timestamp,
        }
        if self.duplicate:
            response["duplicate"] = True
        if self.error:
            response["error"] = self.error
        if self.code:
            response["code"] = self.code
        return response


class AlertThresholds(BaseModel):
    """Thresholds compared against processor statistics to derive alert status."""

    success_rate_threshold: float = Field(default=DEFAULT_ALERT_THRESHOLDS["success_rate_threshold"], ge=0)
    processing_time_threshold: float = Field(default=DEFAULT_ALERT_THRESHOLDS["processing_time_threshold"], ge=0)
    error_rate_threshold: float = Field(default=DEFAULT_ALERT_THRESHOLDS["error_rate_threshold"], ge=0)
    queue_size_threshold: float = Field(default=DEFAULT_ALERT_THRESHOLDS["queue_size_threshold"], ge=0)

    def to_dict(self) -> dict[str, float]:
        return {
            "successRateThreshold": self.success_rate_threshold,
            "processingTimeThreshold": self.processing_time_threshold,
            "errorRateThreshold": self.error_rate_threshold,
            "queueSizeThreshold": self.queue_size_threshold,
        }


class AlertThresholdsUpdate(BaseModel):
    """Partial threshold update; only non-negative numbers are accepted.

    Accepts the camelCase names used by the HTTP API.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    success_rate_threshold: float | None = Field(default=None, ge=0, alias="successRateThreshold")
    processing_time_threshold: float | None = Field(default=None, ge=0, alias="processingTimeThreshold")
    error_rate_threshold: float | None = Field(default=None, ge=0, alias="errorRateThreshold")
    queue_size_threshold: float | None = Field(default=None, ge=0, alias="queueSizeThreshold")

    @field_validator(
        "success_rate_threshold",
        "processing_time_threshold",
        "error_rate_threshold",
        "queue_size_threshold",
        mode="before",
    )
    @classmethod
    def reject_non_numeric(cls, v: Any) -> Any:
        """Reject strings and booleans that pydantic would otherwise coerce."""
        if v is None:
            return v
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("Threshold must be a number")
        return v


class MetricsFilters(BaseModel):
    """Query filters for the dashboard metrics endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    period: Literal["sprint", "month", "quarter", "year"] = "sprint"
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    product_id: str | None = Field(default=None, alias="productId")
    sprint_id: str | None = Field(default=None, alias="sprintId")

    @field_validator("start_date", "end_date")
    @classmethod
    def ensure_timezone(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @model_validator(mode="after")
    def validate_range(self) -> MetricsFilters:
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must be before endDate")
        return self


class WorkItem(BaseModel):
    """Normalized work item snapshot from the upstream source."""

    id: int
    title: str = ""
    type: str = ""
    state: str = ""
    assignee: str | None = None
    story_points: float = 0.0
    remaining_work: float = 0.0
    priority: int | None = None
    iteration_path: str | None = None
    area_path: str | None = None
    project: str | None = None
    created_date: datetime | None = None
    changed_date: datetime | None = None
    closed_date: datetime | None = None

    @classmethod
    def from_azure(cls, raw: dict[str, Any]) -> WorkItem:
        fields: dict[str, Any] = raw.get("fields") or {}
        priority = fields.get(FIELD_PRIORITY)
        return cls(
            id=int(raw["id"]),
            title=fields.get(FIELD_TITLE) or "",
            type=fields.get(FIELD_WORK_ITEM_TYPE) or "",
            state=fields.get(FIELD_STATE) or "",
            assignee=_display_name(fields.get(FIELD_ASSIGNED_TO)),
            story_points=_to_float(fields.get(FIELD_STORY_POINTS)),
            remaining_work=_to_float(fields.get(FIELD_REMAINING_WORK)),
            priority=int(priority) if isinstance(priority, (int, float)) else None,
            iteration_path=fields.get(FIELD_ITERATION_PATH),
            area_path=fields.get(FIELD_AREA_PATH),
            project=fields.get(FIELD_TEAM_PROJECT),
            created_date=_parse_azure_datetime(fields.get(FIELD_CREATED_DATE)),
            changed_date=_parse_azure_datetime(fields.get(FIELD_CHANGED_DATE)),
            closed_date=_parse_azure_datetime(fields.get(FIELD_CLOSED_DATE)),
        )


class Iteration(BaseModel):
    """A team iteration (sprint)."""

    id: str
    name: str
    path: str
    start_date: datetime | None = None
    finish_date: datetime | None = None
    time_frame: str | None = None

    @classmethod
    def from_azure(cls, raw: dict[str, Any]) -> Iteration:
        attributes: dict[str, Any] = raw.get("attributes") or {}
        return cls(
            id=str(raw["id"]),
            name=raw.get("name") or "",
            path=raw.get("path") or raw.get("name") or "",
            start_date=_parse_azure_datetime(attributes.get("startDate")),
            finish_date=_parse_azure_datetime(attributes.get("finishDate")),
            time_frame=attributes.get("timeFrame"),
        )
