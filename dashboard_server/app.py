import asyncio
import base64
import json
from collections.abc import AsyncGenerator, Awaitable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, TypeVar

import httpx
from fastapi import (
    Depends,
    FastAPI,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
)
from fastapi import (
    status as http_status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from dashboard_server.libs.backing_store import get_backing_store
from dashboard_server.libs.cache import CacheLayer
from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import (
    BackingStoreError,
    DashboardError,
    InternalError,
    NotFoundError,
    ParseError,
    RateLimitError,
    UpstreamTimeoutError,
    ValidationError,
)
from dashboard_server.libs.metrics_aggregator import MetricsAggregator
from dashboard_server.libs.models import MetricsFilters
from dashboard_server.libs.rate_limiter import (
    TieredRateLimiter,
    build_identifier,
    is_bypassed,
    resolve_tier,
)
from dashboard_server.libs.webhook_processor import DEFAULT_TIMEFRAME, WebhookEventProcessor
from dashboard_server.libs.work_item_source import AzureDevOpsClient, ConfiguredAggregatedMetrics
from dashboard_server.utils.app_utils import (
    get_client_ip,
    get_signature_header,
    parse_datetime_string,
    signature_validation_status,
)
from dashboard_server.utils.constants import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_VELOCITY_RANGE,
    RATE_LIMIT_TIER_WEBHOOKS,
    SIGNATURE_HEADERS,
)
from dashboard_server.utils.helpers import get_logger_with_params
from dashboard_server.web.realtime_broadcaster import RealtimeBroadcaster

# Constants
WEBHOOKS_URL_PREFIX: str = "/webhooks/azure"
METRICS_URL_PREFIX: str = "/api/metrics"

LOGGER = get_logger_with_params(name="dashboard_server")

T = TypeVar("T")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def _envelope(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "timestamp": _timestamp()}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    config = Config(logger=LOGGER)
    request_timeout = float(config.get_value("request-timeout", return_on_none=DEFAULT_REQUEST_TIMEOUT_SECONDS))
    http_client = httpx.AsyncClient(timeout=request_timeout)
    store = get_backing_store(config=config, logger=LOGGER)
    broadcaster = RealtimeBroadcaster(logger=LOGGER)

    try:
        LOGGER.info("Application starting up...")

        try:
            await store.connect()
        except BackingStoreError:
            # Components built on the store apply their own fail-open/closed policy
            LOGGER.exception("Backing store unavailable at startup, continuing in degraded mode")

        cache = CacheLayer.from_config(config=config, store=store, logger=LOGGER)

        app.state.config = config
        app.state.environment = config.get_value("environment", return_on_none="development")
        app.state.request_timeout = request_timeout
        app.state.store = store
        app.state.cache = cache
        app.state.broadcaster = broadcaster
        app.state.rate_limiter = TieredRateLimiter.from_config(config=config, store=store, logger=LOGGER)
        app.state.processor = WebhookEventProcessor.from_config(
            config=config, store=store, cache=cache, broadcaster=broadcaster, logger=LOGGER
        )
        app.state.aggregator = MetricsAggregator(
            source=AzureDevOpsClient.from_config(config=config, http_client=http_client, logger=LOGGER),
            aggregated_source=ConfiguredAggregatedMetrics.from_config(config),
            cache=cache,
            logger=LOGGER,
            products=config.get_products(),
            default_project=config.get_value("azure-devops.project"),
        )

        LOGGER.info(
            f"Webhook signature validation {signature_validation_status(config.get_webhook_secret())}, "
            f"backing store distributed={store.distributed}"
        )

        yield

    except Exception:
        LOGGER.exception("Application failed during lifespan management")
        raise

    finally:
        await broadcaster.shutdown()
        await http_client.aclose()
        LOGGER.debug("HTTP client closed")
        await store.disconnect()
        LOGGER.info("Application shutdown complete.")


FASTAPI_APP: FastAPI = FastAPI(title="azure-devops-dashboard-server", lifespan=lifespan)


# Dependencies


def get_processor(request: Request) -> WebhookEventProcessor:
    return request.app.state.processor


def get_aggregator(request: Request) -> MetricsAggregator:
    return request.app.state.aggregator


async def enforce_rate_limit(request: Request) -> None:
    """Count the request against its tier; raise RateLimitError when the tier is exhausted."""
    path = request.url.path
    if is_bypassed(path):
        return

    limiter: TieredRateLimiter = request.app.state.rate_limiter
    tier = resolve_tier(path)
    identifier = build_identifier(tier, get_client_ip(request), request.headers.get("x-user-email"))
    result = await limiter.check(tier, identifier)

    if not result.allowed:
        limiter.log_limit_exceeded(tier=tier, identifier=identifier, endpoint=path, result=result)
        raise RateLimitError(
            "Too many requests, please try again later",
            retry_after=result.retry_after_seconds,
            details={"tier": tier, "limit": result.limit, "retryAfter": result.retry_after_seconds},
        )


processor_dependency = Depends(get_processor)
aggregator_dependency = Depends(get_aggregator)
rate_limit_dependency = Depends(enforce_rate_limit)


async def run_with_timeout(request: Request, operation: Awaitable[T], name: str) -> T:
    """Await `operation`, cancelling it when the configured request timeout elapses."""
    timeout: float = request.app.state.request_timeout
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except TimeoutError as ex:
        LOGGER.error(f"{name} exceeded request timeout of {timeout}s, upstream call cancelled")
        raise UpstreamTimeoutError(f"{name} timed out after {timeout} seconds") from ex


def build_metrics_filters(
    period: str = Query(default="sprint", description="One of sprint, month, quarter, year"),
    start_date: str | None = Query(default=None, alias="startDate", description="ISO 8601 start date"),
    end_date: str | None = Query(default=None, alias="endDate", description="ISO 8601 end date"),
    product_id: str | None = Query(default=None, alias="productId"),
    sprint_id: str | None = Query(default=None, alias="sprintId"),
) -> MetricsFilters:
    try:
        return MetricsFilters(
            period=period,
            startDate=parse_datetime_string(start_date, "startDate"),
            endDate=parse_datetime_string(end_date, "endDate"),
            productId=product_id,
            sprintId=sprint_id,
        )
    except PydanticValidationError as ex:
        raise ValidationError(
            "Validation failed",
            details=[
                {"field": ".".join(str(part) for part in error["loc"]) or "query", "message": error["msg"]}
                for error in ex.errors()
            ],
        ) from ex


filters_dependency = Depends(build_metrics_filters)


async def read_json_body(request: Request) -> Any:
    try:
        return json.loads(await request.body() or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as ex:
        raise ParseError("Invalid JSON payload", details=str(ex)) from ex


# Exception handlers


@FASTAPI_APP.exception_handler(DashboardError)
async def dashboard_error_handler(request: Request, exc: DashboardError) -> JSONResponse:
    production = getattr(request.app.state, "environment", "development") == "production"
    content: dict[str, Any] = {
        "success": False,
        "error": "Internal server error" if production and isinstance(exc, InternalError) else exc.message,
        "code": exc.code,
        "timestamp": _timestamp(),
    }
    if exc.details is not None and not (production and isinstance(exc, InternalError)):
        content["details"] = exc.details

    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    if exc.status_code >= 500:
        LOGGER.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@FASTAPI_APP.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return await dashboard_error_handler(request, ValidationError("Validation failed", details=details))


@FASTAPI_APP.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception(f"Unhandled error for {request.method} {request.url.path}")
    return await dashboard_error_handler(request, InternalError(str(exc) or exc.__class__.__name__))


# Service endpoints


@FASTAPI_APP.get("/healthcheck", operation_id="healthcheck")
def healthcheck() -> dict[str, Any]:
    return {"status": http_status.HTTP_200_OK, "message": "Alive"}


@FASTAPI_APP.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    """Serve a 1x1 transparent PNG so browsers stop logging 404s."""
    transparent_png = base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
    )

    return Response(content=transparent_png, media_type="image/x-icon")


# Webhook endpoints


@FASTAPI_APP.post(
    f"{WEBHOOKS_URL_PREFIX}/workitems",
    operation_id="process_azure_webhook",
    dependencies=[rate_limit_dependency],
)
async def process_azure_webhook(
    request: Request, processor: WebhookEventProcessor = processor_dependency
) -> JSONResponse:
    """Process an Azure DevOps work item webhook.

    The signature is verified over the raw request body, before JSON parsing.

    Returns:
        200 with ``{success, eventType, eventId, processingTime, timestamp}`` when processed
        (including duplicate deliveries), 500 with the same shape when the handler failed.

    Raises:
        ParseError (400), ValidationError (400), AuthenticationError (401), RateLimitError (429)
    """
    payload_body = await request.body()
    result = await processor.process_webhook(
        raw_body=payload_body, signature_header=get_signature_header(request.headers)
    )

    return JSONResponse(
        status_code=http_status.HTTP_200_OK if result.success else http_status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=result.to_response(timestamp=_timestamp()),
    )


@FASTAPI_APP.get(f"{WEBHOOKS_URL_PREFIX}/status", operation_id="get_webhook_status", dependencies=[rate_limit_dependency])
async def get_webhook_status(processor: WebhookEventProcessor = processor_dependency) -> dict[str, Any]:
    return _envelope(processor.get_statistics())


@FASTAPI_APP.get(
    f"{WEBHOOKS_URL_PREFIX}/metrics", operation_id="get_webhook_metrics", dependencies=[rate_limit_dependency]
)
async def get_webhook_metrics(
    timeframe: str = Query(default=DEFAULT_TIMEFRAME, description="Window such as 1h, 24h, 7d, 1m"),
    processor: WebhookEventProcessor = processor_dependency,
) -> dict[str, Any]:
    metrics = processor.get_detailed_metrics(timeframe)
    metrics["health"] = processor.get_alert_status()["status"]
    return _envelope(metrics)


@FASTAPI_APP.get(f"{WEBHOOKS_URL_PREFIX}/alerts", operation_id="get_webhook_alerts", dependencies=[rate_limit_dependency])
async def get_webhook_alerts(processor: WebhookEventProcessor = processor_dependency) -> dict[str, Any]:
    return _envelope(processor.get_alert_status())


@FASTAPI_APP.post(
    f"{WEBHOOKS_URL_PREFIX}/alerts/configure",
    operation_id="configure_webhook_alerts",
    dependencies=[rate_limit_dependency],
)
async def configure_webhook_alerts(
    request: Request, processor: WebhookEventProcessor = processor_dependency
) -> dict[str, Any]:
    thresholds = processor.configure_alerts(await read_json_body(request))
    return {
        "success": True,
        "message": "Alert thresholds updated",
        "data": thresholds.to_dict(),
        "timestamp": _timestamp(),
    }


@FASTAPI_APP.delete(f"{WEBHOOKS_URL_PREFIX}/queue", operation_id="clear_webhook_queue", dependencies=[rate_limit_dependency])
async def clear_webhook_queue(processor: WebhookEventProcessor = processor_dependency) -> dict[str, Any]:
    cleared = processor.clear_queue()
    return {
        "success": True,
        "message": "Webhook queue cleared",
        "data": {"cleared": cleared},
        "timestamp": _timestamp(),
    }


@FASTAPI_APP.delete(
    f"{WEBHOOKS_URL_PREFIX}/stats", operation_id="reset_webhook_statistics", dependencies=[rate_limit_dependency]
)
async def reset_webhook_statistics(processor: WebhookEventProcessor = processor_dependency) -> dict[str, Any]:
    processor.reset_statistics()
    return {"success": True, "message": "Webhook statistics reset", "timestamp": _timestamp()}


@FASTAPI_APP.get(f"{WEBHOOKS_URL_PREFIX}/config", operation_id="get_webhook_config", dependencies=[rate_limit_dependency])
async def get_webhook_config(
    request: Request, processor: WebhookEventProcessor = processor_dependency
) -> dict[str, Any]:
    limiter: TieredRateLimiter = request.app.state.rate_limiter
    webhook_tier = limiter.tiers[RATE_LIMIT_TIER_WEBHOOKS]
    statistics = processor.get_statistics()

    return _envelope({
        "webhookUrl": str(request.url_for("process_azure_webhook")),
        "supportedEvents": statistics["configuration"]["supportedEvents"],
        "signatureValidation": statistics["configuration"]["signatureValidation"],
        "signatureHeaders": list(SIGNATURE_HEADERS),
        "rateLimit": {
            "enabled": limiter.enabled,
            "limit": webhook_tier.limit,
            "windowSeconds": webhook_tier.window_seconds,
        },
        "retry": {
            "maxRetries": statistics["configuration"]["maxRetries"],
            "retryDelaySeconds": statistics["configuration"]["retryDelaySeconds"],
        },
    })


@FASTAPI_APP.post(f"{WEBHOOKS_URL_PREFIX}/test", operation_id="test_webhook", dependencies=[rate_limit_dependency])
async def test_webhook(request: Request, processor: WebhookEventProcessor = processor_dependency) -> JSONResponse:
    """Run a synthetic event through the processor; no signature is required."""
    body = await read_json_body(request)
    if not isinstance(body, dict):
        raise ValidationError("Test event must be a JSON object")

    result = await processor.process_test_event(body)
    return JSONResponse(
        status_code=http_status.HTTP_200_OK if result.success else http_status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={**result.to_response(timestamp=_timestamp()), "test": True},
    )


# Dashboard metrics endpoints


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/overview", operation_id="get_metrics_overview", dependencies=[rate_limit_dependency])
async def get_metrics_overview(
    request: Request,
    filters: MetricsFilters = filters_dependency,
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    """KPIs (velocity, bug count, P/L, satisfaction), charts and metadata for the filters."""
    return _envelope(await run_with_timeout(request, aggregator.compute_overview(filters), "Metrics overview"))


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/kpis", operation_id="get_metrics_kpis", dependencies=[rate_limit_dependency])
async def get_metrics_kpis(
    request: Request,
    filters: MetricsFilters = filters_dependency,
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(await run_with_timeout(request, aggregator.compute_kpis(filters), "Metrics KPIs"))


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/burndown", operation_id="get_metrics_burndown", dependencies=[rate_limit_dependency])
async def get_metrics_burndown(
    request: Request,
    filters: MetricsFilters = filters_dependency,
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(await run_with_timeout(request, aggregator.compute_burndown(filters), "Burndown"))


@FASTAPI_APP.get(
    f"{METRICS_URL_PREFIX}/velocity-trend", operation_id="get_velocity_trend", dependencies=[rate_limit_dependency]
)
async def get_velocity_trend(
    request: Request,
    sprint_range: int = Query(default=DEFAULT_VELOCITY_RANGE, ge=3, le=12, alias="range"),
    product_id: str | None = Query(default=None, alias="productId"),
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(
        await run_with_timeout(
            request, aggregator.compute_velocity_trend(sprint_range=sprint_range, product_id=product_id), "Velocity trend"
        )
    )


@FASTAPI_APP.get(
    f"{METRICS_URL_PREFIX}/task-distribution", operation_id="get_task_distribution", dependencies=[rate_limit_dependency]
)
async def get_task_distribution(
    request: Request,
    filters: MetricsFilters = filters_dependency,
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(
        await run_with_timeout(request, aggregator.compute_task_distribution(filters), "Task distribution")
    )


@FASTAPI_APP.get(
    f"{METRICS_URL_PREFIX}/work-items/{{work_item_id}}", operation_id="get_work_item", dependencies=[rate_limit_dependency]
)
async def get_work_item(
    request: Request,
    work_item_id: int = Path(ge=1),
    product_id: str | None = Query(default=None, alias="productId"),
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    work_item = await run_with_timeout(
        request, aggregator.get_work_item(work_item_id=work_item_id, product_id=product_id), "Work item"
    )
    if work_item is None:
        raise NotFoundError(f"Work item {work_item_id} not found", details={"workItemId": work_item_id})

    return _envelope(work_item)


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/teams", operation_id="get_teams", dependencies=[rate_limit_dependency])
async def get_teams(
    request: Request,
    product_id: str | None = Query(default=None, alias="productId"),
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(await run_with_timeout(request, aggregator.list_teams(product_id=product_id), "Teams"))


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/areas", operation_id="get_areas", dependencies=[rate_limit_dependency])
async def get_areas(
    request: Request,
    product_id: str | None = Query(default=None, alias="productId"),
    aggregator: MetricsAggregator = aggregator_dependency,
) -> dict[str, Any]:
    return _envelope(await run_with_timeout(request, aggregator.list_areas(product_id=product_id), "Areas"))


@FASTAPI_APP.get(f"{METRICS_URL_PREFIX}/health", operation_id="get_metrics_health", dependencies=[rate_limit_dependency])
async def get_metrics_health(
    request: Request, processor: WebhookEventProcessor = processor_dependency
) -> dict[str, Any]:
    cache: CacheLayer = request.app.state.cache
    limiter: TieredRateLimiter = request.app.state.rate_limiter
    broadcaster: RealtimeBroadcaster = request.app.state.broadcaster

    cache_health = await cache.health()
    webhook_status = processor.get_alert_status()["status"]
    return _envelope({
        "status": "healthy" if cache_health["status"] == "healthy" and webhook_status == "healthy" else "degraded",
        "cache": cache_health,
        "rateLimiter": limiter.get_stats(),
        "webhooks": webhook_status,
        "realtime": broadcaster.get_stats(),
    })


@FASTAPI_APP.websocket("/ws/metrics")
async def websocket_metrics_stream(websocket: WebSocket, project: str | None = None) -> None:
    """Stream work item updates processed from webhooks, optionally filtered by project."""
    broadcaster: RealtimeBroadcaster = websocket.app.state.broadcaster
    await broadcaster.handle_websocket(websocket=websocket, project=project)
