import types
from collections.abc import Mapping

# Azure DevOps work item fields
FIELD_ID: str = "System.Id"
FIELD_TITLE: str = "System.Title"
FIELD_WORK_ITEM_TYPE: str = "System.WorkItemType"
FIELD_STATE: str = "System.State"
FIELD_ASSIGNED_TO: str = "System.AssignedTo"
FIELD_CHANGED_BY: str = "System.ChangedBy"
FIELD_CHANGED_DATE: str = "System.ChangedDate"
FIELD_CREATED_DATE: str = "System.CreatedDate"
FIELD_CLOSED_DATE: str = "Microsoft.VSTS.Common.ClosedDate"
FIELD_TEAM_PROJECT: str = "System.TeamProject"
FIELD_AREA_PATH: str = "System.AreaPath"
FIELD_ITERATION_PATH: str = "System.IterationPath"
FIELD_STORY_POINTS: str = "Microsoft.VSTS.Scheduling.StoryPoints"
FIELD_PRIORITY: str = "Microsoft.VSTS.Common.Priority"
FIELD_REMAINING_WORK: str = "Microsoft.VSTS.Scheduling.RemainingWork"

WORK_ITEM_FIELDS: tuple[str, ...] = (
    FIELD_ID,
    FIELD_TITLE,
    FIELD_WORK_ITEM_TYPE,
    FIELD_STATE,
    FIELD_ASSIGNED_TO,
    FIELD_CHANGED_DATE,
    FIELD_CREATED_DATE,
    FIELD_CLOSED_DATE,
    FIELD_TEAM_PROJECT,
    FIELD_AREA_PATH,
    FIELD_ITERATION_PATH,
    FIELD_STORY_POINTS,
    FIELD_PRIORITY,
    FIELD_REMAINING_WORK,
)

BUG_TYPE_STR: str = "Bug"
COMPLETED_STATES: frozenset[str] = frozenset({"Done", "Closed", "Resolved", "Completed"})
IN_PROGRESS_STATES: frozenset[str] = frozenset({"Active", "In Progress", "Doing", "Committed"})
NON_OPEN_BUG_STATES: frozenset[str] = frozenset({"Closed", "Done", "Resolved", "Removed"})

# Cache tiers (key prefixes under "cache:")
CACHE_TIER_WORK_ITEMS: str = "workItems"
CACHE_TIER_ITERATIONS: str = "iterations"
CACHE_TIER_AREAS: str = "areas"
CACHE_TIER_TEAMS: str = "teams"
CACHE_KEY_PREFIX: str = "cache"

DEFAULT_CACHE_TTLS: Mapping[str, int] = types.MappingProxyType({
    CACHE_TIER_WORK_ITEMS: 300,
    CACHE_TIER_ITERATIONS: 3600,
    CACHE_TIER_AREAS: 3600,
    CACHE_TIER_TEAMS: 1800,
})

# Rate limit tiers
RATE_LIMIT_TIER_AUTH: str = "auth"
RATE_LIMIT_TIER_WEBHOOKS: str = "webhooks"
RATE_LIMIT_TIER_API: str = "api"
RATE_LIMIT_TIER_GENERAL: str = "general"
RATE_LIMIT_KEY_PREFIX: str = "rate_limit"

# (limit, window seconds)
DEFAULT_RATE_LIMITS: Mapping[str, tuple[int, int]] = types.MappingProxyType({
    RATE_LIMIT_TIER_AUTH: (5, 60),
    RATE_LIMIT_TIER_WEBHOOKS: (100, 60),
    RATE_LIMIT_TIER_API: (1000, 3600),
    RATE_LIMIT_TIER_GENERAL: (500, 900),
})

RATE_LIMIT_BYPASS_PATHS: frozenset[str] = frozenset({
    "/health",
    "/healthcheck",
    "/api/health",
    "/favicon.ico",
})

# Backing store
MEMORY_STORE_SWEEP_INTERVAL_SECONDS: float = 60.0

# Webhook processing
IDEMPOTENCY_KEY_PREFIX: str = "webhook:dedup"
DEFAULT_IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60
DEFAULT_HANDLER_MAX_RETRIES: int = 2
DEFAULT_HANDLER_RETRY_DELAY_SECONDS: float = 0.1
DEFAULT_METRICS_RETENTION: int = 10000
ALERT_HISTORY_SIZE: int = 100
ALERT_HISTORY_VIEW_SIZE: int = 10

DEFAULT_ALERT_THRESHOLDS: Mapping[str, float] = types.MappingProxyType({
    "success_rate_threshold": 95.0,
    "processing_time_threshold": 1000.0,
    "error_rate_threshold": 5.0,
    "queue_size_threshold": 50.0,
})

SIGNATURE_HEADERS: tuple[str, ...] = ("X-Hub-Signature-256", "X-Hub-Signature")

# Metrics aggregation
DEFAULT_SPRINT_LENGTH_DAYS: int = 14
DEFAULT_VELOCITY_RANGE: int = 6
DEFAULT_REQUEST_TIMEOUT_SECONDS: float = 30.0

DISTRIBUTION_GROUPS: Mapping[str, str] = types.MappingProxyType({
    "Task": "tasks",
    "User Story": "tasks",
    "Feature": "tasks",
    "Epic": "tasks",
    "Product Backlog Item": "tasks",
    "Development Task": "tasks",
    "Bug": "bugs",
    "Issue": "bugs",
    "Defect": "bugs",
    "Design": "design",
    "Design Task": "design",
    "Documentation": "design",
    "Document": "design",
    "UI": "design",
    "UX": "design",
})

DISTRIBUTION_DESCRIPTIONS: Mapping[str, str] = types.MappingProxyType({
    "tasks": "Development and implementation tasks",
    "bugs": "Defect resolution and bug fixes",
    "design": "Design and documentation work",
    "others": "Other work items and activities",
})
