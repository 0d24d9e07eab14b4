"""
Dashboard metrics derived from Azure DevOps work items.

The aggregator is stateless: every call resolves the date range, reads work
items and iterations through the cache layer (falling back to the upstream
source on a miss) and derives KPIs and chart series. Nothing is retained
between requests.

KPIs:
- velocity: story points completed within the range
- bugCount: Bugs whose state is not Closed/Done/Resolved/Removed
- pl / satisfaction: supplied by the aggregated metrics collaborator

Charts:
- burndown: ideal vs actual remaining story points per sprint day
- velocity: completed story points for each of the last N sprints
- distribution: work items grouped into tasks/bugs/design/others
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from dashboard_server.libs.cache import CacheLayer
from dashboard_server.libs.exceptions import ValidationError
from dashboard_server.libs.models import Iteration, MetricsFilters, WorkItem
from dashboard_server.libs.work_item_source import AzureDevOpsClient, ConfiguredAggregatedMetrics
from dashboard_server.utils.constants import (
    BUG_TYPE_STR,
    CACHE_TIER_AREAS,
    CACHE_TIER_ITERATIONS,
    CACHE_TIER_TEAMS,
    CACHE_TIER_WORK_ITEMS,
    COMPLETED_STATES,
    DEFAULT_SPRINT_LENGTH_DAYS,
    DEFAULT_VELOCITY_RANGE,
    DISTRIBUTION_DESCRIPTIONS,
    DISTRIBUTION_GROUPS,
    IN_PROGRESS_STATES,
    NON_OPEN_BUG_STATES,
)

DISTRIBUTION_ORDER: tuple[str, ...] = ("tasks", "bugs", "design", "others")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def empty_kpis() -> dict[str, Any]:
    return {
        "velocity": 0.0,
        "completedStoryPoints": 0.0,
        "totalStoryPoints": 0.0,
        "completionRate": 0.0,
        "workItemCount": 0,
        "completedCount": 0,
        "inProgressCount": 0,
        "bugCount": 0,
        "pl": 0.0,
        "satisfaction": 0.0,
    }


def is_completed(item: WorkItem) -> bool:
    return item.state in COMPLETED_STATES


def is_open_bug(item: WorkItem) -> bool:
    return item.type == BUG_TYPE_STR and item.state not in NON_OPEN_BUG_STATES


def completion_time(item: WorkItem) -> datetime | None:
    """When the item was completed; the change date stands in for a missing closed date."""
    if not is_completed(item):
        return None
    return item.closed_date or item.changed_date


class MetricsAggregator:
    """
    Computes dashboard KPIs and charts.

    Architecture guarantees:
    - source, aggregated_source, cache and logger are ALWAYS provided - no defensive checks
    - clock returns timezone-aware UTC datetimes

    Example:
        aggregator = MetricsAggregator(source, aggregated_source, cache, logger, products=config.get_products())
        overview = await aggregator.compute_overview(MetricsFilters(period="sprint"))
    """

    def __init__(
        self,
        source: AzureDevOpsClient,
        aggregated_source: ConfiguredAggregatedMetrics,
        cache: CacheLayer,
        logger: logging.Logger,
        products: dict[str, dict[str, Any]] | None = None,
        default_project: str | None = None,
        sprint_length_days: int = DEFAULT_SPRINT_LENGTH_DAYS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.source = source
        self.aggregated_source = aggregated_source
        self.cache = cache
        self.logger = logger
        self.products = products or {}
        self.default_project = default_project
        self.sprint_length_days = sprint_length_days
        self.clock = clock

    # Scope and date range

    def resolve_scope(self, product_id: str | None) -> tuple[str, str | None] | None:
        """Map a productId to (project, area path).

        Returns:
            None when the product is unknown or no project is configured
        """
        if product_id is None:
            return (self.default_project, None) if self.default_project else None

        product = self.products.get(product_id)
        if product is None:
            self.logger.debug(f"Unknown productId {product_id}, returning empty metrics")
            return None

        project = product.get("project") or self.default_project
        if not project:
            return None

        return project, product.get("area-path")

    def resolve_date_range(self, filters: MetricsFilters, iteration: Iteration | None = None) -> tuple[datetime, datetime]:
        """Effective [start, end] for the filters; explicit dates override the period."""
        now = self.clock()

        if filters.period == "sprint" and iteration and iteration.start_date and iteration.finish_date:
            start, end = iteration.start_date, iteration.finish_date
        elif filters.period == "sprint":
            start, end = now - timedelta(days=self.sprint_length_days), now
        elif filters.period == "month":
            start, end = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), now
        elif filters.period == "quarter":
            quarter_month = 3 * ((now.month - 1) // 3) + 1
            start, end = now.replace(month=quarter_month, day=1, hour=0, minute=0, second=0, microsecond=0), now
        else:
            start, end = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0), now

        start, end = filters.start_date or start, filters.end_date or end
        if start > end:
            raise ValidationError(
                "startDate must be before endDate",
                details=[{"field": "startDate", "message": f"{start.isoformat()} is after {end.isoformat()}"}],
            )

        return start, end

    # Cached reads

    async def _get_iterations(self, project: str) -> list[Iteration]:
        key = self.cache.build_key(CACHE_TIER_ITERATIONS, project, self.source.team_for(project), "all")

        async def fetch() -> list[dict[str, Any]]:
            iterations = await self.source.get_iterations(project)
            return [iteration.model_dump(mode="json") for iteration in iterations]

        raw = await self.cache.get_or_set(key, fetch)
        return [Iteration.model_validate(item) for item in raw or []]

    async def _get_work_items(
        self,
        project: str,
        area_path: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        iteration_path: str | None = None,
    ) -> list[WorkItem]:
        scope = "|".join(
            str(part)
            for part in (
                area_path,
                iteration_path,
                start_date.date().isoformat() if start_date else None,
                end_date.date().isoformat() if end_date else None,
            )
        )
        key = self.cache.build_key(
            CACHE_TIER_WORK_ITEMS, project, "query", hashlib.sha256(scope.encode("utf-8")).hexdigest()[:16]
        )

        async def fetch() -> list[dict[str, Any]]:
            items = await self.source.query_work_items(
                project,
                start_date=start_date,
                end_date=end_date,
                area_path=area_path,
                iteration_path=iteration_path,
            )
            return [item.model_dump(mode="json") for item in items]

        raw = await self.cache.get_or_set(key, fetch)
        return [WorkItem.model_validate(item) for item in raw or []]

    def _select_iteration(self, iterations: list[Iteration], sprint_id: str | None) -> Iteration | None:
        if sprint_id:
            for iteration in iterations:
                if sprint_id in (iteration.id, iteration.name, iteration.path):
                    return iteration
            return None

        for iteration in iterations:
            if iteration.time_frame == "current":
                return iteration

        now = self.clock()
        for iteration in iterations:
            if iteration.start_date and iteration.finish_date and iteration.start_date <= now <= iteration.finish_date:
                return iteration

        return None

    # Derivations

    def _kpis_from(self, items: list[WorkItem], start: datetime, end: datetime) -> dict[str, Any]:
        kpis = empty_kpis()
        if not items:
            return kpis

        completed_in_range = [
            item for item in items if (done := completion_time(item)) is not None and start <= done <= end
        ]
        completed_points = sum(item.story_points for item in completed_in_range)
        total_points = sum(item.story_points for item in items)

        kpis.update(
            velocity=completed_points,
            completedStoryPoints=completed_points,
            totalStoryPoints=total_points,
            completionRate=round(completed_points / total_points * 100, 2) if total_points else 0.0,
            workItemCount=len(items),
            completedCount=sum(1 for item in items if is_completed(item)),
            inProgressCount=sum(1 for item in items if item.state in IN_PROGRESS_STATES),
            bugCount=sum(1 for item in items if is_open_bug(item)),
        )
        return kpis

    def build_burndown(self, iteration: Iteration, items: list[WorkItem]) -> list[dict[str, Any]]:
        """Ideal vs actual remaining work for each calendar day of the sprint.

        Story points are the unit; when no item is estimated, item counts are used.
        Days after today have ``actual`` None. No items yields an empty series.
        """
        if not items or not iteration.start_date or not iteration.finish_date:
            return []

        use_points = any(item.story_points for item in items)

        def weight(item: WorkItem) -> float:
            return item.story_points if use_points else 1.0

        total = sum(weight(item) for item in items)
        first_day = iteration.start_date.date()
        days = (iteration.finish_date.date() - first_day).days + 1
        if days <= 0:
            return []

        today = self.clock().date()
        series: list[dict[str, Any]] = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            ideal = total * (1 - offset / (days - 1)) if days > 1 else 0.0

            actual: float | None = None
            if day <= today:
                burned = sum(
                    weight(item)
                    for item in items
                    if (done := completion_time(item)) is not None and done.date() <= day
                )
                actual = round(total - burned, 2)

            series.append({"date": day.isoformat(), "day": offset + 1, "ideal": round(ideal, 2), "actual": actual})

        return series

    def build_distribution(self, items: list[WorkItem]) -> list[dict[str, Any]]:
        groups: dict[str, list[WorkItem]] = {}
        for item in items:
            groups.setdefault(DISTRIBUTION_GROUPS.get(item.type, "others"), []).append(item)

        distribution: list[dict[str, Any]] = []
        for category in DISTRIBUTION_ORDER:
            members = groups.get(category)
            if not members:
                continue

            completed = sum(1 for item in members if is_completed(item))
            distribution.append({
                "category": category,
                "description": DISTRIBUTION_DESCRIPTIONS[category],
                "count": len(members),
                "storyPoints": sum(item.story_points for item in members),
                "completed": completed,
                "completionRate": round(completed / len(members) * 100, 2),
                "percentage": round(len(members) / len(items) * 100, 2),
            })

        return distribution

    async def _velocity_series(self, project: str, area_path: str | None, sprint_range: int) -> list[dict[str, Any]]:
        now = self.clock()
        iterations = [
            iteration
            for iteration in await self._get_iterations(project)
            if iteration.start_date and iteration.start_date <= now
        ]
        iterations.sort(key=lambda iteration: iteration.start_date or now)
        recent = iterations[-sprint_range:]

        item_sets = await asyncio.gather(*[
            self._get_work_items(project, area_path=area_path, iteration_path=iteration.path) for iteration in recent
        ])
        if not any(item_sets):
            return []

        series: list[dict[str, Any]] = []
        for iteration, items in zip(recent, item_sets):
            completed = [item for item in items if is_completed(item)]
            series.append({
                "sprint": iteration.name,
                "iterationId": iteration.id,
                "startDate": iteration.start_date.isoformat() if iteration.start_date else None,
                "endDate": iteration.finish_date.isoformat() if iteration.finish_date else None,
                "velocity": sum(item.story_points for item in completed),
                "completedItems": len(completed),
            })

        return series

    def _metadata(self, filters: MetricsFilters, start: datetime, end: datetime, **extra: Any) -> dict[str, Any]:
        return {
            "period": filters.period,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "productId": filters.product_id,
            "sprintId": filters.sprint_id,
            "generatedAt": self.clock().isoformat(),
            **extra,
        }

    # Public operations

    async def get_work_item(self, work_item_id: int, product_id: str | None = None) -> dict[str, Any] | None:
        """
        Work item detail, cached under the key comment webhooks invalidate.

        Returns:
            The work item as JSON, or None for an unknown product or a missing work item
        """
        scope = self.resolve_scope(product_id)
        if scope is None:
            return None

        project = scope[0]
        key = self.cache.build_key(CACHE_TIER_WORK_ITEMS, project, "item", work_item_id)

        async def fetch() -> dict[str, Any] | None:
            item = await self.source.get_work_item(project, work_item_id)
            return item.model_dump(mode="json") if item else None

        return await self.cache.get_or_set(key, fetch)

    async def list_teams(self, product_id: str | None = None) -> list[dict[str, Any]]:
        """Teams of the product's project; empty for an unknown product."""
        scope = self.resolve_scope(product_id)
        if scope is None:
            return []

        project = scope[0]

        async def fetch() -> list[dict[str, Any]]:
            return await self.source.get_teams(project)

        return await self.cache.get_or_set(self.cache.build_key(CACHE_TIER_TEAMS, project, "all"), fetch) or []

    async def list_areas(self, product_id: str | None = None) -> list[dict[str, Any]]:
        """
        Area paths of the product's project.

        A product configured with an area path only sees that area and the areas under it.
        """
        scope = self.resolve_scope(product_id)
        if scope is None:
            return []

        project, area_path = scope

        async def fetch() -> list[dict[str, Any]]:
            return await self.source.get_areas(project)

        areas = await self.cache.get_or_set(self.cache.build_key(CACHE_TIER_AREAS, project, "all"), fetch) or []
        if not area_path:
            return areas

        return [area for area in areas if area["path"] == area_path or area["path"].startswith(f"{area_path}\\")]

    async def compute_overview(self, filters: MetricsFilters) -> dict[str, Any]:
        """
        KPIs, charts and metadata for the filters.

        An unknown product or an empty range yields zero KPIs and empty chart
        arrays; a missing current iteration yields an empty burndown.

        Raises:
            UpstreamError: If the work item source fails
        """
        scope = self.resolve_scope(filters.product_id)
        if scope is None:
            start, end = self.resolve_date_range(filters)
            return {
                "kpis": empty_kpis(),
                "charts": {"burndown": [], "velocity": [], "distribution": []},
                "metadata": self._metadata(filters, start, end, project=None, workItemCount=0, sprint=None),
            }

        project, area_path = scope
        iteration = self._select_iteration(await self._get_iterations(project), filters.sprint_id)
        start, end = self.resolve_date_range(filters, iteration)

        items, velocity, pl, satisfaction = await asyncio.gather(
            self._get_work_items(project, area_path=area_path, start_date=start, end_date=end),
            self._velocity_series(project, area_path, DEFAULT_VELOCITY_RANGE),
            self.aggregated_source.get_pl(filters.product_id, start, end),
            self.aggregated_source.get_satisfaction(filters.product_id, start, end),
        )

        burndown: list[dict[str, Any]] = []
        if iteration is not None:
            sprint_items = await self._get_work_items(project, area_path=area_path, iteration_path=iteration.path)
            burndown = self.build_burndown(iteration, sprint_items)

        kpis = self._kpis_from(items, start, end)
        kpis.update(pl=pl["value"], satisfaction=satisfaction["value"])

        return {
            "kpis": kpis,
            "charts": {"burndown": burndown, "velocity": velocity, "distribution": self.build_distribution(items)},
            "metadata": self._metadata(
                filters,
                start,
                end,
                project=project,
                workItemCount=len(items),
                sprint=iteration.name if iteration else None,
                sources={"pl": pl["status"], "satisfaction": satisfaction["status"]},
            ),
        }

    async def compute_kpis(self, filters: MetricsFilters) -> dict[str, Any]:
        scope = self.resolve_scope(filters.product_id)
        if scope is None:
            start, end = self.resolve_date_range(filters)
            return {"kpis": empty_kpis(), "metadata": self._metadata(filters, start, end, project=None)}

        project, area_path = scope
        iteration = None
        if filters.period == "sprint":
            iteration = self._select_iteration(await self._get_iterations(project), filters.sprint_id)
        start, end = self.resolve_date_range(filters, iteration)

        items, pl, satisfaction = await asyncio.gather(
            self._get_work_items(project, area_path=area_path, start_date=start, end_date=end),
            self.aggregated_source.get_pl(filters.product_id, start, end),
            self.aggregated_source.get_satisfaction(filters.product_id, start, end),
        )
        kpis = self._kpis_from(items, start, end)
        kpis.update(pl=pl["value"], satisfaction=satisfaction["value"])

        return {
            "kpis": kpis,
            "metadata": self._metadata(
                filters, start, end, project=project, sources={"pl": pl["status"], "satisfaction": satisfaction["status"]}
            ),
        }

    async def compute_burndown(self, filters: MetricsFilters) -> dict[str, Any]:
        scope = self.resolve_scope(filters.product_id)
        iteration: Iteration | None = None
        burndown: list[dict[str, Any]] = []

        if scope is not None:
            project, area_path = scope
            iteration = self._select_iteration(await self._get_iterations(project), filters.sprint_id)
            if iteration is not None:
                items = await self._get_work_items(project, area_path=area_path, iteration_path=iteration.path)
                burndown = self.build_burndown(iteration, items)

        start, end = self.resolve_date_range(filters, iteration)
        return {
            "burndown": burndown,
            "sprint": iteration.model_dump(mode="json") if iteration else None,
            "metadata": self._metadata(filters, start, end, project=scope[0] if scope else None),
        }

    async def compute_velocity_trend(
        self, sprint_range: int = DEFAULT_VELOCITY_RANGE, product_id: str | None = None
    ) -> dict[str, Any]:
        scope = self.resolve_scope(product_id)
        series = await self._velocity_series(scope[0], scope[1], sprint_range) if scope else []
        velocities = [entry["velocity"] for entry in series]

        trend = "stable"
        if len(velocities) >= 2:
            half = len(velocities) // 2
            earlier = sum(velocities[:half]) / half
            later = sum(velocities[half:]) / (len(velocities) - half)
            if later > earlier * 1.1:
                trend = "up"
            elif later < earlier * 0.9:
                trend = "down"

        return {
            "velocity": series,
            "averageVelocity": round(sum(velocities) / len(velocities), 2) if velocities else 0.0,
            "trend": trend,
            "metadata": {
                "range": sprint_range,
                "productId": product_id,
                "project": scope[0] if scope else None,
                "generatedAt": self.clock().isoformat(),
            },
        }

    async def compute_task_distribution(self, filters: MetricsFilters) -> dict[str, Any]:
        scope = self.resolve_scope(filters.product_id)
        items: list[WorkItem] = []
        iteration: Iteration | None = None

        if scope is not None:
            project, area_path = scope
            if filters.period == "sprint":
                iteration = self._select_iteration(await self._get_iterations(project), filters.sprint_id)
            start, end = self.resolve_date_range(filters, iteration)
            items = await self._get_work_items(project, area_path=area_path, start_date=start, end_date=end)
        else:
            start, end = self.resolve_date_range(filters)

        return {
            "distribution": self.build_distribution(items),
            "totals": {
                "count": len(items),
                "storyPoints": sum(item.story_points for item in items),
                "completed": sum(1 for item in items if is_completed(item)),
            },
            "metadata": self._metadata(filters, start, end, project=scope[0] if scope else None),
        }
