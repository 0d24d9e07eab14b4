"""Tests for MetricsAggregator KPIs and chart derivations."""

import logging as python_logging
from datetime import UTC, datetime
from typing import Any

import pytest

from dashboard_server.libs.cache import CacheLayer
from dashboard_server.libs.exceptions import ValidationError
from dashboard_server.libs.metrics_aggregator import MetricsAggregator, empty_kpis
from dashboard_server.libs.models import EventType, Iteration, MetricsFilters, WorkItem
from dashboard_server.libs.work_item_source import ConfiguredAggregatedMetrics
from dashboard_server.tests.conftest import FakeClock


def _dt(day: int, month: int = 11) -> datetime:
    return datetime(2025, month, day, tzinfo=UTC)


ITERATIONS = [
    Iteration(id="it-3", name="Sprint 3", path="Alpha\\Sprint 3", start_date=_dt(20, 10), finish_date=_dt(31, 10)),
    Iteration(id="it-4", name="Sprint 4", path="Alpha\\Sprint 4", start_date=_dt(3), finish_date=_dt(14)),
    Iteration(
        id="it-5",
        name="Sprint 5",
        path="Alpha\\Sprint 5",
        start_date=_dt(17),
        finish_date=_dt(28),
        time_frame="current",
    ),
    Iteration(id="it-6", name="Sprint 6", path="Alpha\\Sprint 6", start_date=_dt(1, 12), finish_date=_dt(12, 12)),
]

SPRINT_5_ITEMS = [
    WorkItem(id=1, type="Task", state="Done", story_points=5, closed_date=_dt(19)),
    WorkItem(id=2, type="Task", state="Active", story_points=3),
    WorkItem(id=3, type="Bug", state="Active", story_points=2),
    WorkItem(id=4, type="Bug", state="Closed", story_points=1, closed_date=_dt(21)),
    WorkItem(id=5, type="Design", state="New", story_points=2),
    WorkItem(id=6, type="Test Case", state="New"),
]

ITEMS_BY_ITERATION = {
    "Alpha\\Sprint 3": [WorkItem(id=30, type="Task", state="Done", story_points=4, closed_date=_dt(30, 10))],
    "Alpha\\Sprint 4": [
        WorkItem(id=40, type="Task", state="Done", story_points=5, closed_date=_dt(12)),
        WorkItem(id=41, type="User Story", state="Closed", story_points=3, closed_date=_dt(13)),
        WorkItem(id=42, type="Task", state="Active", story_points=2),
    ],
    "Alpha\\Sprint 5": SPRINT_5_ITEMS,
}


class FakeWorkItemSource:
    def __init__(self) -> None:
        self.iteration_calls: list[str] = []
        self.query_calls: list[dict[str, Any]] = []
        self.detail_calls: list[tuple[str, int]] = []
        self.empty_projects: set[str] = set()
        self.lookup_calls: list[tuple[str, str]] = []

    def team_for(self, project: str) -> str:
        return f"{project} Team"

    async def get_iterations(self, project: str, timeframe: str | None = None) -> list[Iteration]:
        self.iteration_calls.append(project)
        return list(ITERATIONS)

    async def query_work_items(
        self,
        project: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        area_path: str | None = None,
        iteration_path: str | None = None,
    ) -> list[WorkItem]:
        self.query_calls.append({
            "project": project,
            "start_date": start_date,
            "end_date": end_date,
            "area_path": area_path,
            "iteration_path": iteration_path,
        })
        if project in self.empty_projects:
            return []
        if iteration_path is not None:
            return list(ITEMS_BY_ITERATION.get(iteration_path, []))
        return list(SPRINT_5_ITEMS)

    async def get_work_item(self, project: str, work_item_id: int) -> WorkItem | None:
        self.detail_calls.append((project, work_item_id))
        return next((item for item in SPRINT_5_ITEMS if item.id == work_item_id), None)

    async def get_teams(self, project: str) -> list[dict[str, Any]]:
        self.lookup_calls.append(("teams", project))
        return [{"id": "t-1", "name": f"{project} Team", "description": None}]

    async def get_areas(self, project: str, depth: int = 2) -> list[dict[str, Any]]:
        self.lookup_calls.append(("areas", project))
        return [
            {"id": 1, "name": project, "path": project},
            {"id": 2, "name": "Web", "path": f"{project}\\Web"},
            {"id": 3, "name": "Checkout", "path": f"{project}\\Web\\Checkout"},
            {"id": 4, "name": "Website", "path": f"{project}\\Website"},
        ]


@pytest.fixture
def source() -> FakeWorkItemSource:
    return FakeWorkItemSource()


@pytest.fixture
def aggregator(
    source: FakeWorkItemSource, cache: CacheLayer, logger: python_logging.Logger, clock: FakeClock
) -> MetricsAggregator:
    return MetricsAggregator(
        source=source,
        aggregated_source=ConfiguredAggregatedMetrics({"pl": {"product-a": 125000}, "satisfaction": 4.2}),
        cache=cache,
        logger=logger,
        products={
            "product-a": {"project": "Alpha", "area-path": "Alpha\\Web"},
            "product-b": {"project": "Beta"},
        },
        default_project="Alpha",
        clock=clock.utcnow,
    )


class TestUnknownScope:
    @pytest.mark.asyncio
    async def test_nonexistent_product_returns_zeroes(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource
    ) -> None:
        overview = await aggregator.compute_overview(MetricsFilters(productId="nonexistent"))

        assert overview["kpis"] == empty_kpis()
        assert all(value == 0 for value in overview["kpis"].values())
        assert overview["charts"] == {"burndown": [], "velocity": [], "distribution": []}
        assert overview["metadata"]["project"] is None
        assert source.query_calls == []
        assert source.iteration_calls == []

    @pytest.mark.asyncio
    async def test_nonexistent_product_other_operations(self, aggregator: MetricsAggregator) -> None:
        filters = MetricsFilters(productId="nonexistent")

        assert (await aggregator.compute_kpis(filters))["kpis"] == empty_kpis()
        assert (await aggregator.compute_burndown(filters))["burndown"] == []
        assert (await aggregator.compute_task_distribution(filters))["distribution"] == []

        trend = await aggregator.compute_velocity_trend(product_id="nonexistent")
        assert trend["velocity"] == []
        assert trend["averageVelocity"] == 0.0
        assert trend["trend"] == "stable"

    def test_no_default_project(self, source: FakeWorkItemSource, cache: CacheLayer, logger) -> None:
        aggregator = MetricsAggregator(
            source=source, aggregated_source=ConfiguredAggregatedMetrics(), cache=cache, logger=logger
        )
        assert aggregator.resolve_scope(None) is None

    def test_resolve_scope(self, aggregator: MetricsAggregator) -> None:
        assert aggregator.resolve_scope(None) == ("Alpha", None)
        assert aggregator.resolve_scope("product-a") == ("Alpha", "Alpha\\Web")
        assert aggregator.resolve_scope("product-b") == ("Beta", None)


class TestDateRange:
    def test_sprint_uses_iteration(self, aggregator: MetricsAggregator) -> None:
        start, end = aggregator.resolve_date_range(MetricsFilters(period="sprint"), ITERATIONS[2])
        assert (start, end) == (_dt(17), _dt(28))

    def test_sprint_without_iteration_is_last_14_days(self, aggregator: MetricsAggregator, clock: FakeClock) -> None:
        start, end = aggregator.resolve_date_range(MetricsFilters(period="sprint"))
        assert end == clock.utcnow()
        assert start == datetime(2025, 11, 10, 12, 0, tzinfo=UTC)

    @pytest.mark.parametrize(
        "period, expected_start",
        [
            ("month", datetime(2025, 11, 1, tzinfo=UTC)),
            ("quarter", datetime(2025, 10, 1, tzinfo=UTC)),
            ("year", datetime(2025, 1, 1, tzinfo=UTC)),
        ],
    )
    def test_calendar_periods(self, aggregator: MetricsAggregator, period: str, expected_start: datetime) -> None:
        start, _ = aggregator.resolve_date_range(MetricsFilters(period=period))
        assert start == expected_start

    def test_explicit_dates_override_period(self, aggregator: MetricsAggregator) -> None:
        filters = MetricsFilters(period="year", startDate=_dt(5), endDate=_dt(9))
        assert aggregator.resolve_date_range(filters) == (_dt(5), _dt(9))

    def test_start_after_effective_end_rejected(self, aggregator: MetricsAggregator) -> None:
        with pytest.raises(ValidationError):
            aggregator.resolve_date_range(MetricsFilters(startDate=_dt(1, 12)))


class TestKpis:
    @pytest.mark.asyncio
    async def test_current_sprint_kpis(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_kpis(MetricsFilters(period="sprint"))
        kpis = result["kpis"]

        assert kpis["velocity"] == 6
        assert kpis["totalStoryPoints"] == 13
        assert kpis["completionRate"] == 46.15
        assert kpis["workItemCount"] == 6
        assert kpis["completedCount"] == 2
        assert kpis["inProgressCount"] == 2
        assert kpis["bugCount"] == 1
        assert kpis["pl"] == 0.0
        assert kpis["satisfaction"] == 4.2
        assert result["metadata"]["startDate"] == _dt(17).isoformat()
        assert result["metadata"]["sources"] == {"pl": "unavailable", "satisfaction": "available"}

    @pytest.mark.asyncio
    async def test_product_scope(self, aggregator: MetricsAggregator, source: FakeWorkItemSource) -> None:
        result = await aggregator.compute_kpis(MetricsFilters(productId="product-a"))

        assert result["kpis"]["pl"] == 125000.0
        assert source.query_calls[0]["area_path"] == "Alpha\\Web"
        assert result["metadata"]["productId"] == "product-a"

    @pytest.mark.asyncio
    async def test_reads_are_cached_until_invalidated(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource, cache: CacheLayer
    ) -> None:
        await aggregator.compute_kpis(MetricsFilters())
        await aggregator.compute_kpis(MetricsFilters())

        assert len(source.iteration_calls) == 1
        assert len(source.query_calls) == 1

        await cache.invalidate_work_items("Alpha", 1, EventType.UPDATED)
        await aggregator.compute_kpis(MetricsFilters())

        assert len(source.iteration_calls) == 1
        assert len(source.query_calls) == 2


class TestBurndown:
    def test_ideal_and_actual_series(self, aggregator: MetricsAggregator) -> None:
        series = aggregator.build_burndown(ITERATIONS[2], SPRINT_5_ITEMS)

        assert len(series) == 12
        assert series[0] == {"date": "2025-11-17", "day": 1, "ideal": 13.0, "actual": 13.0}
        assert series[2]["actual"] == 8.0
        assert series[4]["actual"] == 7.0
        assert series[7]["date"] == "2025-11-24"
        assert series[7]["actual"] == 7.0
        assert series[8]["actual"] is None
        assert series[-1]["ideal"] == 0.0

    def test_counts_items_when_unestimated(self, aggregator: MetricsAggregator) -> None:
        items = [
            WorkItem(id=1, type="Task", state="Done", closed_date=_dt(18)),
            WorkItem(id=2, type="Task", state="New"),
        ]
        series = aggregator.build_burndown(ITERATIONS[2], items)

        assert series[0]["ideal"] == 2.0
        assert series[1]["actual"] == 1.0

    def test_iteration_without_dates(self, aggregator: MetricsAggregator) -> None:
        assert aggregator.build_burndown(Iteration(id="x", name="x", path="x"), SPRINT_5_ITEMS) == []

    def test_no_items_yields_empty_series(self, aggregator: MetricsAggregator) -> None:
        assert aggregator.build_burndown(ITERATIONS[2], []) == []

    @pytest.mark.asyncio
    async def test_compute_burndown_for_named_sprint(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_burndown(MetricsFilters(sprintId="Sprint 4"))

        assert result["sprint"]["name"] == "Sprint 4"
        assert len(result["burndown"]) == 12
        assert result["burndown"][-1]["actual"] == 2.0

    @pytest.mark.asyncio
    async def test_unknown_sprint_yields_empty_burndown(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_burndown(MetricsFilters(sprintId="Sprint 99"))

        assert result["burndown"] == []
        assert result["sprint"] is None


class TestDistribution:
    def test_groups(self, aggregator: MetricsAggregator) -> None:
        distribution = {entry["category"]: entry for entry in aggregator.build_distribution(SPRINT_5_ITEMS)}

        assert list(distribution) == ["tasks", "bugs", "design", "others"]
        assert distribution["tasks"]["count"] == 2
        assert distribution["tasks"]["storyPoints"] == 8
        assert distribution["tasks"]["completionRate"] == 50.0
        assert distribution["tasks"]["percentage"] == 33.33
        assert distribution["bugs"]["completed"] == 1
        assert distribution["design"]["count"] == 1
        assert distribution["others"]["percentage"] == 16.67

    def test_empty_groups_omitted(self, aggregator: MetricsAggregator) -> None:
        distribution = aggregator.build_distribution([WorkItem(id=1, type="Bug", state="New")])
        assert [entry["category"] for entry in distribution] == ["bugs"]

    @pytest.mark.asyncio
    async def test_compute_task_distribution(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_task_distribution(MetricsFilters())

        assert result["totals"] == {"count": 6, "storyPoints": 13, "completed": 2}
        assert len(result["distribution"]) == 4


class TestVelocity:
    @pytest.mark.asyncio
    async def test_velocity_trend_up(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_velocity_trend(sprint_range=6)

        assert [entry["sprint"] for entry in result["velocity"]] == ["Sprint 3", "Sprint 4", "Sprint 5"]
        assert [entry["velocity"] for entry in result["velocity"]] == [4, 8, 6]
        assert result["averageVelocity"] == 6.0
        assert result["trend"] == "up"
        assert result["metadata"]["range"] == 6

    @pytest.mark.asyncio
    async def test_velocity_trend_down(self, aggregator: MetricsAggregator) -> None:
        result = await aggregator.compute_velocity_trend(sprint_range=2)

        assert [entry["sprint"] for entry in result["velocity"]] == ["Sprint 4", "Sprint 5"]
        assert result["trend"] == "down"


class TestOverview:
    @pytest.mark.asyncio
    async def test_overview(self, aggregator: MetricsAggregator) -> None:
        overview = await aggregator.compute_overview(MetricsFilters())

        assert overview["kpis"]["velocity"] == 6
        assert overview["kpis"]["bugCount"] == 1
        assert len(overview["charts"]["burndown"]) == 12
        assert len(overview["charts"]["velocity"]) == 3
        assert len(overview["charts"]["distribution"]) == 4
        assert overview["metadata"]["sprint"] == "Sprint 5"
        assert overview["metadata"]["project"] == "Alpha"
        assert overview["metadata"]["workItemCount"] == 6

    @pytest.mark.asyncio
    async def test_known_product_without_items_has_empty_charts(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource
    ) -> None:
        source.empty_projects.add("Beta")

        overview = await aggregator.compute_overview(MetricsFilters(productId="product-b"))

        assert overview["charts"] == {"burndown": [], "velocity": [], "distribution": []}
        assert overview["kpis"]["velocity"] == 0
        assert overview["metadata"]["project"] == "Beta"
        assert overview["metadata"]["sprint"] == "Sprint 5"
        assert overview["metadata"]["workItemCount"] == 0

        trend = await aggregator.compute_velocity_trend(product_id="product-b")
        assert trend["velocity"] == []
        assert trend["averageVelocity"] == 0.0


class TestWorkItemDetail:
    @pytest.mark.asyncio
    async def test_detail_cached_until_comment_invalidation(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource, cache: CacheLayer
    ) -> None:
        first = await aggregator.get_work_item(3)
        second = await aggregator.get_work_item(3)

        assert first == second
        assert first["id"] == 3
        assert first["type"] == "Bug"
        assert source.detail_calls == [("Alpha", 3)]
        assert await cache.get("cache:workItems:Alpha:item:3") == first

        await cache.invalidate_work_items("Alpha", 3, EventType.COMMENTED)
        await aggregator.get_work_item(3)

        assert source.detail_calls == [("Alpha", 3), ("Alpha", 3)]

    @pytest.mark.asyncio
    async def test_product_scope(self, aggregator: MetricsAggregator, source: FakeWorkItemSource) -> None:
        await aggregator.get_work_item(1, product_id="product-b")
        assert source.detail_calls == [("Beta", 1)]

    @pytest.mark.asyncio
    async def test_missing_item_or_unknown_product(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource
    ) -> None:
        assert await aggregator.get_work_item(999) is None
        assert await aggregator.get_work_item(1, product_id="nonexistent") is None
        assert source.detail_calls == [("Alpha", 999)]


class TestLookups:
    @pytest.mark.asyncio
    async def test_teams_cached_in_teams_tier(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource, cache: CacheLayer
    ) -> None:
        teams = await aggregator.list_teams()
        assert await aggregator.list_teams() == teams
        assert teams == [{"id": "t-1", "name": "Alpha Team", "description": None}]
        assert source.lookup_calls == [("teams", "Alpha")]
        assert await cache.get("cache:teams:Alpha:all") == teams

    @pytest.mark.asyncio
    async def test_areas_cached_and_narrowed_to_product_area(
        self, aggregator: MetricsAggregator, source: FakeWorkItemSource, cache: CacheLayer
    ) -> None:
        all_areas = await aggregator.list_areas()
        product_areas = await aggregator.list_areas(product_id="product-a")

        assert len(all_areas) == 4
        assert [area["path"] for area in product_areas] == ["Alpha\\Web", "Alpha\\Web\\Checkout"]
        assert source.lookup_calls == [("areas", "Alpha")]
        assert await cache.get("cache:areas:Alpha:all") == all_areas

    @pytest.mark.asyncio
    async def test_unknown_product(self, aggregator: MetricsAggregator, source: FakeWorkItemSource) -> None:
        assert await aggregator.list_teams(product_id="nonexistent") == []
        assert await aggregator.list_areas(product_id="nonexistent") == []
        assert source.lookup_calls == []
