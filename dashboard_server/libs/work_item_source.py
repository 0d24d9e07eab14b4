"""
Upstream data sources for the metrics aggregator.

- AzureDevOpsClient: Azure DevOps REST (WIQL, work item batch and detail, teams,
  area tree, team iterations)
- ConfiguredAggregatedMetrics: P/L and satisfaction figures served from config

Both are async; the Azure DevOps client shares the application's httpx.AsyncClient.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from dashboard_server.libs.config import Config
from dashboard_server.libs.exceptions import UpstreamError, UpstreamTimeoutError
from dashboard_server.libs.models import Iteration, WorkItem
from dashboard_server.utils.constants import WORK_ITEM_FIELDS

WORK_ITEMS_BATCH_SIZE: int = 200
DEFAULT_API_VERSION: str = "7.0"
DEFAULT_MAX_RESULTS: int = 1000


def _wiql_literal(value: str) -> str:
    """Quote a value for a WIQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def _area_path(node: dict[str, Any], project: str) -> str:
    # Classification node paths look like \Project\Area\Child
    parts = [part for part in str(node.get("path") or "").split("\\") if part]
    if len(parts) > 1 and parts[1] == "Area":
        del parts[1]
    return "\\".join(parts) or project


def build_wiql_query(
    project: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    area_path: str | None = None,
    iteration_path: str | None = None,
) -> str:
    """Build the WIQL query selecting work items of a project, optionally narrowed."""
    conditions = [
        f"[System.TeamProject] = {_wiql_literal(project)}",
        "[System.State] <> 'Removed'",
    ]
    if start_date:
        conditions.append(f"[System.ChangedDate] >= {_wiql_literal(start_date.date().isoformat())}")
    if end_date:
        conditions.append(f"[System.CreatedDate] <= {_wiql_literal(end_date.date().isoformat())}")
    if area_path:
        conditions.append(f"[System.AreaPath] UNDER {_wiql_literal(area_path)}")
    if iteration_path:
        conditions.append(f"[System.IterationPath] UNDER {_wiql_literal(iteration_path)}")

    return f"SELECT [System.Id] FROM WorkItems WHERE {' AND '.join(conditions)} ORDER BY [System.ChangedDate] DESC"


class AzureDevOpsClient:
    """
    Async Azure DevOps REST client authenticated with a personal access token.

    Architecture guarantees:
    - http_client is ALWAYS provided (shared lifespan client) - no defensive checks needed
    - logger is ALWAYS provided (required parameter) - no defensive checks needed

    Every transport or HTTP failure is raised as UpstreamError
    (UpstreamTimeoutError for timeouts).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        logger: logging.Logger,
        organization: str,
        project: str | None = None,
        team: str | None = None,
        pat: str | None = None,
        base_url: str | None = None,
        api_version: str = DEFAULT_API_VERSION,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> None:
        self.http_client = http_client
        self.logger = logger
        self.organization = organization
        self.project = project
        self.team = team
        self.api_version = api_version
        self.max_results = max_results
        self.base_url = (base_url or f"https://dev.azure.com/{quote(organization)}").rstrip("/")
        self._auth = httpx.BasicAuth(username="", password=pat) if pat else None

    @classmethod
    def from_config(cls, config: Config, http_client: httpx.AsyncClient, logger: logging.Logger) -> AzureDevOpsClient:
        return cls(
            http_client=http_client,
            logger=logger,
            organization=config.get_value("azure-devops.organization", return_on_none=""),
            project=config.get_value("azure-devops.project"),
            team=config.get_value("azure-devops.team"),
            pat=config.get_azure_devops_pat(),
            base_url=config.get_value("azure-devops.base-url"),
            api_version=str(config.get_value("azure-devops.api-version", return_on_none=DEFAULT_API_VERSION)),
            max_results=config.get_value("azure-devops.max-results", return_on_none=DEFAULT_MAX_RESULTS),
        )

    def team_for(self, project: str) -> str:
        return self.team or f"{project} Team"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        params = {"api-version": self.api_version, **kwargs.pop("params", {})}

        try:
            response = await self.http_client.request(method, url, params=params, auth=self._auth, **kwargs)
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as ex:
            self.logger.error(f"Azure DevOps request timed out: {method} {path}")
            raise UpstreamTimeoutError(f"Azure DevOps request timed out: {method} {path}") from ex

        except httpx.HTTPStatusError as ex:
            self.logger.error(f"Azure DevOps returned {ex.response.status_code} for {method} {path}")
            raise UpstreamError(
                f"Azure DevOps request failed with status {ex.response.status_code}",
                details={"status": ex.response.status_code, "path": path},
            ) from ex

        except httpx.RequestError as ex:
            self.logger.error(f"Azure DevOps request error for {method} {path}: {ex}")
            raise UpstreamError(f"Azure DevOps request failed: {ex}") from ex

        except ValueError as ex:
            self.logger.error(f"Azure DevOps returned invalid JSON for {method} {path}")
            raise UpstreamError("Azure DevOps returned an invalid response") from ex

    async def query_work_items(
        self,
        project: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        area_path: str | None = None,
        iteration_path: str | None = None,
    ) -> list[WorkItem]:
        """Run a WIQL query and fetch the matching work items in batches of 200."""
        query = build_wiql_query(
            project,
            start_date=start_date,
            end_date=end_date,
            area_path=area_path,
            iteration_path=iteration_path,
        )
        result = await self._request("POST", f"{quote(project)}/_apis/wit/wiql", json={"query": query})
        ids = [int(ref["id"]) for ref in result.get("workItems", [])][: self.max_results]

        if not ids:
            return []

        batches = [ids[i : i + WORK_ITEMS_BATCH_SIZE] for i in range(0, len(ids), WORK_ITEMS_BATCH_SIZE)]
        responses = await asyncio.gather(*[
            self._request(
                "POST",
                f"{quote(project)}/_apis/wit/workitemsbatch",
                json={"ids": batch, "fields": list(WORK_ITEM_FIELDS)},
            )
            for batch in batches
        ])

        work_items = [WorkItem.from_azure(raw) for response in responses for raw in response.get("value", [])]
        self.logger.debug(f"Fetched {len(work_items)} work items for project {project}")
        return work_items

    async def get_work_item(self, project: str, work_item_id: int) -> WorkItem | None:
        """Fetch one work item; None when Azure DevOps reports it does not exist."""
        try:
            raw = await self._request(
                "GET",
                f"{quote(project)}/_apis/wit/workitems/{work_item_id}",
                params={"fields": ",".join(WORK_ITEM_FIELDS)},
            )
        except UpstreamError as ex:
            if isinstance(ex.details, dict) and ex.details.get("status") == 404:
                return None
            raise

        return WorkItem.from_azure(raw)

    async def get_teams(self, project: str) -> list[dict[str, Any]]:
        result = await self._request("GET", f"_apis/projects/{quote(project)}/teams")
        return [
            {"id": raw.get("id"), "name": raw.get("name"), "description": raw.get("description")}
            for raw in result.get("value", [])
        ]

    async def get_areas(self, project: str, depth: int = 2) -> list[dict[str, Any]]:
        """Flattened area tree with paths in work item form (``Project\\Child``)."""
        root = await self._request(
            "GET", f"{quote(project)}/_apis/wit/classificationnodes/areas", params={"$depth": depth}
        )

        areas: list[dict[str, Any]] = []
        pending = [root]
        while pending:
            node = pending.pop(0)
            areas.append({"id": node.get("id"), "name": node.get("name"), "path": _area_path(node, project)})
            pending.extend(node.get("children") or [])

        return areas

    async def get_iterations(self, project: str, timeframe: str | None = None) -> list[Iteration]:
        """List team iterations; `timeframe` may be 'current', 'past' or 'future'."""
        params = {"$timeframe": timeframe} if timeframe else {}
        path = f"{quote(project)}/{quote(self.team_for(project))}/_apis/work/teamsettings/iterations"
        result = await self._request("GET", path, params=params)
        return [Iteration.from_azure(raw) for raw in result.get("value", [])]


class ConfiguredAggregatedMetrics:
    """
    P/L and satisfaction collaborator backed by the `aggregated-metrics` config section.

    Values may be a single number or a mapping of productId to number. Missing
    values are reported with status "unavailable" and value 0.
    """

    def __init__(self, values: dict[str, Any] | None = None) -> None:
        self.values = values or {}

    @classmethod
    def from_config(cls, config: Config) -> ConfiguredAggregatedMetrics:
        return cls(values=config.get_value("aggregated-metrics", return_on_none={}))

    def _lookup(self, metric: str, product_id: str | None) -> dict[str, Any]:
        configured = self.values.get(metric)
        if isinstance(configured, dict):
            configured = configured.get(product_id or "default")

        if isinstance(configured, (int, float)) and not isinstance(configured, bool):
            return {"value": float(configured), "status": "available"}

        return {"value": 0.0, "status": "unavailable"}

    async def get_pl(self, product_id: str | None, start_date: datetime, end_date: datetime) -> dict[str, Any]:
        return self._lookup("pl", product_id)

    async def get_satisfaction(
        self, product_id: str | None, start_date: datetime, end_date: datetime
    ) -> dict[str, Any]:
        return self._lookup("satisfaction", product_id)
