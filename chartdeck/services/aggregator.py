from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from chartdeck.errors import ServiceError, not_found
from chartdeck.models import Dashboard
from chartdeck.query_config import FilterConnection, FilterSpec, GlobalFilterDefinition, QueryConfig
from chartdeck.schemas import (
    ApplyFilterResult,
    CacheClearResponse,
    CacheStatusResponse,
    ChartSlot,
    DashboardDataResult,
)
from chartdeck.services.canonicalizer import build_cache_key, chart_owner, dashboard_owner
from chartdeck.services.chart_data import ChartDataService, ChartExecutionPlan

logger = logging.getLogger("uvicorn.error")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class DashboardSnapshot:
    dashboard_id: int
    global_filters: tuple[GlobalFilterDefinition, ...] = ()
    filter_connections: tuple[FilterConnection, ...] = ()
    layout: dict[str, Any] = field(default_factory=dict)

    @property
    def owner_id(self) -> str:
        return dashboard_owner(self.dashboard_id)


def snapshot_dashboard(dashboard: Dashboard) -> DashboardSnapshot:
    return DashboardSnapshot(
        dashboard_id=dashboard.id,
        global_filters=tuple(GlobalFilterDefinition.model_validate(item) for item in dashboard.global_filters or []),
        filter_connections=tuple(FilterConnection.model_validate(item) for item in dashboard.filter_connections or []),
        layout=copy.deepcopy(dashboard.layout_config or {}),
    )


def route_filters(
    dashboard: DashboardSnapshot,
    plans: list[ChartExecutionPlan],
    filters: list[FilterSpec],
    filter_ids: Sequence[str | None] | None = None,
) -> dict[int, list[FilterSpec]]:
    """Per-chart filter lists.

    When the global filter behind a request filter is known (``filter_ids`` is
    aligned with ``filters``), its connections decide which charts get it. A
    filter known only by field is narrowed to connected charts only when every
    global filter on that field has connections. Anything else reaches every
    chart.
    """
    filter_ids_by_field: dict[str, set[str]] = {}
    for definition in dashboard.global_filters:
        filter_ids_by_field.setdefault(definition.field, set()).add(definition.id)

    connected: dict[str, set[int]] = {}
    for connection in dashboard.filter_connections:
        connected.setdefault(connection.filter_id, set()).update(connection.chart_ids)

    routed: dict[int, list[FilterSpec]] = {plan.chart_id: [] for plan in plans}
    for index, item in enumerate(filters):
        source_id = filter_ids[index] if filter_ids is not None and index < len(filter_ids) else None
        if source_id is not None:
            targets = connected.get(source_id)
        else:
            owners = filter_ids_by_field.get(item.field, set())
            if owners and all(filter_id in connected for filter_id in owners):
                targets = set().union(*(connected[filter_id] for filter_id in owners))
            else:
                targets = None
        for plan in plans:
            if targets is None or plan.chart_id in targets:
                routed[plan.chart_id].append(item.model_copy(deep=True))
    return routed


class DashboardAggregator:
    def __init__(
        self,
        *,
        chart_data: ChartDataService,
        concurrency_limit: int = 6,
        chart_timeout_seconds: float = 30,
    ) -> None:
        self._chart_data = chart_data
        self._concurrency_limit = max(1, concurrency_limit)
        self._chart_timeout_seconds = chart_timeout_seconds

    async def get_dashboard_data(
        self,
        dashboard: DashboardSnapshot,
        plans: list[ChartExecutionPlan],
        filters: list[FilterSpec] | None = None,
        force_refresh: bool = False,
        filter_ids: Sequence[str | None] | None = None,
    ) -> DashboardDataResult:
        started = perf_counter()
        request_filters = list(filters or [])
        routed = route_filters(dashboard, plans, request_filters, filter_ids)
        semaphore = asyncio.Semaphore(self._concurrency_limit)

        async def _run_chart(plan: ChartExecutionPlan) -> ChartSlot:
            async with semaphore:
                return await self._execute_chart(plan, routed[plan.chart_id], force_refresh)

        slots = await asyncio.gather(*[_run_chart(plan) for plan in plans])
        failed_count = sum(1 for slot in slots if slot.status == "error")

        marker_key = build_cache_key(dashboard.owner_id, QueryConfig(), request_filters)
        await self._chart_data.cache.put(
            marker_key,
            dashboard.owner_id,
            [{"chart_id": slot.chart_id, "status": slot.status} for slot in slots],
            ["chart_id", "status"],
        )
        logger.info(
            "dashboard.data | %s",
            {
                "dashboard_id": dashboard.dashboard_id,
                "charts": len(plans),
                "failed": failed_count,
                "cached": sum(1 for slot in slots if slot.data is not None and slot.data.cached),
                "force_refresh": force_refresh,
                "duration_ms": int((perf_counter() - started) * 1000),
            },
        )
        return DashboardDataResult(
            dashboard_id=dashboard.dashboard_id,
            charts=list(slots),
            global_filters=[item.model_dump(mode="json") for item in dashboard.global_filters],
            layout=copy.deepcopy(dashboard.layout),
            generated_at=_utcnow(),
            failed_count=failed_count,
        )

    async def _execute_chart(
        self,
        plan: ChartExecutionPlan,
        filters: list[FilterSpec],
        force_refresh: bool,
    ) -> ChartSlot:
        base = {
            "chart_id": plan.chart_id,
            "name": plan.name,
            "chart_type": plan.chart_type,
            "position": copy.deepcopy(plan.position),
        }
        try:
            data = await asyncio.wait_for(
                self._chart_data.get_chart_data(plan, filter_overrides=filters, force_refresh=force_refresh),
                timeout=self._chart_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = {"code": "chart_timeout", "message": "Chart execution timed out"}
            logger.warning("dashboard.chart_failed | %s", {"chart_id": plan.chart_id, **error})
        except ServiceError as exc:
            error = {"code": exc.code, "message": exc.message}
            logger.warning("dashboard.chart_failed | %s", {"chart_id": plan.chart_id, **error})
        except Exception:
            error = {"code": "internal_error", "message": "Chart execution failed"}
            logger.exception("dashboard.chart_failed | %s", {"chart_id": plan.chart_id, **error})
        else:
            return ChartSlot(**base, status="ok", data=data)
        return ChartSlot(**base, status="error", error=error)

    async def apply_global_filter(
        self,
        dashboard: DashboardSnapshot,
        plans: list[ChartExecutionPlan],
        filter_id: str,
        value: Any,
        force_refresh: bool = False,
    ) -> ApplyFilterResult:
        definition = next((item for item in dashboard.global_filters if item.id == filter_id), None)
        if definition is None:
            raise not_found("filter", filter_id)

        connected = {
            chart_id
            for connection in dashboard.filter_connections
            if connection.filter_id == filter_id
            for chart_id in connection.chart_ids
        }
        has_connections = any(item.filter_id == filter_id for item in dashboard.filter_connections)
        affected = [plan.chart_id for plan in plans if not has_connections or plan.chart_id in connected]

        filters = [definition.to_filter(value)] if value is not None else []
        data = await self.get_dashboard_data(
            dashboard, plans, filters, force_refresh=force_refresh, filter_ids=[filter_id] * len(filters)
        )
        return ApplyFilterResult(filter_id=filter_id, filter_value=value, affected_charts=affected, data=data)

    async def cache_status(self, dashboard: DashboardSnapshot, plans: list[ChartExecutionPlan]) -> CacheStatusResponse:
        cache = self._chart_data.cache
        dashboard_status = await cache.owner_status(dashboard.owner_id)
        chart_statuses = [await cache.owner_status(chart_owner(plan.chart_id)) for plan in plans]
        updates = [item.last_updated for item in [dashboard_status, *chart_statuses] if item.last_updated]
        return CacheStatusResponse(
            dashboard_cached=dashboard_status.cached,
            charts_cached=sum(1 for item in chart_statuses if item.cached),
            total_charts=len(plans),
            last_cache_update=max(updates) if updates else None,
            cache_size_bytes=dashboard_status.size_bytes + sum(item.size_bytes for item in chart_statuses),
        )

    async def clear_cache(self, dashboard_id: int, chart_ids: list[int]) -> CacheClearResponse:
        cache = self._chart_data.cache
        await cache.invalidate(dashboard_owner(dashboard_id))
        await cache.invalidate_many(chart_owner(chart_id) for chart_id in chart_ids)
        return CacheClearResponse(cache_cleared=True, affected_charts=len(chart_ids))
