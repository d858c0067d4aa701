from __future__ import annotations

import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec, QueryConfig
from chartdeck.schemas import ChartDataResult
from chartdeck.services.cache import ChartResultCache
from chartdeck.services.canonicalizer import build_cache_key, chart_owner
from chartdeck.services.datasets import DatasetQueryExecutor, DatasetSnapshot, resolve_dataset_sql
from chartdeck.services.filters import build_sql, merge_filters
from chartdeck.services.processor import ChartDataProcessor

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class ChartExecutionPlan:
    chart_id: int
    workspace_id: int
    name: str
    chart_type: str
    query_config: QueryConfig
    filters: tuple[FilterSpec, ...] = ()
    datasets: tuple[DatasetSnapshot, ...] = ()
    position: dict[str, Any] = field(default_factory=dict)
    order_index: int = 0
    plan_error: ServiceError | None = None

    @property
    def owner_id(self) -> str:
        return chart_owner(self.chart_id)

    @property
    def dataset_ids(self) -> list[int]:
        return [item.id for item in self.datasets]


def render_plan_sql(plan: ChartExecutionPlan, filters: list[FilterSpec], limit: int | None = None) -> list[str]:
    return [
        build_sql(resolve_dataset_sql(snapshot)[0], plan.query_config, filters, limit)
        for snapshot in plan.datasets
    ]


class ChartDataService:
    def __init__(
        self,
        *,
        cache: ChartResultCache,
        executor: DatasetQueryExecutor,
        processor: ChartDataProcessor,
    ) -> None:
        self._cache = cache
        self._executor = executor
        self._processor = processor

    @property
    def cache(self) -> ChartResultCache:
        return self._cache

    def cache_key(self, plan: ChartExecutionPlan, filters: list[FilterSpec], limit: int | None = None) -> str:
        return build_cache_key(plan.owner_id, plan.query_config, filters, limit)

    async def get_chart_data(
        self,
        plan: ChartExecutionPlan,
        filter_overrides: list[FilterSpec] | None = None,
        limit: int | None = None,
        force_refresh: bool = False,
    ) -> ChartDataResult:
        started = perf_counter()
        if plan.plan_error is not None:
            raise plan.plan_error
        effective_filters = merge_filters(plan.filters, filter_overrides)
        key = self.cache_key(plan, effective_filters, limit)
        sql = "\nUNION ALL\n".join(render_plan_sql(plan, effective_filters, limit)) or None

        if not force_refresh:
            entry = await self._cache.get(key)
            if entry is not None:
                logger.info("chart.cache_hit | %s", {"chart_id": plan.chart_id, "cache_key": key})
                return ChartDataResult(
                    chart_id=plan.chart_id,
                    columns=entry.columns,
                    rows=entry.rows,
                    row_count=len(entry.rows),
                    cached=True,
                    generated_at=entry.created_at,
                    execution_time_ms=int((perf_counter() - started) * 1000),
                    cache_key=key,
                    sql=sql,
                    filters=effective_filters,
                )

        source_rows: list[dict[str, Any]] = []
        for snapshot in plan.datasets:
            _columns, rows = await self._executor.fetch(snapshot)
            source_rows.extend(rows)

        processed = self._processor.process(source_rows, plan.query_config, filters=effective_filters, limit=limit)
        entry = await self._cache.put(key, plan.owner_id, processed.rows, processed.columns)
        execution_time_ms = int((perf_counter() - started) * 1000)
        logger.info(
            "chart.data | %s",
            {
                "chart_id": plan.chart_id,
                "source_rows": len(source_rows),
                "row_count": processed.row_count,
                "force_refresh": force_refresh,
                "duration_ms": execution_time_ms,
            },
        )
        return ChartDataResult(
            chart_id=plan.chart_id,
            columns=processed.columns,
            rows=processed.rows,
            row_count=processed.row_count,
            cached=False,
            generated_at=entry.created_at,
            execution_time_ms=execution_time_ms,
            cache_key=key,
            sql=sql,
            filters=effective_filters,
        )
