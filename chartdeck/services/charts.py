from __future__ import annotations

import copy
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from chartdeck.errors import not_found
from chartdeck.models import Chart, Dashboard
from chartdeck.query_config import FilterSpec, QueryConfig
from chartdeck.schemas import ChartCreateRequest, ChartDuplicateRequest, ChartQueryDescription, ChartUpdateRequest
from chartdeck.security import CredentialVault
from chartdeck.services.cache import ChartResultCache
from chartdeck.services.canonicalizer import chart_owner, dashboard_owner
from chartdeck.services.chart_data import ChartExecutionPlan, render_plan_sql
from chartdeck.services.datasets import load_dataset_snapshots, validate_query_fields
from chartdeck.services.filters import merge_filters, normalize_filters

logger = logging.getLogger("uvicorn.error")


def get_chart(db: Session, *, workspace_id: int, chart_id: int, include_inactive: bool = False) -> Chart:
    query = db.query(Chart).filter(Chart.id == chart_id, Chart.workspace_id == workspace_id)
    if not include_inactive:
        query = query.filter(Chart.is_active == True)  # noqa: E712
    chart = query.first()
    if not chart:
        raise not_found("chart", chart_id)
    return chart


def _ensure_dashboard(db: Session, *, workspace_id: int, dashboard_id: int | None) -> None:
    if dashboard_id is None:
        return
    exists = (
        db.query(Dashboard.id)
        .filter(
            Dashboard.id == dashboard_id,
            Dashboard.workspace_id == workspace_id,
            Dashboard.status != "archived",
        )
        .first()
    )
    if not exists:
        raise not_found("dashboard", dashboard_id)


def list_charts(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int | None = None,
    chart_type: str | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[Chart], int]:
    query = db.query(Chart).filter(Chart.workspace_id == workspace_id, Chart.is_active == True)  # noqa: E712
    if dashboard_id is not None:
        query = query.filter(Chart.dashboard_id == dashboard_id)
    if chart_type:
        query = query.filter(Chart.chart_type == chart_type)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(Chart.name.ilike(pattern) | Chart.display_name.ilike(pattern))
    total = query.count()
    items = (
        query.order_by(Chart.dashboard_id.asc(), Chart.order_index.asc(), Chart.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def _validate_chart_query(
    db: Session,
    *,
    workspace_id: int,
    dataset_ids: list[int],
    query_config: QueryConfig,
    filters: list[FilterSpec],
    vault: CredentialVault,
) -> None:
    snapshots = load_dataset_snapshots(db, workspace_id=workspace_id, dataset_ids=dataset_ids, vault=vault)
    validate_query_fields(query_config, filters, snapshots)


def create_chart(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    payload: ChartCreateRequest,
    vault: CredentialVault,
) -> Chart:
    _ensure_dashboard(db, workspace_id=workspace_id, dashboard_id=payload.dashboard_id)
    _validate_chart_query(
        db,
        workspace_id=workspace_id,
        dataset_ids=payload.dataset_ids,
        query_config=payload.query_config,
        filters=payload.filters,
        vault=vault,
    )
    chart = Chart(
        workspace_id=workspace_id,
        dashboard_id=payload.dashboard_id,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        chart_type=payload.chart_type,
        dataset_ids=list(payload.dataset_ids),
        query_config=payload.query_config.model_dump(mode="json"),
        visualization_config=payload.visualization_config,
        filters=[item.model_dump(mode="json") for item in payload.filters],
        position_json=payload.position_json,
        order_index=payload.order_index,
        created_by_id=user_id,
    )
    db.add(chart)
    db.commit()
    db.refresh(chart)
    logger.info("chart.created | %s", {"chart_id": chart.id, "workspace_id": workspace_id})
    return chart


async def update_chart(
    db: Session,
    *,
    workspace_id: int,
    chart_id: int,
    payload: ChartUpdateRequest,
    vault: CredentialVault,
    cache: ChartResultCache,
) -> Chart:
    chart = get_chart(db, workspace_id=workspace_id, chart_id=chart_id)
    updates = payload.model_dump(exclude_unset=True)

    if "dashboard_id" in updates:
        _ensure_dashboard(db, workspace_id=workspace_id, dashboard_id=updates["dashboard_id"])
    if {"dataset_ids", "query_config", "filters"} & updates.keys():
        dataset_ids = payload.dataset_ids if payload.dataset_ids is not None else list(chart.dataset_ids or [])
        query_config = payload.query_config or QueryConfig.model_validate(chart.query_config or {})
        filters = payload.filters if payload.filters is not None else normalize_filters(chart.filters or [])
        _validate_chart_query(
            db,
            workspace_id=workspace_id,
            dataset_ids=dataset_ids,
            query_config=query_config,
            filters=filters,
            vault=vault,
        )

    previous_dashboard_id = chart.dashboard_id
    for key, value in updates.items():
        if key == "query_config" and payload.query_config is not None:
            value = payload.query_config.model_dump(mode="json")
        elif key == "filters" and payload.filters is not None:
            value = [item.model_dump(mode="json") for item in payload.filters]
        elif value is None and key in {"name", "chart_type", "dataset_ids", "order_index"}:
            continue
        setattr(chart, key, value)

    db.commit()
    db.refresh(chart)

    await cache.invalidate(chart_owner(chart.id))
    for owner_dashboard_id in {previous_dashboard_id, chart.dashboard_id} - {None}:
        await cache.invalidate(dashboard_owner(owner_dashboard_id))
    return chart


async def delete_chart(db: Session, *, workspace_id: int, chart_id: int, cache: ChartResultCache) -> None:
    chart = get_chart(db, workspace_id=workspace_id, chart_id=chart_id)
    chart.is_active = False
    db.commit()
    await cache.invalidate(chart_owner(chart.id))
    if chart.dashboard_id is not None:
        await cache.invalidate(dashboard_owner(chart.dashboard_id))
    logger.info("chart.deleted | %s", {"chart_id": chart_id, "workspace_id": workspace_id})


def copy_chart(chart: Chart, *, user_id: int, name: str | None = None, dashboard_id: int | None = None) -> Chart:
    return Chart(
        workspace_id=chart.workspace_id,
        dashboard_id=dashboard_id if dashboard_id is not None else chart.dashboard_id,
        name=name or f"{chart.name} (Copy)",
        display_name=chart.display_name,
        description=chart.description,
        chart_type=chart.chart_type,
        dataset_ids=list(chart.dataset_ids or []),
        query_config=copy.deepcopy(chart.query_config or {}),
        visualization_config=copy.deepcopy(chart.visualization_config or {}),
        filters=copy.deepcopy(chart.filters or []),
        position_json=copy.deepcopy(chart.position_json or {}),
        order_index=chart.order_index,
        created_by_id=user_id,
    )


def duplicate_chart(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    chart_id: int,
    payload: ChartDuplicateRequest,
) -> Chart:
    chart = get_chart(db, workspace_id=workspace_id, chart_id=chart_id)
    _ensure_dashboard(db, workspace_id=workspace_id, dashboard_id=payload.dashboard_id)
    duplicate = copy_chart(chart, user_id=user_id, name=payload.name, dashboard_id=payload.dashboard_id)
    db.add(duplicate)
    db.commit()
    db.refresh(duplicate)
    return duplicate


def persisted_filters(chart: Chart) -> list[FilterSpec]:
    query_config = QueryConfig.model_validate(chart.query_config or {})
    return merge_filters(query_config.filters, normalize_filters(chart.filters or []))


def build_plan(db: Session, chart: Chart, *, vault: CredentialVault) -> ChartExecutionPlan:
    snapshots = load_dataset_snapshots(
        db,
        workspace_id=chart.workspace_id,
        dataset_ids=chart.dataset_ids or [],
        vault=vault,
    )
    return ChartExecutionPlan(
        chart_id=chart.id,
        workspace_id=chart.workspace_id,
        name=chart.display_name or chart.name,
        chart_type=chart.chart_type,
        query_config=QueryConfig.model_validate(chart.query_config or {}),
        filters=tuple(persisted_filters(chart)),
        datasets=tuple(snapshots),
        position=copy.deepcopy(chart.position_json or {}),
        order_index=chart.order_index or 0,
    )


def record_execution(db: Session, *, chart_id: int, execution_time_ms: int) -> None:
    chart = db.query(Chart).filter(Chart.id == chart_id).first()
    if not chart:
        return
    chart.last_executed_at = datetime.utcnow()
    chart.execution_count = (chart.execution_count or 0) + 1
    chart.last_execution_ms = execution_time_ms
    db.commit()


def describe_query(
    plan: ChartExecutionPlan,
    *,
    filter_overrides: list[FilterSpec] | None = None,
    limit: int | None = None,
) -> ChartQueryDescription:
    effective = merge_filters(plan.filters, filter_overrides)
    return ChartQueryDescription(
        chart_id=plan.chart_id,
        dataset_ids=plan.dataset_ids,
        query_config=plan.query_config.model_dump(mode="json"),
        filters=effective,
        sql=render_plan_sql(plan, effective, limit),
    )

