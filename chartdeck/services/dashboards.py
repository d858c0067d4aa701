from __future__ import annotations

import copy
import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from chartdeck.errors import ServiceError, not_found
from chartdeck.models import Category, Chart, Dashboard
from chartdeck.query_config import FilterConnection, GlobalFilterDefinition, QueryConfig
from chartdeck.schemas import (
    CategoryCreateRequest,
    DashboardCreateRequest,
    DashboardDuplicateRequest,
    DashboardFiltersUpdateRequest,
    DashboardLayoutUpdateRequest,
    DashboardStatsResponse,
    DashboardUpdateRequest,
)
from chartdeck.security import CredentialVault
from chartdeck.services.cache import ChartResultCache
from chartdeck.services.canonicalizer import chart_owner, dashboard_owner
from chartdeck.services.chart_data import ChartExecutionPlan
from chartdeck.services.charts import build_plan, copy_chart

logger = logging.getLogger("uvicorn.error")


# ==================== CATEGORIES ====================

def list_categories(db: Session, *, workspace_id: int) -> list[Category]:
    return (
        db.query(Category)
        .filter(Category.workspace_id == workspace_id)
        .order_by(Category.sort_order.asc(), Category.name.asc())
        .all()
    )


def create_category(db: Session, *, workspace_id: int, payload: CategoryCreateRequest) -> Category:
    category = Category(
        workspace_id=workspace_id,
        name=payload.name,
        description=payload.description,
        sort_order=payload.sort_order,
    )
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def _ensure_category(db: Session, *, workspace_id: int, category_id: int | None) -> None:
    if category_id is None:
        return
    exists = (
        db.query(Category.id)
        .filter(Category.id == category_id, Category.workspace_id == workspace_id)
        .first()
    )
    if not exists:
        raise not_found("category", category_id)


# ==================== DASHBOARDS ====================

def active_charts(dashboard: Dashboard) -> list[Chart]:
    return [chart for chart in dashboard.charts if chart.is_active]


def get_dashboard(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int,
    track_view: bool = False,
) -> Dashboard:
    dashboard = (
        db.query(Dashboard)
        .filter(
            Dashboard.id == dashboard_id,
            Dashboard.workspace_id == workspace_id,
            Dashboard.status != "archived",
        )
        .first()
    )
    if not dashboard:
        raise not_found("dashboard", dashboard_id)
    if track_view:
        dashboard.view_count = (dashboard.view_count or 0) + 1
        dashboard.last_viewed_at = datetime.utcnow()
        db.commit()
        db.refresh(dashboard)
    return dashboard


def list_dashboards(
    db: Session,
    *,
    workspace_id: int,
    category_id: int | None = None,
    status: str | None = None,
    search: str | None = None,
    featured: bool | None = None,
    include_archived: bool = False,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[Dashboard], int]:
    query = db.query(Dashboard).filter(Dashboard.workspace_id == workspace_id)
    if status:
        query = query.filter(Dashboard.status == status)
    elif not include_archived:
        query = query.filter(Dashboard.status != "archived")
    if category_id is not None:
        query = query.filter(Dashboard.category_id == category_id)
    if featured is not None:
        query = query.filter(Dashboard.is_featured == featured)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            Dashboard.name.ilike(pattern)
            | Dashboard.display_name.ilike(pattern)
            | Dashboard.description.ilike(pattern)
        )
    total = query.count()
    items = (
        query.order_by(Dashboard.is_featured.desc(), Dashboard.updated_at.desc(), Dashboard.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def validate_global_filters(
    global_filters: list[GlobalFilterDefinition],
    filter_connections: list[FilterConnection],
    chart_ids: set[int],
) -> None:
    seen: set[str] = set()
    for item in global_filters:
        if item.id in seen:
            raise ServiceError(
                status_code=400,
                code="duplicate_filter_id",
                message=f"Global filter id '{item.id}' is used more than once",
            )
        seen.add(item.id)
    for connection in filter_connections:
        if connection.filter_id not in seen:
            raise ServiceError(
                status_code=400,
                code="invalid_filter_connection",
                message=f"Filter connection references unknown filter '{connection.filter_id}'",
            )
        unknown = sorted(set(connection.chart_ids) - chart_ids)
        if unknown:
            raise ServiceError(
                status_code=400,
                code="invalid_filter_connection",
                message="Filter connection references charts outside this dashboard",
                details={"chart_ids": unknown},
            )


def create_dashboard(db: Session, *, workspace_id: int, user_id: int, payload: DashboardCreateRequest) -> Dashboard:
    _ensure_category(db, workspace_id=workspace_id, category_id=payload.category_id)
    validate_global_filters(payload.global_filters, payload.filter_connections, set())
    dashboard = Dashboard(
        workspace_id=workspace_id,
        category_id=payload.category_id,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        config_json=payload.config_json,
        theme_config=payload.theme_config,
        layout_config=payload.layout_config,
        global_filters=[item.model_dump(mode="json") for item in payload.global_filters],
        filter_connections=[item.model_dump(mode="json") for item in payload.filter_connections],
        tags=payload.tags,
        is_public=payload.is_public,
        is_featured=payload.is_featured,
        status=payload.status,
        created_by_id=user_id,
    )
    db.add(dashboard)
    db.commit()
    db.refresh(dashboard)
    logger.info("dashboard.created | %s", {"dashboard_id": dashboard.id, "workspace_id": workspace_id})
    return dashboard


async def invalidate_dashboard(cache: ChartResultCache, dashboard: Dashboard) -> int:
    await cache.invalidate(dashboard_owner(dashboard.id))
    await cache.invalidate_many(chart_owner(chart.id) for chart in dashboard.charts)
    return len(active_charts(dashboard))


async def update_dashboard(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int,
    payload: DashboardUpdateRequest,
    cache: ChartResultCache,
) -> Dashboard:
    dashboard = get_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id)
    updates = payload.model_dump(exclude_unset=True)
    if "category_id" in updates:
        _ensure_category(db, workspace_id=workspace_id, category_id=updates["category_id"])
    if updates.get("status") == "archived":
        await archive_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id, cache=cache)
        return dashboard
    for key, value in updates.items():
        if value is None and key in {"name", "config_json", "theme_config", "layout_config", "tags", "status"}:
            continue
        setattr(dashboard, key, value)
    db.commit()
    db.refresh(dashboard)
    await invalidate_dashboard(cache, dashboard)
    return dashboard


async def archive_dashboard(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int,
    cache: ChartResultCache,
) -> None:
    dashboard = get_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id)
    affected = len(active_charts(dashboard))
    dashboard.status = "archived"
    for chart in dashboard.charts:
        chart.is_active = False
    db.commit()
    await invalidate_dashboard(cache, dashboard)
    logger.info(
        "dashboard.archived | %s",
        {"dashboard_id": dashboard_id, "workspace_id": workspace_id, "charts": affected},
    )


def duplicate_dashboard(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    dashboard_id: int,
    payload: DashboardDuplicateRequest,
) -> Dashboard:
    source = get_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id)
    duplicate = Dashboard(
        workspace_id=workspace_id,
        category_id=source.category_id,
        name=payload.name or f"{source.name} (Copy)",
        display_name=source.display_name,
        description=source.description,
        config_json=copy.deepcopy(source.config_json or {}),
        theme_config=copy.deepcopy(source.theme_config or {}),
        layout_config=copy.deepcopy(source.layout_config or {}),
        global_filters=copy.deepcopy(source.global_filters or []),
        filter_connections=[],
        tags=list(source.tags or []),
        is_public=False,
        is_featured=False,
        status="draft",
        created_by_id=user_id,
    )
    db.add(duplicate)
    db.flush()

    id_map: dict[int, int] = {}
    for chart in active_charts(source):
        chart_copy = copy_chart(chart, user_id=user_id, name=chart.name, dashboard_id=duplicate.id)
        db.add(chart_copy)
        db.flush()
        id_map[chart.id] = chart_copy.id

    duplicate.filter_connections = [
        {
            "filter_id": item.get("filter_id"),
            "chart_ids": [id_map[chart_id] for chart_id in item.get("chart_ids") or [] if chart_id in id_map],
        }
        for item in source.filter_connections or []
    ]
    db.commit()
    db.refresh(duplicate)
    return duplicate


def update_layout(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int,
    payload: DashboardLayoutUpdateRequest,
) -> Dashboard:
    dashboard = get_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id)
    charts_by_id = {chart.id: chart for chart in active_charts(dashboard)}
    unknown = sorted({item.chart_id for item in payload.chart_positions} - charts_by_id.keys())
    if unknown:
        raise ServiceError(
            status_code=400,
            code="invalid_layout",
            message="Layout references charts outside this dashboard",
            details={"chart_ids": unknown},
        )
    dashboard.layout_config = payload.layout_config
    for item in payload.chart_positions:
        chart = charts_by_id[item.chart_id]
        chart.position_json = item.position
        if item.order_index is not None:
            chart.order_index = item.order_index
    db.commit()
    db.refresh(dashboard)
    return dashboard


async def update_global_filters(
    db: Session,
    *,
    workspace_id: int,
    dashboard_id: int,
    payload: DashboardFiltersUpdateRequest,
    cache: ChartResultCache,
) -> Dashboard:
    dashboard = get_dashboard(db, workspace_id=workspace_id, dashboard_id=dashboard_id)
    chart_ids = {chart.id for chart in active_charts(dashboard)}
    validate_global_filters(payload.global_filters, payload.filter_connections, chart_ids)
    dashboard.global_filters = [item.model_dump(mode="json") for item in payload.global_filters]
    dashboard.filter_connections = [item.model_dump(mode="json") for item in payload.filter_connections]
    db.commit()
    db.refresh(dashboard)
    await invalidate_dashboard(cache, dashboard)
    return dashboard


def dashboard_stats(db: Session, *, workspace_id: int) -> DashboardStatsResponse:
    status_counts = dict(
        db.query(Dashboard.status, func.count(Dashboard.id))
        .filter(Dashboard.workspace_id == workspace_id)
        .group_by(Dashboard.status)
        .all()
    )
    live = db.query(Dashboard).filter(Dashboard.workspace_id == workspace_id, Dashboard.status != "archived")
    featured = live.filter(Dashboard.is_featured == True).count()  # noqa: E712
    total_views = (
        db.query(func.coalesce(func.sum(Dashboard.view_count), 0))
        .filter(Dashboard.workspace_id == workspace_id, Dashboard.status != "archived")
        .scalar()
    )
    total_charts = (
        db.query(func.count(Chart.id))
        .join(Dashboard, Dashboard.id == Chart.dashboard_id)
        .filter(
            Chart.workspace_id == workspace_id,
            Chart.is_active == True,  # noqa: E712
            Dashboard.status != "archived",
        )
        .scalar()
    )
    by_category = (
        db.query(Category.id, Category.name, func.count(Dashboard.id))
        .outerjoin(
            Dashboard,
            (Dashboard.category_id == Category.id) & (Dashboard.status != "archived"),
        )
        .filter(Category.workspace_id == workspace_id)
        .group_by(Category.id, Category.name)
        .order_by(Category.name.asc())
        .all()
    )
    return DashboardStatsResponse(
        total_dashboards=sum(count for status, count in status_counts.items() if status != "archived"),
        published_dashboards=status_counts.get("published", 0),
        draft_dashboards=status_counts.get("draft", 0),
        archived_dashboards=status_counts.get("archived", 0),
        featured_dashboards=featured,
        total_charts=total_charts or 0,
        total_views=int(total_views or 0),
        by_category=[
            {"category_id": category_id, "name": name, "dashboards": count}
            for category_id, name, count in by_category
        ],
    )


def build_plans(db: Session, dashboard: Dashboard, *, vault: CredentialVault) -> list[ChartExecutionPlan]:
    """One plan per active chart, in dashboard order.

    Charts whose datasets cannot be resolved still get a plan carrying the error,
    so the aggregator reports them as failed slots.
    """
    plans: list[ChartExecutionPlan] = []
    for chart in active_charts(dashboard):
        try:
            plans.append(build_plan(db, chart, vault=vault))
        except ServiceError as exc:
            plans.append(
                ChartExecutionPlan(
                    chart_id=chart.id,
                    workspace_id=chart.workspace_id,
                    name=chart.display_name or chart.name,
                    chart_type=chart.chart_type,
                    query_config=QueryConfig(),
                    position=copy.deepcopy(chart.position_json or {}),
                    order_index=chart.order_index or 0,
                    plan_error=exc,
                )
            )
    return plans
