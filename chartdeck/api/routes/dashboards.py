from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from chartdeck.api.dependencies import ServiceContainer, get_services, require_permission
from chartdeck.api.params import parse_filters_param
from chartdeck.api.responses import envelope
from chartdeck.database import get_db
from chartdeck.schemas import (
    ApplyFilterRequest,
    ChartResponse,
    DashboardCreateRequest,
    DashboardDetailResponse,
    DashboardDuplicateRequest,
    DashboardFiltersUpdateRequest,
    DashboardLayoutUpdateRequest,
    DashboardListResponse,
    DashboardResponse,
    DashboardStatsResponse,
    DashboardUpdateRequest,
    DashboardDataResult,
    ExportRequest,
    RefreshRequest,
)
from chartdeck.security import RequestContext
from chartdeck.services import charts as chart_service
from chartdeck.services import dashboards as dashboard_service
from chartdeck.services.aggregator import snapshot_dashboard
from chartdeck.services.exports import dashboard_export_work, validate_export_format
from chartdeck.services.jobs import dashboard_refresh_work

router = APIRouter(prefix="/dashboards", tags=["dashboards"])


def _record_executions(db: Session, data: DashboardDataResult) -> None:
    for slot in data.charts:
        if slot.data is not None and not slot.data.cached:
            chart_service.record_execution(db, chart_id=slot.chart_id, execution_time_ms=slot.data.execution_time_ms)


@router.get("")
async def list_dashboards(
    category_id: int | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    search: str | None = Query(None),
    featured: bool | None = Query(None),
    include_archived: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
):
    items, total = dashboard_service.list_dashboards(
        db,
        workspace_id=context.workspace_id,
        category_id=category_id,
        status=status_filter,
        search=search,
        featured=featured,
        include_archived=include_archived,
        page=page,
        page_size=page_size,
    )
    return envelope(
        DashboardListResponse(
            items=[DashboardResponse.model_validate(item) for item in items],
            total=total,
            page=page,
            page_size=page_size,
        )
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_dashboard(
    request: DashboardCreateRequest,
    context: RequestContext = Depends(require_permission("dashboard.create")),
    db: Session = Depends(get_db),
):
    dashboard = dashboard_service.create_dashboard(
        db,
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        payload=request,
    )
    return envelope(DashboardResponse.model_validate(dashboard), "Dashboard created")


@router.get("/stats")
async def get_dashboard_stats(
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
):
    stats: DashboardStatsResponse = dashboard_service.dashboard_stats(db, workspace_id=context.workspace_id)
    return envelope(stats)


@router.get("/{dashboard_id}")
async def get_dashboard(
    dashboard_id: int,
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
):
    dashboard = dashboard_service.get_dashboard(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        track_view=True,
    )
    return envelope(DashboardDetailResponse.model_validate(dashboard))


@router.put("/{dashboard_id}")
async def update_dashboard(
    dashboard_id: int,
    request: DashboardUpdateRequest,
    context: RequestContext = Depends(require_permission("dashboard.update")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = await dashboard_service.update_dashboard(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        payload=request,
        cache=services.cache,
    )
    return envelope(DashboardResponse.model_validate(dashboard), "Dashboard updated")


@router.delete("/{dashboard_id}")
async def delete_dashboard(
    dashboard_id: int,
    context: RequestContext = Depends(require_permission("dashboard.delete")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    await dashboard_service.archive_dashboard(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        cache=services.cache,
    )
    return envelope({"dashboard_id": dashboard_id}, "Dashboard archived")


@router.post("/{dashboard_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_dashboard(
    dashboard_id: int,
    request: DashboardDuplicateRequest | None = None,
    context: RequestContext = Depends(require_permission("dashboard.create")),
    db: Session = Depends(get_db),
):
    dashboard = dashboard_service.duplicate_dashboard(
        db,
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        dashboard_id=dashboard_id,
        payload=request or DashboardDuplicateRequest(),
    )
    return envelope(DashboardDetailResponse.model_validate(dashboard), "Dashboard duplicated")


@router.get("/{dashboard_id}/charts")
async def list_dashboard_charts(
    dashboard_id: int,
    context: RequestContext = Depends(require_permission("chart.read")),
    db: Session = Depends(get_db),
):
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    charts = dashboard_service.active_charts(dashboard)
    return envelope([ChartResponse.model_validate(chart) for chart in charts])


@router.get("/{dashboard_id}/data")
async def get_dashboard_data(
    dashboard_id: int,
    filters: str | None = Query(None),
    refresh: bool = Query(False),
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    request_filters = parse_filters_param(filters)
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    plans = dashboard_service.build_plans(db, dashboard, vault=services.vault)
    data = await services.aggregator.get_dashboard_data(
        snapshot_dashboard(dashboard),
        plans,
        request_filters,
        force_refresh=refresh,
    )
    _record_executions(db, data)
    return envelope(data)


@router.post("/{dashboard_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_dashboard(
    dashboard_id: int,
    request: RefreshRequest | None = None,
    context: RequestContext = Depends(require_permission("dashboard.update")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    plans = dashboard_service.build_plans(db, dashboard, vault=services.vault)
    if request and request.chart_ids:
        selected = set(request.chart_ids)
        plans = [plan for plan in plans if plan.chart_id in selected]
    snapshot = snapshot_dashboard(dashboard)
    job = await services.jobs.submit(
        kind="refresh",
        owner_id=snapshot.owner_id,
        workspace_id=context.workspace_id,
        created_by_id=context.user_id,
        work=dashboard_refresh_work(services.aggregator, snapshot, plans),
    )
    return envelope(
        {
            "refresh_id": job.job_id,
            "status": job.status,
            "started_at": job.created_at,
            "charts_to_refresh": [plan.chart_id for plan in plans],
        },
        "Dashboard refresh started",
    )


@router.post("/{dashboard_id}/filters")
async def apply_dashboard_filter(
    dashboard_id: int,
    request: ApplyFilterRequest,
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    plans = dashboard_service.build_plans(db, dashboard, vault=services.vault)
    result = await services.aggregator.apply_global_filter(
        snapshot_dashboard(dashboard),
        plans,
        request.filter_id,
        request.value,
        force_refresh=request.force_refresh,
    )
    _record_executions(db, result.data)
    return envelope(result, "Filter applied")


@router.put("/{dashboard_id}/filters")
async def update_dashboard_filters(
    dashboard_id: int,
    request: DashboardFiltersUpdateRequest,
    context: RequestContext = Depends(require_permission("dashboard.update")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = await dashboard_service.update_global_filters(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        payload=request,
        cache=services.cache,
    )
    return envelope(DashboardResponse.model_validate(dashboard), "Dashboard filters updated")


@router.put("/{dashboard_id}/layout")
async def update_dashboard_layout(
    dashboard_id: int,
    request: DashboardLayoutUpdateRequest,
    context: RequestContext = Depends(require_permission("dashboard.update")),
    db: Session = Depends(get_db),
):
    dashboard = dashboard_service.update_layout(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        payload=request,
    )
    return envelope(DashboardDetailResponse.model_validate(dashboard), "Dashboard layout updated")


@router.get("/{dashboard_id}/cache-status")
async def get_dashboard_cache_status(
    dashboard_id: int,
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    plans = dashboard_service.build_plans(db, dashboard, vault=services.vault)
    return envelope(await services.aggregator.cache_status(snapshot_dashboard(dashboard), plans))


@router.post("/{dashboard_id}/cache/clear")
async def clear_dashboard_cache(
    dashboard_id: int,
    context: RequestContext = Depends(require_permission("cache.manage")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    chart_ids = [chart.id for chart in dashboard_service.active_charts(dashboard)]
    result = await services.aggregator.clear_cache(dashboard.id, chart_ids)
    return envelope(result, "Dashboard cache cleared")


@router.post("/{dashboard_id}/export", status_code=status.HTTP_202_ACCEPTED)
async def export_dashboard(
    dashboard_id: int,
    request: ExportRequest,
    context: RequestContext = Depends(require_permission("dashboard.export")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    fmt = validate_export_format(request.format)
    request_filters = parse_filters_param(request.filters)
    dashboard = dashboard_service.get_dashboard(db, workspace_id=context.workspace_id, dashboard_id=dashboard_id)
    plans = dashboard_service.build_plans(db, dashboard, vault=services.vault)
    snapshot = snapshot_dashboard(dashboard)
    job = await services.jobs.submit(
        kind="export",
        owner_id=snapshot.owner_id,
        workspace_id=context.workspace_id,
        created_by_id=context.user_id,
        work=dashboard_export_work(
            services.aggregator,
            services.exporter,
            snapshot,
            plans,
            workspace_id=context.workspace_id,
            name=dashboard.display_name or dashboard.name,
            fmt=fmt,
            filters=request_filters,
        ),
    )
    return envelope(job.to_response(), "Dashboard export started")
