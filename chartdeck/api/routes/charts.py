from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from chartdeck.api.dependencies import ServiceContainer, get_services, require_permission
from chartdeck.api.params import parse_filters_param
from chartdeck.api.responses import envelope
from chartdeck.database import get_db
from chartdeck.schemas import (
    ChartCreateRequest,
    ChartDuplicateRequest,
    ChartListResponse,
    ChartResponse,
    ChartUpdateRequest,
    ExportRequest,
)
from chartdeck.security import RequestContext
from chartdeck.services import charts as chart_service
from chartdeck.services.exports import chart_export_work, validate_export_format
from chartdeck.services.jobs import chart_refresh_work

router = APIRouter(prefix="/charts", tags=["charts"])


@router.get("")
async def list_charts(
    dashboard_id: int | None = Query(None),
    chart_type: str | None = Query(None),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    context: RequestContext = Depends(require_permission("chart.read")),
    db: Session = Depends(get_db),
):
    items, total = chart_service.list_charts(
        db,
        workspace_id=context.workspace_id,
        dashboard_id=dashboard_id,
        chart_type=chart_type,
        search=search,
        page=page,
        page_size=page_size,
    )
    return envelope(
        ChartListResponse(
            items=[ChartResponse.model_validate(item) for item in items],
            total=total,
            page=page,
            page_size=page_size,
        )
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_chart(
    request: ChartCreateRequest,
    context: RequestContext = Depends(require_permission("chart.create")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    chart = chart_service.create_chart(
        db,
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        payload=request,
        vault=services.vault,
    )
    return envelope(ChartResponse.model_validate(chart), "Chart created")


@router.get("/{chart_id}")
async def get_chart(
    chart_id: int,
    context: RequestContext = Depends(require_permission("chart.read")),
    db: Session = Depends(get_db),
):
    chart = chart_service.get_chart(db, workspace_id=context.workspace_id, chart_id=chart_id)
    return envelope(ChartResponse.model_validate(chart))


@router.put("/{chart_id}")
async def update_chart(
    chart_id: int,
    request: ChartUpdateRequest,
    context: RequestContext = Depends(require_permission("chart.update")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    chart = await chart_service.update_chart(
        db,
        workspace_id=context.workspace_id,
        chart_id=chart_id,
        payload=request,
        vault=services.vault,
        cache=services.cache,
    )
    return envelope(ChartResponse.model_validate(chart), "Chart updated")


@router.delete("/{chart_id}")
async def delete_chart(
    chart_id: int,
    context: RequestContext = Depends(require_permission("chart.delete")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    await chart_service.delete_chart(db, workspace_id=context.workspace_id, chart_id=chart_id, cache=services.cache)
    return envelope({"chart_id": chart_id}, "Chart deleted")


@router.post("/{chart_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_chart(
    chart_id: int,
    request: ChartDuplicateRequest | None = None,
    context: RequestContext = Depends(require_permission("chart.create")),
    db: Session = Depends(get_db),
):
    chart = chart_service.duplicate_chart(
        db,
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        chart_id=chart_id,
        payload=request or ChartDuplicateRequest(),
    )
    return envelope(ChartResponse.model_validate(chart), "Chart duplicated")


@router.get("/{chart_id}/data")
async def get_chart_data(
    chart_id: int,
    filters: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    refresh: bool = Query(False),
    context: RequestContext = Depends(require_permission("chart.read")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    overrides = parse_filters_param(filters)
    chart = chart_service.get_chart(db, workspace_id=context.workspace_id, chart_id=chart_id)
    plan = chart_service.build_plan(db, chart, vault=services.vault)
    result = await services.chart_data.get_chart_data(
        plan,
        filter_overrides=overrides,
        limit=limit,
        force_refresh=refresh,
    )
    if not result.cached:
        chart_service.record_execution(db, chart_id=chart_id, execution_time_ms=result.execution_time_ms)
    return envelope(result)


@router.post("/{chart_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_chart(
    chart_id: int,
    context: RequestContext = Depends(require_permission("chart.update")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    chart = chart_service.get_chart(db, workspace_id=context.workspace_id, chart_id=chart_id)
    plan = chart_service.build_plan(db, chart, vault=services.vault)
    job = await services.jobs.submit(
        kind="refresh",
        owner_id=plan.owner_id,
        workspace_id=context.workspace_id,
        created_by_id=context.user_id,
        work=chart_refresh_work(services.chart_data, plan),
    )
    return envelope(
        {
            "refresh_id": job.job_id,
            "status": job.status,
            "started_at": job.created_at,
            "charts_to_refresh": [chart_id],
        },
        "Chart refresh started",
    )


@router.post("/{chart_id}/export", status_code=status.HTTP_202_ACCEPTED)
async def export_chart(
    chart_id: int,
    request: ExportRequest,
    context: RequestContext = Depends(require_permission("chart.export")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    fmt = validate_export_format(request.format)
    overrides = parse_filters_param(request.filters)
    chart = chart_service.get_chart(db, workspace_id=context.workspace_id, chart_id=chart_id)
    plan = chart_service.build_plan(db, chart, vault=services.vault)
    job = await services.jobs.submit(
        kind="export",
        owner_id=plan.owner_id,
        workspace_id=context.workspace_id,
        created_by_id=context.user_id,
        work=chart_export_work(services.chart_data, services.exporter, plan, fmt=fmt, filters=overrides),
    )
    return envelope(job.to_response(), "Chart export started")


@router.get("/{chart_id}/query")
async def get_chart_query(
    chart_id: int,
    filters: str | None = Query(None),
    limit: int | None = Query(None, ge=1),
    context: RequestContext = Depends(require_permission("chart.query")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    overrides = parse_filters_param(filters)
    chart = chart_service.get_chart(db, workspace_id=context.workspace_id, chart_id=chart_id)
    plan = chart_service.build_plan(db, chart, vault=services.vault)
    return envelope(chart_service.describe_query(plan, filter_overrides=overrides, limit=limit))
