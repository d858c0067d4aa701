from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from chartdeck.api.dependencies import ServiceContainer, get_services, require_permission
from chartdeck.api.responses import envelope
from chartdeck.database import get_db
from chartdeck.schemas import (
    CategoryCreateRequest,
    CategoryResponse,
    DatasetCreateRequest,
    DatasetResponse,
    DataSourceCreateRequest,
    DataSourceResponse,
)
from chartdeck.security import RequestContext
from chartdeck.services import dashboards as dashboard_service
from chartdeck.services import datasets as dataset_service

router = APIRouter(tags=["catalog"])


@router.get("/datasources")
async def list_datasources(
    context: RequestContext = Depends(require_permission("dataset.read")),
    db: Session = Depends(get_db),
):
    items = dataset_service.list_datasources(db, workspace_id=context.workspace_id)
    return envelope([DataSourceResponse.model_validate(item) for item in items])


@router.post("/datasources", status_code=status.HTTP_201_CREATED)
async def create_datasource(
    request: DataSourceCreateRequest,
    context: RequestContext = Depends(require_permission("dataset.manage")),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    datasource = dataset_service.create_datasource(
        db,
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        payload=request,
        vault=services.vault,
    )
    return envelope(DataSourceResponse.model_validate(datasource), "Datasource created")


@router.get("/datasets")
async def list_datasets(
    datasource_id: int | None = Query(None),
    context: RequestContext = Depends(require_permission("dataset.read")),
    db: Session = Depends(get_db),
):
    items = dataset_service.list_datasets(db, workspace_id=context.workspace_id, datasource_id=datasource_id)
    return envelope([DatasetResponse.model_validate(item) for item in items])


@router.post("/datasets", status_code=status.HTTP_201_CREATED)
async def create_dataset(
    request: DatasetCreateRequest,
    context: RequestContext = Depends(require_permission("dataset.manage")),
    db: Session = Depends(get_db),
):
    dataset = dataset_service.create_dataset(db, workspace_id=context.workspace_id, payload=request)
    return envelope(DatasetResponse.model_validate(dataset), "Dataset created")


@router.get("/categories")
async def list_categories(
    context: RequestContext = Depends(require_permission("dashboard.read")),
    db: Session = Depends(get_db),
):
    items = dashboard_service.list_categories(db, workspace_id=context.workspace_id)
    return envelope([CategoryResponse.model_validate(item) for item in items])


@router.post("/categories", status_code=status.HTTP_201_CREATED)
async def create_category(
    request: CategoryCreateRequest,
    context: RequestContext = Depends(require_permission("dashboard.create")),
    db: Session = Depends(get_db),
):
    category = dashboard_service.create_category(db, workspace_id=context.workspace_id, payload=request)
    return envelope(CategoryResponse.model_validate(category), "Category created")
