from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from chartdeck.database import get_db
from chartdeck.errors import ServiceError
from chartdeck.security import CredentialVault, RequestContext, decode_token
from chartdeck.services.aggregator import DashboardAggregator
from chartdeck.services.cache import ChartResultCache
from chartdeck.services.chart_data import ChartDataService
from chartdeck.services.datasets import DatasetQueryExecutor
from chartdeck.services.exports import ChartExporter
from chartdeck.services.jobs import JobTracker
from chartdeck.services.permissions import PermissionService
from chartdeck.services.processor import ChartDataProcessor
from chartdeck.settings import Settings

security = HTTPBearer(auto_error=False)


@dataclass(slots=True)
class ServiceContainer:
    settings: Settings
    cache: ChartResultCache
    executor: DatasetQueryExecutor
    processor: ChartDataProcessor
    chart_data: ChartDataService
    aggregator: DashboardAggregator
    jobs: JobTracker
    exporter: ChartExporter
    permissions: PermissionService
    vault: CredentialVault

    async def aclose(self) -> None:
        await self.jobs.aclose()
        await self.executor.aclose()


def build_services(settings: Settings) -> ServiceContainer:
    cache = ChartResultCache(
        ttl_seconds=settings.chart_cache_ttl_seconds,
        max_entries=settings.chart_cache_max_entries,
    )
    executor = DatasetQueryExecutor(timeout_seconds=settings.query_timeout_seconds)
    processor = ChartDataProcessor(max_rows=settings.query_result_rows_max)
    chart_data = ChartDataService(cache=cache, executor=executor, processor=processor)
    return ServiceContainer(
        settings=settings,
        cache=cache,
        executor=executor,
        processor=processor,
        chart_data=chart_data,
        aggregator=DashboardAggregator(
            chart_data=chart_data,
            concurrency_limit=settings.dashboard_chart_concurrency_limit,
            chart_timeout_seconds=settings.chart_execution_timeout_seconds,
        ),
        jobs=JobTracker(
            timeout_seconds=settings.job_timeout_seconds,
            retention_seconds=settings.job_retention_seconds,
        ),
        exporter=ChartExporter(settings.export_dir),
        permissions=PermissionService(),
        vault=CredentialVault(settings.encryption_key),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_request_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_workspace_id: str | None = Header(default=None),
    services: ServiceContainer = Depends(get_services),
) -> RequestContext:
    if credentials is None:
        raise ServiceError(status_code=401, code="missing_token", message="Authentication required")
    payload = decode_token(credentials.credentials, services.settings)
    if payload is None or payload.get("sub") is None:
        raise ServiceError(status_code=401, code="invalid_token", message="Invalid or expired token")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise ServiceError(status_code=401, code="invalid_token", message="Invalid token subject") from exc

    if not x_workspace_id:
        raise ServiceError(status_code=400, code="missing_workspace_id", message="X-Workspace-Id header is required")
    try:
        workspace_id = int(x_workspace_id)
    except ValueError as exc:
        raise ServiceError(status_code=400, code="invalid_workspace_id", message="X-Workspace-Id must be an integer") from exc
    return RequestContext(user_id=user_id, workspace_id=workspace_id)


def require_permission(action: str) -> Callable[..., RequestContext]:
    async def _dependency(
        context: RequestContext = Depends(get_request_context),
        db: Session = Depends(get_db),
        services: ServiceContainer = Depends(get_services),
    ) -> RequestContext:
        if not services.permissions.has_permission(db, context.user_id, context.workspace_id, action):
            raise ServiceError(
                status_code=403,
                code="insufficient_permissions",
                message=f"Missing permission: {action}",
                details={"action": action},
            )
        return context

    return _dependency
