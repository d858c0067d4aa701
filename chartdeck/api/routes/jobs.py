from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from chartdeck.api.dependencies import ServiceContainer, get_request_context, get_services
from chartdeck.api.responses import envelope
from chartdeck.database import get_db
from chartdeck.errors import ServiceError
from chartdeck.security import RequestContext
from chartdeck.services.jobs import Job

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _authorize(services: ServiceContainer, db: Session, context: RequestContext) -> None:
    allowed = any(
        services.permissions.has_permission(db, context.user_id, context.workspace_id, action)
        for action in ("dashboard.read", "chart.read")
    )
    if not allowed:
        raise ServiceError(
            status_code=403,
            code="insufficient_permissions",
            message="Missing permission: dashboard.read",
            details={"action": "dashboard.read"},
        )


def _job_not_found(job_id: str) -> ServiceError:
    return ServiceError(status_code=404, code="job_not_found", message=f"Job with ID {job_id} not found")


async def _load_job(services: ServiceContainer, job_id: str, context: RequestContext) -> Job:
    job = await services.jobs.get(job_id, context.workspace_id)
    if job is None:
        raise _job_not_found(job_id)
    return job


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    _authorize(services, db, context)
    job = await _load_job(services, job_id, context)
    return envelope(job.to_response())


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    _authorize(services, db, context)
    job = await _load_job(services, job_id, context)
    # Submitters may cancel their own jobs; anyone else needs cache.manage.
    if job.created_by_id != context.user_id and not services.permissions.has_permission(
        db, context.user_id, context.workspace_id, "cache.manage"
    ):
        raise ServiceError(
            status_code=403,
            code="insufficient_permissions",
            message="Missing permission: cache.manage",
            details={"action": "cache.manage"},
        )
    job = await services.jobs.cancel(job_id, context.workspace_id)
    if job is None:
        raise _job_not_found(job_id)
    return envelope(job.to_response(), "Job cancelled")


@router.get("/{job_id}/download")
async def download_job_file(
    job_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    _authorize(services, db, context)
    job = await _load_job(services, job_id, context)
    if job.kind != "export" or job.status != "completed" or not job.result:
        raise ServiceError(
            status_code=409,
            code="export_not_ready",
            message="Export is not available for download",
            details={"status": job.status},
        )
    path = services.exporter.resolve(context.workspace_id, job.result["file_name"])
    media_type = "text/csv" if job.result.get("format") == "csv" else "application/json"
    return FileResponse(path, media_type=media_type, filename=path.name)
