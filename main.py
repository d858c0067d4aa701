import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chartdeck.api.dependencies import ServiceContainer, build_services
from chartdeck.api.responses import error_envelope
from chartdeck.api.routes import catalog, charts, dashboards, health, jobs
from chartdeck.errors import ServiceError
from chartdeck.settings import get_settings

settings = get_settings()
logger = logging.getLogger("uvicorn.error")


def _resolve_cors_origins() -> list[str]:
    if settings.cors_origins:
        return settings.cors_origins
    if settings.environment in {"development", "test"}:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]
    return []


def _field_name(location: tuple) -> str:
    parts = [str(part) for part in location if part not in {"body", "query", "path", "header"}]
    return ".".join(parts) or "request"


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    container = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.services.aclose()

    docs_enabled = settings.environment != "production"
    app = FastAPI(
        title="Chartdeck API",
        description="Dashboards and charts over configurable datasets",
        version="0.1.0",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.services = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_resolve_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def handle_service_error(_request: Request, exc: ServiceError) -> JSONResponse:
        logger.warning(
            "request.handled_error | %s",
            {
                "error_id": exc.error_id,
                "code": exc.code,
                "status_code": exc.status_code,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(exc.message, [exc.to_error_item()]),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "code": "validation_error",
                "field": _field_name(tuple(item.get("loc", ()))),
                "message": item.get("msg", "Invalid value"),
            }
            for item in exc.errors()
        ]
        return JSONResponse(status_code=400, content=error_envelope("Request validation failed", errors))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        error_id = str(uuid.uuid4())
        logger.exception("request.unhandled_error | %s", {"error_id": error_id})
        return JSONResponse(
            status_code=500,
            content=error_envelope(
                "Unexpected internal error",
                [{"code": "internal_error", "message": "Unexpected internal error", "error_id": error_id}],
            ),
        )

    @app.middleware("http")
    async def request_timeout_middleware(request: Request, call_next):  # type: ignore[override]
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.request_timeout_seconds)
        except asyncio.TimeoutError:
            error_id = str(uuid.uuid4())
            logger.warning("request.timeout | %s", {"error_id": error_id, "path": request.url.path})
            return JSONResponse(
                status_code=504,
                content=error_envelope(
                    "Request timed out",
                    [{"code": "request_timeout", "message": "Request timed out", "error_id": error_id}],
                ),
            )

    app.include_router(health.router)
    app.include_router(catalog.router)
    app.include_router(dashboards.router)
    app.include_router(charts.router)
    app.include_router(jobs.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
