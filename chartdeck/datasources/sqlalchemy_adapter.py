from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chartdeck.datasources.base import QueryParams, validate_read_only_sql
from chartdeck.errors import ServiceError


class SqlAlchemyAdapter:
    """Runs read-only SQL through any SQLAlchemy-supported URL in a worker thread."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Engine | None = None

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self._database_url, pool_pre_ping=True)
        return self._engine

    def _run(self, sql: str, params: dict[str, Any]) -> tuple[list[str], list[dict[str, Any]]]:
        with self._get_engine().connect() as conn:
            result = conn.execute(text(sql), params)
            columns = list(result.keys())
            rows = [dict(zip(columns, row)) for row in result.fetchall()]
        return columns, rows

    async def execute(
        self, *, sql: str, params: QueryParams, timeout_seconds: float
    ) -> tuple[list[str], list[dict[str, Any]]]:
        validate_read_only_sql(sql)
        if params is not None and not isinstance(params, Mapping):
            raise ServiceError(
                status_code=400,
                code="invalid_query_params",
                message="SQLAlchemy datasets take named parameters as an object",
            )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run, sql, dict(params or {})),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ServiceError(status_code=504, code="query_timeout", message="Query execution timed out") from exc
        except SQLAlchemyError as exc:
            raise ServiceError(status_code=500, code="datasource_error", message="Datasource execution failed") from exc

    async def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
