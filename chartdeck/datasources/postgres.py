from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from psycopg import AsyncConnection

from chartdeck.datasources.base import QueryParams, validate_read_only_sql
from chartdeck.errors import ServiceError


class PostgresAdapter:
    def __init__(self, database_url: str) -> None:
        self._database_url = database_url.replace("postgresql+psycopg://", "postgresql://", 1)

    async def execute(
        self, *, sql: str, params: QueryParams, timeout_seconds: float
    ) -> tuple[list[str], list[dict[str, Any]]]:
        validate_read_only_sql(sql)
        bound: Any = dict(params) if isinstance(params, Mapping) else list(params or [])
        conn: AsyncConnection[Any] | None = None
        try:
            conn = await asyncio.wait_for(AsyncConnection.connect(self._database_url), timeout=timeout_seconds)
            await conn.set_read_only(True)
            result = await asyncio.wait_for(conn.execute(sql, bound or None), timeout=timeout_seconds)
            rows = await result.fetchall()
            columns = [desc[0] for desc in result.description or []]
            dict_rows: list[dict[str, Any]] = []
            for row in rows:
                dict_rows.append({column: row[idx] for idx, column in enumerate(columns)})
            return columns, dict_rows
        except asyncio.TimeoutError as exc:
            raise ServiceError(status_code=504, code="query_timeout", message="Query execution timed out") from exc
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(status_code=500, code="datasource_error", message="Datasource execution failed") from exc
        finally:
            if conn:
                await conn.close()

    async def close(self) -> None:
        return None
