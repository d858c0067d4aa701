from __future__ import annotations

from typing import Any

from chartdeck.datasources.base import DatasourceAdapter
from chartdeck.datasources.inline import InlineAdapter
from chartdeck.datasources.postgres import PostgresAdapter
from chartdeck.datasources.sqlalchemy_adapter import SqlAlchemyAdapter
from chartdeck.errors import ServiceError

SUPPORTED_CONNECTION_TYPES = ("postgres", "sqlalchemy", "inline")


def create_adapter(
    connection_type: str,
    connection_url: str | None,
    connection_config: dict[str, Any] | None = None,
) -> DatasourceAdapter:
    if connection_type == "inline":
        tables = (connection_config or {}).get("tables") or {}
        return InlineAdapter(tables)
    if connection_type not in SUPPORTED_CONNECTION_TYPES:
        raise ServiceError(
            status_code=400,
            code="unsupported_datasource",
            message=f"Unsupported datasource type: {connection_type}",
        )
    if not connection_url:
        raise ServiceError(status_code=400, code="missing_connection_url", message="Datasource has no connection URL")
    if connection_type == "postgres":
        return PostgresAdapter(connection_url)
    return SqlAlchemyAdapter(connection_url)
