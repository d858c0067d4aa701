from __future__ import annotations

import copy
import re
from typing import Any

from chartdeck.datasources.base import QueryParams
from chartdeck.errors import ServiceError

_SELECT_ALL_RE = re.compile(r'^\s*select\s+\*\s+from\s+"?([A-Za-z_][A-Za-z0-9_]*)"?\s*;?\s*$', re.IGNORECASE)


class InlineAdapter:
    """Static tables kept in the datasource configuration.

    Only ``SELECT * FROM <table>`` is understood; shaping happens in the processor.
    """

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._tables = tables or {}

    async def execute(
        self, *, sql: str, params: QueryParams, timeout_seconds: float
    ) -> tuple[list[str], list[dict[str, Any]]]:
        match = _SELECT_ALL_RE.match(sql)
        if not match:
            raise ServiceError(
                status_code=400,
                code="unsupported_inline_query",
                message="Inline datasources only support SELECT * FROM <table>",
            )
        table = match.group(1)
        if table not in self._tables:
            raise ServiceError(status_code=404, code="table_not_found", message=f"Inline table '{table}' not found")
        rows = copy.deepcopy(self._tables[table])
        columns: list[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
        return columns, rows

    async def close(self) -> None:
        return None
