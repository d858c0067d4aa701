from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from chartdeck.errors import ServiceError

QueryParams = Sequence[Any] | Mapping[str, Any] | None

_DANGEROUS_PATTERN = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|merge|call|execute|copy|vacuum|analyze|refresh|reindex|attach|pragma)\b",
    re.IGNORECASE,
)


def validate_read_only_sql(sql: str) -> None:
    normalized = " ".join(sql.strip().split())
    lowered = normalized.lower().strip("; ").strip()
    if not lowered:
        raise ServiceError(status_code=400, code="empty_query", message="Empty query")
    if ";" in lowered:
        raise ServiceError(status_code=400, code="multiple_statements", message="Multiple statements are not allowed")
    if not (lowered.startswith("select ") or lowered.startswith("with ")):
        raise ServiceError(status_code=400, code="read_only_only", message="Only read-only SELECT statements are allowed")
    if _DANGEROUS_PATTERN.search(lowered):
        raise ServiceError(status_code=400, code="dangerous_sql", message="Dangerous SQL operation blocked")


def redact_url(url: str | None) -> str | None:
    if not url or "://" not in url or "@" not in url:
        return url

    scheme, remainder = url.split("://", 1)
    credentials, location = remainder.rsplit("@", 1)
    if not credentials:
        return url

    if ":" in credentials:
        username, _password = credentials.split(":", 1)
        safe_credentials = f"{username}:***"
    else:
        safe_credentials = "***"
    return f"{scheme}://{safe_credentials}@{location}"


class DatasourceAdapter(Protocol):
    async def execute(
        self, *, sql: str, params: QueryParams, timeout_seconds: float
    ) -> tuple[list[str], list[dict[str, Any]]]: ...

    async def close(self) -> None: ...
