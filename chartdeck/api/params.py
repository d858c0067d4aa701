from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec
from chartdeck.services.filters import normalize_filters


def parse_filters_param(raw: Any) -> list[FilterSpec] | None:
    """Decode the ``filters`` query string (JSON list or ``{field: value}`` object)."""
    if raw is None or raw == "":
        return None
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ServiceError(status_code=400, code="invalid_filters", message="filters must be valid JSON") from exc
    try:
        return normalize_filters(value)
    except ValidationError as exc:
        raise ServiceError(
            status_code=400,
            code="invalid_filters",
            message="Invalid filter definition",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
