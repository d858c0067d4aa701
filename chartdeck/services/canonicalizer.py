from __future__ import annotations

import hashlib
import json
from typing import Any

from chartdeck.query_config import FilterSpec, QueryConfig


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def canonicalize_chart_query(
    query_config: QueryConfig,
    filters: list[FilterSpec],
    limit: int | None,
) -> dict[str, Any]:
    """Key payload for a chart query.

    Only mapping keys and the filter list are reordered; values are hashed
    exactly as the filters evaluate them, so whitespace or precision
    differences give different keys.
    """
    payload = query_config.model_dump(mode="json", exclude={"filters"})
    # Dimension, measure and sort order change the output, so those lists keep their order.
    dumped_filters = [item.model_dump(mode="json") for item in filters]
    encoded_filters = {canonical_json(item): item for item in dumped_filters}
    return {
        "dimensions": payload.get("dimensions", []),
        "measures": payload.get("measures", []),
        "sort": payload.get("sort", []),
        "limit": limit if limit is not None else payload.get("limit"),
        "filters": [encoded_filters[key] for key in sorted(encoded_filters)],
    }


def build_cache_key(
    owner_id: str,
    query_config: QueryConfig,
    filters: list[FilterSpec],
    limit: int | None = None,
) -> str:
    canonical = canonicalize_chart_query(query_config, filters, limit)
    digest = hashlib.sha256(canonical_json(canonical).encode("utf-8")).hexdigest()
    return f"{owner_id}:{digest}"


def chart_owner(chart_id: int) -> str:
    return f"chart:{chart_id}"


def dashboard_owner(dashboard_id: int) -> str:
    return f"dashboard:{dashboard_id}"
