from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec, QueryConfig

logger = logging.getLogger("uvicorn.error")

Row = Mapping[str, Any]
RowPredicate = Callable[[Row], bool]


def to_number(value: Any) -> float | None:
    """Numeric view of a value; numeric strings count, booleans and blanks do not."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return float(Decimal(stripped))
        except (InvalidOperation, ValueError):
            return None
    return None


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if left == right:
        return True
    left_number = to_number(left)
    right_number = to_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return _text(left) == _text(right)


def _evaluate(row_value: Any, operator: str, value: Any) -> bool:
    if operator == "equals":
        return loose_equals(row_value, value)
    if operator == "not_equals":
        return not loose_equals(row_value, value)
    if operator == "contains":
        if row_value is None or value is None:
            return False
        return _text(value).lower() in _text(row_value).lower()
    if operator in {"greater_than", "less_than"}:
        left = to_number(row_value)
        right = to_number(value)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "in":
        if not isinstance(value, (list, tuple)):
            return False
        return any(loose_equals(row_value, candidate) for candidate in value)
    if operator == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            return False
        current = to_number(row_value)
        low = to_number(value[0])
        high = to_number(value[1])
        if current is None or low is None or high is None:
            return False
        return low <= current <= high
    return True


def matches(row: Row, item: FilterSpec) -> bool:
    if not item.is_known_operator:
        return True
    result = _evaluate(row.get(item.field), item.operator, item.value)
    return not result if item.exclude else result


def build_predicate(filters: Iterable[FilterSpec]) -> RowPredicate:
    """Compile filters into a single row predicate (logical AND).

    Unknown operators are dropped from the predicate and reported once here,
    not once per row.
    """
    active: list[FilterSpec] = []
    for item in filters:
        if not item.is_known_operator:
            logger.warning(
                "filter.unknown_operator | %s",
                {"field": item.field, "operator": item.operator},
            )
            continue
        active.append(item)

    def _predicate(row: Row) -> bool:
        return all(matches(row, item) for item in active)

    return _predicate


def apply_filters(rows: Iterable[Row], filters: Iterable[FilterSpec]) -> list[dict[str, Any]]:
    predicate = build_predicate(filters)
    return [dict(row) for row in rows if predicate(row)]


def normalize_filters(raw: Any) -> list[FilterSpec]:
    """Accept a list of filter objects or a ``{field: value}`` mapping."""
    if raw is None:
        return []
    if isinstance(raw, FilterSpec):
        return [raw]
    if isinstance(raw, Mapping):
        normalized: list[FilterSpec] = []
        for field, value in raw.items():
            if isinstance(value, Mapping):
                normalized.append(FilterSpec.model_validate({"field": field, **value}))
            elif isinstance(value, (list, tuple)):
                normalized.append(FilterSpec(field=str(field), operator="in", value=list(value)))
            else:
                normalized.append(FilterSpec(field=str(field), operator="equals", value=value))
        return normalized
    if isinstance(raw, (list, tuple)):
        items: list[FilterSpec] = []
        for item in raw:
            if isinstance(item, FilterSpec):
                items.append(item)
            elif isinstance(item, Mapping):
                items.append(FilterSpec.model_validate(item))
            else:
                raise ServiceError(
                    status_code=400,
                    code="invalid_filters",
                    message="Each filter must be an object with 'field' and 'operator'",
                )
        return items
    raise ServiceError(
        status_code=400,
        code="invalid_filters",
        message="Filters must be a list of filter objects or a field/value mapping",
    )


def merge_filters(persisted: Iterable[FilterSpec], overrides: Iterable[FilterSpec] | None) -> list[FilterSpec]:
    merged = [item.model_copy(deep=True) for item in persisted]
    if not overrides:
        return merged
    positions = {item.field: index for index, item in enumerate(merged)}
    for override in overrides:
        copy = override.model_copy(deep=True)
        index = positions.get(copy.field)
        if index is None:
            positions[copy.field] = len(merged)
            merged.append(copy)
        else:
            merged[index] = copy
    return merged


def _quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return "'" + _text(value).replace("'", "''") + "'"


def _render_condition(item: FilterSpec) -> str | None:
    column = _quote_ident(item.field)
    value = item.value
    operator = item.operator
    if operator == "equals":
        condition = f"{column} IS NULL" if value is None else f"{column} = {_literal(value)}"
    elif operator == "not_equals":
        condition = f"{column} IS NOT NULL" if value is None else f"{column} <> {_literal(value)}"
    elif operator == "contains":
        escaped = _text(value).replace("'", "''")
        condition = f"LOWER(CAST({column} AS TEXT)) LIKE LOWER('%{escaped}%')"
    elif operator == "greater_than":
        condition = f"{column} > {_literal(value)}"
    elif operator == "less_than":
        condition = f"{column} < {_literal(value)}"
    elif operator == "in":
        if not isinstance(value, (list, tuple)) or not value:
            condition = "1 = 0"
        else:
            condition = f"{column} IN ({', '.join(_literal(item) for item in value)})"
    elif operator == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            condition = "1 = 0"
        else:
            condition = f"{column} BETWEEN {_literal(value[0])} AND {_literal(value[1])}"
    else:
        return None
    return f"NOT ({condition})" if item.exclude else condition


def build_where_clause(filters: Iterable[FilterSpec]) -> str:
    parts = [part for part in (_render_condition(item) for item in filters) if part]
    return " AND ".join(parts)


def _measure_sql(agg: str, field: str) -> str:
    if agg == "count":
        return "COUNT(*)" if field == "*" else f"COUNT({_quote_ident(field)})"
    if agg == "distinct_count":
        return f"COUNT(DISTINCT {_quote_ident(field)})"
    return f"{agg.upper()}({_quote_ident(field)})"


def build_sql(
    dataset_sql: str,
    query_config: QueryConfig,
    filters: Iterable[FilterSpec],
    limit: int | None = None,
) -> str:
    """Render the SQL equivalent of a chart query, used for display only."""
    select_parts = [_quote_ident(item) for item in query_config.dimensions]
    for measure in query_config.measures:
        select_parts.append(f"{_measure_sql(measure.agg, measure.field)} AS {_quote_ident(measure.output_name)}")
    select_sql = ", ".join(select_parts) if select_parts else "*"

    source = dataset_sql.strip().rstrip(";").strip()
    distinct = "DISTINCT " if query_config.dimensions and not query_config.measures else ""
    sql = f"SELECT {distinct}{select_sql} FROM ({source}) AS source"
    where_sql = build_where_clause(filters)
    if where_sql:
        sql += f" WHERE {where_sql}"
    if query_config.dimensions and query_config.measures:
        sql += " GROUP BY " + ", ".join(_quote_ident(item) for item in query_config.dimensions)
    if query_config.sort:
        order_parts = [f"{_quote_ident(item.field)} {item.direction.upper()} NULLS LAST" for item in query_config.sort]
        sql += " ORDER BY " + ", ".join(order_parts)
    effective_limit = limit if limit is not None else query_config.limit
    if effective_limit is not None:
        sql += f" LIMIT {int(effective_limit)}"
    return sql
