from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from functools import cmp_to_key
from typing import Any

from chartdeck.query_config import FilterSpec, MeasureSpec, QueryConfig, SortSpec
from chartdeck.services.canonicalizer import canonical_json
from chartdeck.services.filters import apply_filters, to_number


@dataclass(slots=True)
class ProcessedRows:
    columns: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def _sum(values: list[Any]) -> int | float | None:
    """Exact integer total while every value is an int; fsum once any other number shows up."""
    integer_total = 0
    fractional: list[float] = []
    seen = False
    for value in values:
        if isinstance(value, int) and not isinstance(value, bool):
            integer_total += value
            seen = True
            continue
        number = to_number(value)
        if number is None:
            continue
        fractional.append(number)
        seen = True
    if not seen:
        return None
    if not fractional:
        return integer_total
    return math.fsum([integer_total, *fractional])


def _avg(values: list[Any]) -> float | None:
    numbers = [number for number in (to_number(value) for value in values) if number is not None]
    if not numbers:
        return None
    return sum(numbers) / len(numbers)


def _extreme(values: list[Any], *, pick_max: bool) -> Any:
    present = [value for value in values if value is not None]
    if not present:
        return None
    numbers = [to_number(value) for value in present]
    if all(number is not None for number in numbers):
        index = numbers.index(max(numbers) if pick_max else min(numbers))
        return present[index]
    texts = [str(value) for value in present]
    index = texts.index(max(texts) if pick_max else min(texts))
    return present[index]


def aggregate(measure: MeasureSpec, rows: Sequence[Mapping[str, Any]]) -> Any:
    if measure.agg == "count":
        if measure.field == "*":
            return len(rows)
        return sum(1 for row in rows if row.get(measure.field) is not None)

    values = [row.get(measure.field) for row in rows]
    if measure.agg == "sum":
        return _sum(values)
    if measure.agg == "avg":
        return _avg(values)
    if measure.agg == "min":
        return _extreme(values, pick_max=False)
    if measure.agg == "max":
        return _extreme(values, pick_max=True)
    if measure.agg == "distinct_count":
        return len({canonical_json(value) for value in values if value is not None})
    raise ValueError(f"Unsupported aggregation '{measure.agg}'")


def _compare_values(left: Any, right: Any) -> int:
    if left is None and right is None:
        return 0
    if left is None:
        return 1
    if right is None:
        return -1
    left_number = to_number(left)
    right_number = to_number(right)
    if left_number is not None and right_number is not None:
        return (left_number > right_number) - (left_number < right_number)
    left_text = str(left)
    right_text = str(right)
    return (left_text > right_text) - (left_text < right_text)


def sort_rows(rows: list[dict[str, Any]], sort: Sequence[SortSpec]) -> list[dict[str, Any]]:
    """Stable multi-key sort; nulls go last in both directions."""
    if not sort:
        return list(rows)

    def _compare(left: Mapping[str, Any], right: Mapping[str, Any]) -> int:
        for item in sort:
            left_value = left.get(item.field)
            right_value = right.get(item.field)
            result = _compare_values(left_value, right_value)
            if result == 0:
                continue
            if item.direction == "desc" and left_value is not None and right_value is not None:
                result = -result
            return result
        return 0

    return sorted(rows, key=cmp_to_key(_compare))


def _group_value(value: Any) -> Any:
    # 1, 1.0 and "1" share a group, matching loose equality in filters.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    number = to_number(value)
    if number is not None and not math.isnan(number):
        return number
    return canonical_json(value)


def _normalize_scalar(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


class ChartDataProcessor:
    """In-memory evaluation of a chart query.

    The stages always run in the same order: filter, group, aggregate, sort, limit.
    """

    def __init__(self, *, max_rows: int | None = None) -> None:
        self._max_rows = max_rows

    def process(
        self,
        rows: Iterable[Mapping[str, Any]],
        config: QueryConfig,
        *,
        filters: Sequence[FilterSpec] | None = None,
        limit: int | None = None,
    ) -> ProcessedRows:
        effective_filters = config.filters if filters is None else filters
        filtered = apply_filters(rows, effective_filters)

        if config.dimensions or config.measures:
            columns = config.output_columns
            output = self._group(filtered, config)
        else:
            columns = self._passthrough_columns(filtered)
            output = [{key: _normalize_scalar(value) for key, value in row.items()} for row in filtered]

        output = sort_rows(output, config.sort)

        effective_limit = limit if limit is not None else config.limit
        if self._max_rows is not None:
            effective_limit = self._max_rows if effective_limit is None else min(effective_limit, self._max_rows)
        if effective_limit is not None:
            output = output[:effective_limit]
        return ProcessedRows(columns=columns, rows=output)

    def _group(self, rows: list[dict[str, Any]], config: QueryConfig) -> list[dict[str, Any]]:
        if not config.dimensions:
            return [{measure.output_name: aggregate(measure, rows) for measure in config.measures}]

        groups: dict[tuple[Any, ...], list[dict[str, Any]]] = {}
        for row in rows:
            key = tuple(_group_value(row.get(dimension)) for dimension in config.dimensions)
            groups.setdefault(key, []).append(row)

        output: list[dict[str, Any]] = []
        for members in groups.values():
            first = members[0]
            record = {dimension: _normalize_scalar(first.get(dimension)) for dimension in config.dimensions}
            for measure in config.measures:
                record[measure.output_name] = aggregate(measure, members)
            output.append(record)
        return output

    @staticmethod
    def _passthrough_columns(rows: list[dict[str, Any]]) -> list[str]:
        columns: list[str] = []
        seen: set[str] = set()
        for row in rows:
            for key in row:
                if key not in seen:
                    seen.add(key)
                    columns.append(key)
        return columns
