import logging

import pytest

from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec, QueryConfig
from chartdeck.services.filters import (
    apply_filters,
    build_sql,
    loose_equals,
    merge_filters,
    normalize_filters,
    to_number,
)

ROWS = [
    {"id": 1, "region": "SP", "status": "active", "revenue": 100, "label": "Alpha"},
    {"id": 2, "region": "RJ", "status": "inactive", "revenue": "250.5", "label": "beta"},
    {"id": 3, "region": "SP", "status": "active", "revenue": None, "label": "Gamma"},
    {"id": 4, "region": "MG", "status": "active", "revenue": 40, "label": None},
]


def _ids(rows):
    return [row["id"] for row in rows]


def test_equals_compares_numbers_and_numeric_strings_loosely() -> None:
    assert loose_equals(1, "1")
    assert loose_equals("2.50", 2.5)
    assert not loose_equals(None, 0)
    assert loose_equals(None, None)
    assert to_number(True) is None
    assert to_number("  ") is None


def test_each_operator_selects_the_expected_rows() -> None:
    cases = [
        (FilterSpec(field="region", operator="equals", value="SP"), [1, 3]),
        (FilterSpec(field="region", operator="not_equals", value="SP"), [2, 4]),
        (FilterSpec(field="label", operator="contains", value="ET"), [2]),
        (FilterSpec(field="revenue", operator="greater_than", value=50), [1, 2]),
        (FilterSpec(field="revenue", operator="less_than", value="100"), [4]),
        (FilterSpec(field="region", operator="in", value=["RJ", "MG"]), [2, 4]),
        (FilterSpec(field="revenue", operator="between", value=[40, 100]), [1, 4]),
    ]
    for item, expected in cases:
        assert _ids(apply_filters(ROWS, [item])) == expected, item.operator


def test_filters_are_combined_with_and_and_exclude_negates() -> None:
    filters = [
        FilterSpec(field="status", value="active"),
        FilterSpec(field="region", operator="equals", value="SP", exclude=True),
    ]
    assert _ids(apply_filters(ROWS, filters)) == [4]


def test_unknown_operator_is_skipped_and_logged_once(caplog: pytest.LogCaptureFixture) -> None:
    item = FilterSpec(field="region", operator="regex", value="^S")
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        result = apply_filters(ROWS, [item])
    assert _ids(result) == [1, 2, 3, 4]
    assert sum("filter.unknown_operator" in record.getMessage() for record in caplog.records) == 1


def test_unknown_operator_passes_every_row_even_when_excluded() -> None:
    item = FilterSpec(field="region", operator="regex", value="^S", exclude=True)
    combined = [item, FilterSpec(field="status", value="active")]
    assert _ids(apply_filters(ROWS, [item])) == [1, 2, 3, 4]
    assert _ids(apply_filters(ROWS, combined)) == _ids(apply_filters(ROWS, combined[1:]))


def test_apply_filters_returns_copies() -> None:
    result = apply_filters(ROWS, [])
    result[0]["region"] = "XX"
    assert ROWS[0]["region"] == "SP"


def test_legacy_filter_shape_and_operator_aliases() -> None:
    item = FilterSpec.model_validate({"column": "region", "op": "NEQ", "value": "SP", "include": False})
    assert item.field == "region"
    assert item.operator == "not_equals"
    assert item.exclude is True


def test_normalize_filters_accepts_mapping_and_list() -> None:
    from_mapping = normalize_filters({"status": "active", "region": ["SP", "RJ"], "revenue": {"operator": "gt", "value": 10}})
    assert [(item.field, item.operator) for item in from_mapping] == [
        ("status", "equals"),
        ("region", "in"),
        ("revenue", "greater_than"),
    ]
    from_list = normalize_filters([{"field": "status", "operator": "equals", "value": "active"}])
    assert from_list[0].value == "active"
    assert normalize_filters(None) == []


def test_normalize_filters_rejects_scalars() -> None:
    with pytest.raises(ServiceError) as exc_info:
        normalize_filters("status=active")
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "invalid_filters"


def test_merge_filters_replaces_by_field_and_appends_new_ones() -> None:
    persisted = [FilterSpec(field="status", value="active"), FilterSpec(field="region", value="SP")]
    overrides = [FilterSpec(field="region", value="RJ"), FilterSpec(field="year", value=2024)]
    merged = merge_filters(persisted, overrides)
    assert [(item.field, item.value) for item in merged] == [("status", "active"), ("region", "RJ"), ("year", 2024)]
    merged[0].value = "changed"
    assert persisted[0].value == "active"


def test_build_sql_renders_grouped_query_with_filters_sort_and_limit() -> None:
    config = QueryConfig.model_validate(
        {
            "dimensions": ["region"],
            "measures": [{"field": "revenue", "agg": "sum"}],
            "sort": [{"field": "revenue", "direction": "desc"}],
        }
    )
    sql = build_sql(
        "SELECT * FROM sales;",
        config,
        [FilterSpec(field="status", value="o'k"), FilterSpec(field="region", operator="in", value=["SP", "RJ"])],
        limit=5,
    )
    assert sql == (
        'SELECT "region", SUM("revenue") AS "revenue" FROM (SELECT * FROM sales) AS source '
        "WHERE \"status\" = 'o''k' AND \"region\" IN ('SP', 'RJ') "
        'GROUP BY "region" ORDER BY "revenue" DESC NULLS LAST LIMIT 5'
    )
