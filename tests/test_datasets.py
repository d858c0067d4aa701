import asyncio
import sqlite3
from pathlib import Path

import pytest

from chartdeck.datasources import create_adapter, redact_url, validate_read_only_sql
from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec, QueryConfig
from chartdeck.services.datasets import (
    DatasetQueryExecutor,
    DatasetSnapshot,
    resolve_dataset_sql,
    validate_dataset_query_config,
    validate_query_fields,
)


def _sqlite_file(tmp_path: Path) -> str:
    path = tmp_path / "sales.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE sales (region TEXT, status TEXT, revenue INTEGER)")
    conn.executemany(
        "INSERT INTO sales VALUES (?, ?, ?)",
        [("SP", "active", 100), ("RJ", "inactive", 40), ("SP", "active", 60)],
    )
    conn.commit()
    conn.close()
    return f"sqlite:///{path}"


def _snapshot(**overrides) -> DatasetSnapshot:
    payload = {
        "id": 1,
        "workspace_id": 1,
        "name": "sales",
        "connection_type": "sqlalchemy",
        "connection_url": None,
        "query_config": {"table": "sales"},
    }
    payload.update(overrides)
    return DatasetSnapshot(**payload)


@pytest.mark.parametrize(
    ("sql", "code"),
    [
        ("", "empty_query"),
        ("SELECT 1; SELECT 2", "multiple_statements"),
        ("UPDATE sales SET revenue = 0", "read_only_only"),
        ("WITH x AS (DELETE FROM sales RETURNING *) SELECT * FROM x", "dangerous_sql"),
    ],
)
def test_read_only_guard_rejects_writes(sql: str, code: str) -> None:
    with pytest.raises(ServiceError) as exc_info:
        validate_read_only_sql(sql)
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == code


def test_read_only_guard_accepts_select_and_cte() -> None:
    validate_read_only_sql("SELECT created_at, last_update FROM sales;")
    validate_read_only_sql("with totals as (select 1 as x) select * from totals")


def test_redact_url_hides_password() -> None:
    assert redact_url("postgresql://user:secret@db:5432/app") == "postgresql://user:***@db:5432/app"
    assert redact_url("sqlite:///tmp/app.db") == "sqlite:///tmp/app.db"


def test_resolve_dataset_sql_prefers_sql_then_table() -> None:
    assert resolve_dataset_sql(_snapshot(query_config={"sql": "SELECT 1", "params": {"a": 1}})) == ("SELECT 1", {"a": 1})
    assert resolve_dataset_sql(_snapshot(query_config={"table": "public.sales"})) == ('SELECT * FROM "public"."sales"', None)


def test_dataset_query_config_requires_a_source() -> None:
    validate_dataset_query_config({"rows": [{"a": 1}]})
    with pytest.raises(ServiceError) as exc_info:
        validate_dataset_query_config({})
    assert exc_info.value.code == "invalid_dataset_query"


def test_executor_reads_sqlite_through_sqlalchemy(tmp_path: Path) -> None:
    url = _sqlite_file(tmp_path)
    executor = DatasetQueryExecutor(timeout_seconds=5)
    snapshot = _snapshot(
        connection_url=url,
        query_config={"sql": "SELECT region, revenue FROM sales WHERE status = :status", "params": {"status": "active"}},
    )

    async def _run():
        try:
            return await executor.fetch(snapshot)
        finally:
            await executor.aclose()

    columns, rows = asyncio.run(_run())
    assert columns == ["region", "revenue"]
    assert rows == [{"region": "SP", "revenue": 100}, {"region": "SP", "revenue": 60}]


def test_executor_reuses_adapters_per_connection() -> None:
    created = []

    def factory(connection_type, connection_url, connection_config):
        adapter = create_adapter(connection_type, connection_url, connection_config)
        created.append(adapter)
        return adapter

    executor = DatasetQueryExecutor(timeout_seconds=5, adapter_factory=factory)
    snapshot = _snapshot(
        connection_type="inline",
        connection_config={"tables": {"sales": [{"region": "SP", "revenue": 1}]}},
    )

    async def _run():
        first = await executor.fetch(snapshot)
        second = await executor.fetch(snapshot)
        return first, second

    first, second = asyncio.run(_run())
    assert first == second == (["region", "revenue"], [{"region": "SP", "revenue": 1}])
    assert len(created) == 1


def test_inline_rows_are_returned_without_an_adapter() -> None:
    def factory(*_args):
        raise AssertionError("adapter should not be created")

    executor = DatasetQueryExecutor(timeout_seconds=5, adapter_factory=factory)
    snapshot = _snapshot(connection_type="inline", query_config={"rows": [{"a": 1}, {"a": 2, "b": 3}]})
    columns, rows = asyncio.run(executor.fetch(snapshot))
    assert columns == ["a", "b"]
    assert rows == [{"a": 1}, {"a": 2, "b": 3}]


def test_unknown_inline_table_is_not_found() -> None:
    executor = DatasetQueryExecutor(timeout_seconds=5)
    snapshot = _snapshot(connection_type="inline", connection_config={"tables": {}}, query_config={"table": "missing"})
    with pytest.raises(ServiceError) as exc_info:
        asyncio.run(executor.fetch(snapshot))
    assert exc_info.value.code == "table_not_found"


def test_unsupported_connection_type() -> None:
    with pytest.raises(ServiceError) as exc_info:
        create_adapter("mongodb", "mongodb://localhost")
    assert exc_info.value.code == "unsupported_datasource"


def test_query_fields_are_checked_against_declared_schema() -> None:
    snapshot = _snapshot(schema_fields=("region", "revenue"))
    config = QueryConfig.model_validate({"dimensions": ["region"], "measures": [{"field": "revenue", "agg": "sum"}]})
    validate_query_fields(config, [FilterSpec(field="region", value="SP")], [snapshot])

    with pytest.raises(ServiceError) as exc_info:
        validate_query_fields(config, [FilterSpec(field="status", value="active")], [snapshot])
    assert exc_info.value.code == "invalid_query_config"
    assert exc_info.value.details == {"fields": ["status"]}

    validate_query_fields(config, [FilterSpec(field="status", value="active")], [_snapshot()])
