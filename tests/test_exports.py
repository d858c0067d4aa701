import csv
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from chartdeck.errors import ServiceError
from chartdeck.schemas import ChartDataResult, ChartSlot, DashboardDataResult
from chartdeck.services.exports import ChartExporter, validate_export_format

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _chart_result(chart_id: int, rows: list[dict]) -> ChartDataResult:
    columns = list(rows[0]) if rows else []
    return ChartDataResult(
        chart_id=chart_id,
        columns=columns,
        rows=rows,
        row_count=len(rows),
        cached=False,
        generated_at=NOW,
        execution_time_ms=1,
        cache_key=f"chart:{chart_id}:abc",
    )


def test_export_format_is_validated() -> None:
    assert validate_export_format(" CSV ") == "csv"
    with pytest.raises(ServiceError) as exc_info:
        validate_export_format("xlsx")
    assert exc_info.value.code == "unsupported_export_format"


def test_chart_csv_export_escapes_formulas(tmp_path: Path) -> None:
    exporter = ChartExporter(tmp_path)
    data = _chart_result(1, [{"name": "=SUM(A1)", "total": 10}, {"name": "plain", "total": 20}])

    exported = exporter.export_chart(workspace_id=3, name="Revenue by Region", data=data, fmt="csv")

    assert exported.file_path.parent == tmp_path / "3"
    assert exported.file_name.startswith("revenue_by_region_")
    assert exported.row_count == 2
    with exported.file_path.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert rows == [{"name": "'=SUM(A1)", "total": "10"}, {"name": "plain", "total": "20"}]


def test_dashboard_json_and_csv_exports(tmp_path: Path) -> None:
    exporter = ChartExporter(tmp_path)
    data = DashboardDataResult(
        dashboard_id=9,
        charts=[
            ChartSlot(chart_id=1, name="A", chart_type="kpi", status="ok", data=_chart_result(1, [{"revenue": 5}])),
            ChartSlot(chart_id=2, name="B", chart_type="kpi", status="error", error={"code": "chart_timeout"}),
        ],
        generated_at=NOW,
        failed_count=1,
    )

    as_json = exporter.export_dashboard(workspace_id=1, name="Sales", data=data, fmt="json")
    payload = json.loads(as_json.file_path.read_text(encoding="utf-8"))
    assert payload["dashboard_id"] == 9
    assert payload["charts"][1]["error"] == {"code": "chart_timeout"}

    as_csv = exporter.export_dashboard(workspace_id=1, name="Sales", data=data, fmt="csv")
    with as_csv.file_path.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert rows == [{"chart_id": "1", "revenue": "5"}]
    assert as_csv.row_count == 1


def test_resolve_blocks_path_traversal(tmp_path: Path) -> None:
    exporter = ChartExporter(tmp_path)
    exported = exporter.export_chart(workspace_id=1, name="x", data=_chart_result(1, [{"a": 1}]), fmt="json")

    assert exporter.resolve(1, exported.file_name) == exported.file_path.resolve()
    with pytest.raises(ServiceError):
        exporter.resolve(1, "../../etc/passwd")
    with pytest.raises(ServiceError):
        exporter.resolve(2, exported.file_name)
