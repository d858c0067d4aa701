from __future__ import annotations

import asyncio
import csv
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from chartdeck.errors import ServiceError
from chartdeck.query_config import FilterSpec
from chartdeck.schemas import ChartDataResult, DashboardDataResult
from chartdeck.services.jobs import JobWork

if TYPE_CHECKING:
    from chartdeck.services.aggregator import DashboardAggregator, DashboardSnapshot
    from chartdeck.services.chart_data import ChartDataService, ChartExecutionPlan

SUPPORTED_EXPORT_FORMATS = ("csv", "json")
FORMULA_PREFIXES = ("=", "+", "-", "@")
_SLUG_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(slots=True)
class ExportedFile:
    format: str
    file_name: str
    file_path: Path
    file_size_bytes: int
    row_count: int

    def to_result(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "file_name": self.file_name,
            "file_path": str(self.file_path),
            "file_size_bytes": self.file_size_bytes,
            "row_count": self.row_count,
        }


def validate_export_format(value: str) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in SUPPORTED_EXPORT_FORMATS:
        raise ServiceError(
            status_code=400,
            code="unsupported_export_format",
            message=f"Unsupported export format '{value}'. Use one of: {', '.join(SUPPORTED_EXPORT_FORMATS)}",
        )
    return normalized


def _slugify(name: str) -> str:
    slug = _SLUG_PATTERN.sub("_", name.strip().lower()).strip("_")
    return slug or "export"


def _csv_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


class ChartExporter:
    """Writes chart and dashboard data to ``{export_dir}/{workspace_id}/``."""

    def __init__(self, export_dir: str | Path) -> None:
        self._export_dir = Path(export_dir)

    @property
    def export_dir(self) -> Path:
        return self._export_dir

    def _target(self, workspace_id: int, name: str, fmt: str) -> Path:
        directory = self._export_dir / str(workspace_id)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        return directory / f"{_slugify(name)}_{timestamp}.{fmt}"

    def _write_csv(self, path: Path, columns: list[str], rows: list[dict[str, Any]]) -> None:
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=columns, extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow({column: _csv_value(row.get(column)) for column in columns})

    def _write_json(self, path: Path, payload: Any) -> None:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, default=str)

    def _finish(self, path: Path, fmt: str, row_count: int) -> ExportedFile:
        return ExportedFile(
            format=fmt,
            file_name=path.name,
            file_path=path,
            file_size_bytes=path.stat().st_size,
            row_count=row_count,
        )

    def export_chart(self, *, workspace_id: int, name: str, data: ChartDataResult, fmt: str) -> ExportedFile:
        fmt = validate_export_format(fmt)
        path = self._target(workspace_id, name, fmt)
        if fmt == "csv":
            self._write_csv(path, data.columns, data.rows)
        else:
            self._write_json(path, data.model_dump(mode="json"))
        return self._finish(path, fmt, data.row_count)

    def export_dashboard(self, *, workspace_id: int, name: str, data: DashboardDataResult, fmt: str) -> ExportedFile:
        fmt = validate_export_format(fmt)
        path = self._target(workspace_id, name, fmt)
        row_count = sum(slot.data.row_count for slot in data.charts if slot.data is not None)
        if fmt == "csv":
            columns = ["chart_id"]
            rows: list[dict[str, Any]] = []
            for slot in data.charts:
                if slot.data is None:
                    continue
                for column in slot.data.columns:
                    if column not in columns:
                        columns.append(column)
                rows.extend({"chart_id": slot.chart_id, **row} for row in slot.data.rows)
            self._write_csv(path, columns, rows)
        else:
            self._write_json(path, data.model_dump(mode="json"))
        return self._finish(path, fmt, row_count)

    def resolve(self, workspace_id: int, file_name: str) -> Path:
        directory = (self._export_dir / str(workspace_id)).resolve()
        path = (directory / file_name).resolve()
        if path.parent != directory or not path.is_file():
            raise ServiceError(status_code=404, code="export_not_found", message="Export file not found")
        return path


def chart_export_work(
    chart_data: ChartDataService,
    exporter: ChartExporter,
    plan: ChartExecutionPlan,
    *,
    fmt: str,
    filters: list[FilterSpec] | None = None,
) -> JobWork:
    async def _work() -> dict[str, Any]:
        data = await chart_data.get_chart_data(plan, filter_overrides=filters)
        exported = await asyncio.to_thread(
            exporter.export_chart, workspace_id=plan.workspace_id, name=plan.name, data=data, fmt=fmt
        )
        return exported.to_result()

    return _work


def dashboard_export_work(
    aggregator: DashboardAggregator,
    exporter: ChartExporter,
    dashboard: DashboardSnapshot,
    plans: list[ChartExecutionPlan],
    *,
    workspace_id: int,
    name: str,
    fmt: str,
    filters: list[FilterSpec] | None = None,
) -> JobWork:
    async def _work() -> dict[str, Any]:
        data = await aggregator.get_dashboard_data(dashboard, plans, filters)
        exported = await asyncio.to_thread(
            exporter.export_dashboard, workspace_id=workspace_id, name=name, data=data, fmt=fmt
        )
        return exported.to_result()

    return _work
