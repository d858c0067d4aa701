from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

from sqlalchemy.orm import Session

from chartdeck.datasources import DatasourceAdapter, create_adapter, redact_url, validate_read_only_sql
from chartdeck.errors import ServiceError, not_found
from chartdeck.models import DataSource, Dataset
from chartdeck.query_config import FilterSpec, QueryConfig
from chartdeck.schemas import DatasetCreateRequest, DataSourceCreateRequest
from chartdeck.security import CredentialVault
from chartdeck.services.canonicalizer import canonical_json

logger = logging.getLogger("uvicorn.error")

AdapterFactory = Callable[[str, str | None, dict[str, Any] | None], DatasourceAdapter]


@dataclass(frozen=True, slots=True)
class DatasetSnapshot:
    """Detached copy of a dataset and its datasource, safe to use outside the DB session."""

    id: int
    workspace_id: int
    name: str
    connection_type: str
    connection_url: str | None
    connection_config: dict[str, Any] = field(default_factory=dict)
    query_config: dict[str, Any] = field(default_factory=dict)
    schema_fields: tuple[str, ...] = ()


def _quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _qualified_name(name: str) -> str:
    parts = [part for part in name.split(".") if part]
    return ".".join(_quote_ident(part) for part in parts)


def schema_field_names(schema_config: dict[str, Any] | None) -> tuple[str, ...]:
    raw_fields = (schema_config or {}).get("fields") or []
    names: list[str] = []
    for item in raw_fields:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and item.get("name"):
            names.append(str(item["name"]))
    return tuple(names)


def validate_dataset_query_config(query_config: dict[str, Any]) -> None:
    if "rows" in query_config:
        rows = query_config["rows"]
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise ServiceError(status_code=400, code="invalid_dataset_query", message="'rows' must be a list of objects")
        return
    if query_config.get("sql"):
        validate_read_only_sql(str(query_config["sql"]))
        return
    if query_config.get("table"):
        return
    raise ServiceError(
        status_code=400,
        code="invalid_dataset_query",
        message="Dataset query_config requires one of 'sql', 'table' or 'rows'",
    )


def resolve_dataset_sql(snapshot: DatasetSnapshot) -> tuple[str, Any]:
    query_config = snapshot.query_config
    if query_config.get("sql"):
        return str(query_config["sql"]), query_config.get("params")
    if query_config.get("table"):
        return f"SELECT * FROM {_qualified_name(str(query_config['table']))}", None
    return f"SELECT * FROM {_quote_ident(f'dataset_{snapshot.id}')}", None


class DatasetQueryExecutor:
    def __init__(self, *, timeout_seconds: float, adapter_factory: AdapterFactory = create_adapter) -> None:
        self._timeout_seconds = timeout_seconds
        self._adapter_factory = adapter_factory
        self._adapters: dict[str, DatasourceAdapter] = {}

    def _adapter_for(self, snapshot: DatasetSnapshot) -> DatasourceAdapter:
        key = canonical_json([snapshot.connection_type, snapshot.connection_url, snapshot.connection_config])
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = self._adapter_factory(
                snapshot.connection_type,
                snapshot.connection_url,
                snapshot.connection_config,
            )
            self._adapters[key] = adapter
        return adapter

    async def fetch(self, snapshot: DatasetSnapshot) -> tuple[list[str], list[dict[str, Any]]]:
        if "rows" in snapshot.query_config:
            rows = copy.deepcopy(list(snapshot.query_config.get("rows") or []))
            columns: list[str] = []
            for row in rows:
                for key in row:
                    if key not in columns:
                        columns.append(key)
            return columns, rows

        sql, params = resolve_dataset_sql(snapshot)
        adapter = self._adapter_for(snapshot)
        started = perf_counter()
        try:
            columns, rows = await adapter.execute(sql=sql, params=params, timeout_seconds=self._timeout_seconds)
        except ServiceError as exc:
            logger.warning(
                "datasource.query | %s",
                {
                    "dataset_id": snapshot.id,
                    "datasource": redact_url(snapshot.connection_url),
                    "status": "error",
                    "code": exc.code,
                    "duration_ms": int((perf_counter() - started) * 1000),
                },
            )
            raise
        logger.info(
            "datasource.query | %s",
            {
                "dataset_id": snapshot.id,
                "datasource": redact_url(snapshot.connection_url),
                "status": "ok",
                "row_count": len(rows),
                "duration_ms": int((perf_counter() - started) * 1000),
            },
        )
        return columns, rows

    async def aclose(self) -> None:
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            await adapter.close()


def _snapshot(dataset: Dataset, vault: CredentialVault) -> DatasetSnapshot:
    datasource = dataset.datasource
    connection_url = vault.decrypt(datasource.connection_url) if datasource.connection_url else None
    return DatasetSnapshot(
        id=dataset.id,
        workspace_id=dataset.workspace_id,
        name=dataset.name,
        connection_type=datasource.connection_type,
        connection_url=connection_url,
        connection_config=copy.deepcopy(datasource.connection_config or {}),
        query_config=copy.deepcopy(dataset.query_config or {}),
        schema_fields=schema_field_names(dataset.schema_config),
    )


def load_dataset_snapshots(
    db: Session,
    *,
    workspace_id: int,
    dataset_ids: Iterable[int],
    vault: CredentialVault,
) -> list[DatasetSnapshot]:
    """Snapshot datasets in the given order; each must be active and in the workspace."""
    ids = list(dict.fromkeys(int(item) for item in dataset_ids))
    if not ids:
        raise ServiceError(status_code=400, code="invalid_dataset", message="At least one dataset is required")
    datasets = (
        db.query(Dataset)
        .filter(Dataset.id.in_(ids), Dataset.workspace_id == workspace_id, Dataset.is_active == True)  # noqa: E712
        .all()
    )
    by_id = {item.id: item for item in datasets}
    missing = [item for item in ids if item not in by_id or not by_id[item].datasource.is_active]
    if missing:
        raise ServiceError(
            status_code=400,
            code="invalid_dataset",
            message="Datasets not found or inactive in this workspace",
            details={"dataset_ids": missing},
        )
    return [_snapshot(by_id[item], vault) for item in ids]


def validate_query_fields(
    query_config: QueryConfig,
    filters: Iterable[FilterSpec],
    snapshots: Iterable[DatasetSnapshot],
) -> None:
    snapshots = list(snapshots)
    if not snapshots or any(not item.schema_fields for item in snapshots):
        return
    known: set[str] = set()
    for item in snapshots:
        known.update(item.schema_fields)
    referenced = query_config.referenced_fields()
    referenced.update(item.field for item in filters)
    unknown = sorted(referenced - known)
    if unknown:
        raise ServiceError(
            status_code=400,
            code="invalid_query_config",
            message=f"Unknown fields in chart query: {', '.join(unknown)}",
            details={"fields": unknown},
        )


def list_datasources(db: Session, *, workspace_id: int) -> list[DataSource]:
    return (
        db.query(DataSource)
        .filter(DataSource.workspace_id == workspace_id, DataSource.is_active == True)  # noqa: E712
        .order_by(DataSource.name.asc())
        .all()
    )


def create_datasource(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    payload: DataSourceCreateRequest,
    vault: CredentialVault,
) -> DataSource:
    if payload.connection_type != "inline" and not payload.connection_url:
        raise ServiceError(status_code=400, code="missing_connection_url", message="connection_url is required")
    datasource = DataSource(
        workspace_id=workspace_id,
        name=payload.name,
        description=payload.description,
        connection_type=payload.connection_type,
        connection_url=vault.encrypt(payload.connection_url) if payload.connection_url else None,
        connection_config=payload.connection_config,
        created_by_id=user_id,
    )
    db.add(datasource)
    db.commit()
    db.refresh(datasource)
    logger.info(
        "datasource.created | %s",
        {"datasource_id": datasource.id, "workspace_id": workspace_id, "url": redact_url(payload.connection_url)},
    )
    return datasource


def list_datasets(db: Session, *, workspace_id: int, datasource_id: int | None = None) -> list[Dataset]:
    query = db.query(Dataset).filter(Dataset.workspace_id == workspace_id, Dataset.is_active == True)  # noqa: E712
    if datasource_id is not None:
        query = query.filter(Dataset.datasource_id == datasource_id)
    return query.order_by(Dataset.name.asc()).all()


def create_dataset(db: Session, *, workspace_id: int, payload: DatasetCreateRequest) -> Dataset:
    datasource = (
        db.query(DataSource)
        .filter(DataSource.id == payload.datasource_id, DataSource.workspace_id == workspace_id)
        .first()
    )
    if not datasource:
        raise not_found("datasource", payload.datasource_id)
    validate_dataset_query_config(payload.query_config)
    dataset = Dataset(
        workspace_id=workspace_id,
        datasource_id=datasource.id,
        name=payload.name,
        description=payload.description,
        query_config=payload.query_config,
        schema_config=payload.schema_config,
    )
    db.add(dataset)
    db.commit()
    db.refresh(dataset)
    return dataset
