from chartdeck.datasources.base import DatasourceAdapter, redact_url, validate_read_only_sql
from chartdeck.datasources.factory import SUPPORTED_CONNECTION_TYPES, create_adapter

__all__ = [
    "DatasourceAdapter",
    "SUPPORTED_CONNECTION_TYPES",
    "create_adapter",
    "redact_url",
    "validate_read_only_sql",
]
