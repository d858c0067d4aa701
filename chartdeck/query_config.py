from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

MeasureAgg = Literal["sum", "count", "avg", "min", "max", "distinct_count"]
SortDirection = Literal["asc", "desc"]
GlobalFilterSourceType = Literal["static", "query", "dataset"]

KNOWN_FILTER_OPERATORS = frozenset(
    {"equals", "not_equals", "contains", "greater_than", "less_than", "in", "between"}
)

_OPERATOR_ALIASES = {
    "eq": "equals",
    "=": "equals",
    "neq": "not_equals",
    "!=": "not_equals",
    "gt": "greater_than",
    ">": "greater_than",
    "lt": "less_than",
    "<": "less_than",
}


class FilterSpec(BaseModel):
    field: str
    operator: str = "equals"
    value: Any | None = None
    exclude: bool = False

    @model_validator(mode="before")
    @classmethod
    def adapt_legacy_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        next_values = dict(values)
        if "field" not in next_values and "column" in next_values:
            next_values["field"] = next_values.pop("column")
        if "operator" not in next_values and "op" in next_values:
            next_values["operator"] = next_values.pop("op")
        if "exclude" not in next_values and "include" in next_values:
            next_values["exclude"] = not bool(next_values.pop("include"))
        return next_values

    @field_validator("operator")
    @classmethod
    def normalize_operator(cls, value: str) -> str:
        # Unknown operators are kept as-is; evaluation treats them as pass-through.
        lowered = str(value or "").strip().lower()
        return _OPERATOR_ALIASES.get(lowered, lowered)

    @property
    def is_known_operator(self) -> bool:
        return self.operator in KNOWN_FILTER_OPERATORS


class MeasureSpec(BaseModel):
    field: str = "*"
    agg: MeasureAgg = "sum"
    alias: str | None = None

    @model_validator(mode="before")
    @classmethod
    def adapt_legacy_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        next_values = dict(values)
        if "agg" not in next_values:
            for legacy_key in ("function", "aggregation", "type", "op"):
                if legacy_key in next_values:
                    next_values["agg"] = next_values.pop(legacy_key)
                    break
        if isinstance(next_values.get("agg"), str):
            next_values["agg"] = next_values["agg"].strip().lower()
        if "field" not in next_values and "column" in next_values:
            next_values["field"] = next_values.pop("column")
        return next_values

    @model_validator(mode="after")
    def validate_field(self) -> "MeasureSpec":
        if self.field == "*" and self.agg != "count":
            raise ValueError(f"Aggregation '{self.agg}' requires a field")
        return self

    @property
    def output_name(self) -> str:
        if self.alias:
            return self.alias
        if self.field == "*":
            return self.agg
        return self.field


class SortSpec(BaseModel):
    field: str
    direction: SortDirection = "asc"

    @model_validator(mode="before")
    @classmethod
    def adapt_legacy_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        next_values = dict(values)
        if "direction" not in next_values and "dir" in next_values:
            next_values["direction"] = next_values.pop("dir")
        if isinstance(next_values.get("direction"), str):
            next_values["direction"] = next_values["direction"].lower()
        return next_values


class QueryConfig(BaseModel):
    """Declarative chart query: dimensions, measures, sort keys and an optional row limit."""

    dimensions: list[str] = Field(default_factory=list)
    measures: list[MeasureSpec] = Field(default_factory=list)
    sort: list[SortSpec] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)
    filters: list[FilterSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def adapt_legacy_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        next_values = dict(values)
        if "dimensions" not in next_values and "groupBy" in next_values:
            next_values["dimensions"] = next_values.pop("groupBy")
        if "measures" not in next_values and "aggregations" in next_values:
            next_values["measures"] = next_values.pop("aggregations")
        if "sort" not in next_values and "sorting" in next_values:
            next_values["sort"] = next_values.pop("sorting")
        return next_values

    @model_validator(mode="after")
    def validate_outputs(self) -> "QueryConfig":
        names = list(self.dimensions) + [measure.output_name for measure in self.measures]
        duplicated = sorted({name for name in names if names.count(name) > 1})
        if duplicated:
            raise ValueError(f"Duplicated output columns: {', '.join(duplicated)}")
        return self

    @property
    def output_columns(self) -> list[str]:
        return list(self.dimensions) + [measure.output_name for measure in self.measures]

    def referenced_fields(self) -> set[str]:
        fields = set(self.dimensions)
        fields.update(measure.field for measure in self.measures if measure.field != "*")
        fields.update(item.field for item in self.filters)
        measure_outputs = {measure.output_name for measure in self.measures}
        fields.update(item.field for item in self.sort if item.field not in measure_outputs)
        return fields


class GlobalFilterDataSource(BaseModel):
    type: GlobalFilterSourceType = "static"
    values: list[Any] | None = None
    query: str | None = None
    dataset_id: int | None = None
    field: str | None = None

    @model_validator(mode="after")
    def validate_source(self) -> "GlobalFilterDataSource":
        if self.type == "static" and self.values is None:
            raise ValueError("Static filter data source requires 'values'")
        if self.type == "query" and not self.query:
            raise ValueError("Query filter data source requires 'query'")
        if self.type == "dataset" and self.dataset_id is None:
            raise ValueError("Dataset filter data source requires 'dataset_id'")
        return self


class GlobalFilterDefinition(BaseModel):
    id: str = Field(min_length=1)
    field: str = Field(min_length=1)
    label: str | None = None
    operator: str = "equals"
    default_value: Any | None = None
    data_source: GlobalFilterDataSource | None = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, value: str) -> str:
        lowered = str(value or "").strip().lower()
        lowered = _OPERATOR_ALIASES.get(lowered, lowered)
        if lowered not in KNOWN_FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator '{value}'")
        return lowered

    def to_filter(self, value: Any) -> FilterSpec:
        operator = self.operator
        if isinstance(value, list) and operator == "equals":
            operator = "in"
        return FilterSpec(field=self.field, operator=operator, value=value)


class FilterConnection(BaseModel):
    filter_id: str
    chart_ids: list[int] = Field(default_factory=list)
