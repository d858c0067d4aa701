from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from chartdeck.query_config import FilterConnection, FilterSpec, GlobalFilterDefinition, QueryConfig

ConnectionType = Literal["postgres", "sqlalchemy", "inline"]
DashboardStatus = Literal["draft", "published", "archived"]
ChartType = Literal["table", "bar", "line", "area", "pie", "donut", "scatter", "kpi", "gauge", "heatmap"]


# ==================== DATASOURCES / DATASETS ====================

class DataSourceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    connection_type: ConnectionType = "postgres"
    connection_url: Optional[str] = None
    connection_config: Dict[str, Any] = Field(default_factory=dict)


class DataSourceResponse(BaseModel):
    id: int
    workspace_id: int
    name: str
    description: Optional[str]
    connection_type: str
    connection_config: Dict[str, Any]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DatasetCreateRequest(BaseModel):
    datasource_id: int
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    query_config: Dict[str, Any] = Field(default_factory=dict)
    schema_config: Dict[str, Any] = Field(default_factory=dict)


class DatasetResponse(BaseModel):
    id: int
    workspace_id: int
    datasource_id: int
    name: str
    description: Optional[str]
    query_config: Dict[str, Any]
    schema_config: Dict[str, Any]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CategoryCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    sort_order: int = 0


class CategoryResponse(BaseModel):
    id: int
    workspace_id: int
    name: str
    description: Optional[str]
    sort_order: int
    created_at: datetime

    class Config:
        from_attributes = True


# ==================== CHARTS ====================

class ChartCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: Optional[str] = None
    description: Optional[str] = None
    chart_type: ChartType
    dashboard_id: Optional[int] = None
    dataset_ids: List[int] = Field(min_length=1)
    query_config: QueryConfig = Field(default_factory=QueryConfig)
    visualization_config: Dict[str, Any] = Field(default_factory=dict)
    filters: List[FilterSpec] = Field(default_factory=list)
    position_json: Dict[str, Any] = Field(default_factory=dict)
    order_index: int = 0


class ChartUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    display_name: Optional[str] = None
    description: Optional[str] = None
    chart_type: Optional[ChartType] = None
    dashboard_id: Optional[int] = None
    dataset_ids: Optional[List[int]] = Field(default=None, min_length=1)
    query_config: Optional[QueryConfig] = None
    visualization_config: Optional[Dict[str, Any]] = None
    filters: Optional[List[FilterSpec]] = None
    position_json: Optional[Dict[str, Any]] = None
    order_index: Optional[int] = None


class ChartResponse(BaseModel):
    id: int
    workspace_id: int
    dashboard_id: Optional[int]
    name: str
    display_name: Optional[str]
    description: Optional[str]
    chart_type: str
    dataset_ids: List[int]
    query_config: Dict[str, Any]
    visualization_config: Dict[str, Any]
    filters: List[Dict[str, Any]]
    position_json: Dict[str, Any]
    order_index: int
    is_active: bool
    last_executed_at: Optional[datetime] = None
    execution_count: int = 0
    last_execution_ms: Optional[int] = None
    created_by_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChartListResponse(BaseModel):
    items: List[ChartResponse]
    total: int
    page: int
    page_size: int


class ChartDuplicateRequest(BaseModel):
    name: Optional[str] = None
    dashboard_id: Optional[int] = None


# ==================== DASHBOARDS ====================

class DashboardCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[int] = None
    config_json: Dict[str, Any] = Field(default_factory=dict)
    theme_config: Dict[str, Any] = Field(default_factory=dict)
    layout_config: Dict[str, Any] = Field(default_factory=dict)
    global_filters: List[GlobalFilterDefinition] = Field(default_factory=list)
    filter_connections: List[FilterConnection] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_public: bool = False
    is_featured: bool = False
    status: DashboardStatus = "draft"


class DashboardUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    display_name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[int] = None
    config_json: Optional[Dict[str, Any]] = None
    theme_config: Optional[Dict[str, Any]] = None
    layout_config: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None
    is_public: Optional[bool] = None
    is_featured: Optional[bool] = None
    status: Optional[DashboardStatus] = None


class DashboardResponse(BaseModel):
    id: int
    workspace_id: int
    category_id: Optional[int]
    name: str
    display_name: Optional[str]
    description: Optional[str]
    config_json: Dict[str, Any]
    theme_config: Dict[str, Any]
    layout_config: Dict[str, Any]
    global_filters: List[Dict[str, Any]]
    filter_connections: List[Dict[str, Any]]
    tags: List[str]
    is_public: bool
    is_featured: bool
    status: str
    view_count: int
    last_viewed_at: Optional[datetime] = None
    created_by_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DashboardDetailResponse(DashboardResponse):
    charts: List[ChartResponse] = Field(default_factory=list)

    @field_validator("charts", mode="before")
    @classmethod
    def only_active_charts(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [item for item in value if getattr(item, "is_active", True)]
        return value


class DashboardListResponse(BaseModel):
    items: List[DashboardResponse]
    total: int
    page: int
    page_size: int


class DashboardDuplicateRequest(BaseModel):
    name: Optional[str] = None


class ChartPosition(BaseModel):
    chart_id: int
    position: Dict[str, Any] = Field(default_factory=dict)
    order_index: Optional[int] = None


class DashboardLayoutUpdateRequest(BaseModel):
    layout_config: Dict[str, Any] = Field(default_factory=dict)
    chart_positions: List[ChartPosition] = Field(default_factory=list)


class DashboardFiltersUpdateRequest(BaseModel):
    global_filters: List[GlobalFilterDefinition] = Field(default_factory=list)
    filter_connections: List[FilterConnection] = Field(default_factory=list)


class ApplyFilterRequest(BaseModel):
    filter_id: str = Field(min_length=1)
    value: Any = None
    force_refresh: bool = False


class DashboardStatsResponse(BaseModel):
    total_dashboards: int
    published_dashboards: int
    draft_dashboards: int
    archived_dashboards: int
    featured_dashboards: int
    total_charts: int
    total_views: int
    by_category: List[Dict[str, Any]] = Field(default_factory=list)


# ==================== CHART DATA ====================

class ChartDataResult(BaseModel):
    chart_id: int
    columns: List[str]
    rows: List[Dict[str, Any]]
    row_count: int
    cached: bool
    generated_at: datetime
    execution_time_ms: int
    cache_key: str
    sql: Optional[str] = None
    filters: List[FilterSpec] = Field(default_factory=list)


class ChartSlot(BaseModel):
    chart_id: int
    name: str
    chart_type: str
    status: Literal["ok", "error"]
    position: Dict[str, Any] = Field(default_factory=dict)
    data: Optional[ChartDataResult] = None
    error: Optional[Dict[str, Any]] = None


class DashboardDataResult(BaseModel):
    dashboard_id: int
    charts: List[ChartSlot]
    global_filters: List[Dict[str, Any]] = Field(default_factory=list)
    layout: Dict[str, Any] = Field(default_factory=dict)
    generated_at: datetime
    failed_count: int = 0


class ApplyFilterResult(BaseModel):
    filter_id: str
    filter_value: Any = None
    affected_charts: List[int]
    data: DashboardDataResult


class ChartQueryDescription(BaseModel):
    chart_id: int
    dataset_ids: List[int]
    query_config: Dict[str, Any]
    filters: List[FilterSpec]
    sql: List[str]


class CacheStatusResponse(BaseModel):
    dashboard_cached: bool
    charts_cached: int
    total_charts: int
    last_cache_update: Optional[datetime] = None
    cache_size_bytes: int = 0


class CacheClearResponse(BaseModel):
    cache_cleared: bool
    affected_charts: int


# ==================== JOBS ====================

JobKind = Literal["refresh", "export"]
JobStatus = Literal["initiated", "processing", "completed", "failed"]


class RefreshRequest(BaseModel):
    chart_ids: Optional[List[int]] = None


class ExportRequest(BaseModel):
    format: str = "json"
    filters: Optional[Any] = None

    @field_validator("format")
    @classmethod
    def normalize_format(cls, value: str) -> str:
        return str(value or "").strip().lower()


class JobResponse(BaseModel):
    job_id: str
    kind: JobKind
    owner_id: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
