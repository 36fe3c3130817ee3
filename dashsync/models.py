import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .values import utc_now

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


class SourceKind(str, Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MONGODB = "mongodb"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    ACTIVE = "active"
    ERROR = "error"


class SourceInfo(BaseModel):
    """Public view of a registered source."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    kind: SourceKind
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class ExternalSource(SourceInfo):
    """A registered external database; the descriptor never leaves the service."""

    descriptor: str = Field(exclude=True, repr=False)


class ColumnInfo(BaseModel):
    name: str
    type: str


class SyncedTable(BaseModel):
    """Local registration and metadata for one table of a source."""

    id: str = Field(default_factory=new_id)
    source_id: str
    table_name: str
    columns: List[ColumnInfo] = Field(default_factory=list)
    row_count: int = 0
    last_synced_at: Optional[datetime] = None
    last_data_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class SyncedRow(BaseModel):
    """One external row stored as a JSON document."""

    id: int
    synced_table_id: str
    source_id: str
    table_name: str
    original_id: str
    data: Dict[str, Any]
    synced_at: datetime


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class SyncJob(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    table_name: str
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    rows_synced: int = 0
    error_message: Optional[str] = None


class TableSyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_name: str = Field(alias="tableName")
    success: bool
    rows_synced: int = Field(0, alias="rowsSynced")
    error: Optional[str] = None


class SourceSyncResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    started_at: datetime = Field(alias="startedAt")
    finished_at: datetime = Field(alias="finishedAt")
    results: List[TableSyncResult] = Field(default_factory=list)
    total_tables: int = Field(0, alias="totalTables")
    success_count: int = Field(0, alias="successCount")
    failed_count: int = Field(0, alias="failedCount")
    total_rows: int = Field(0, alias="totalRows")


class Aggregation(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


def _normalize_aggregation(value: Any) -> Any:
    if isinstance(value, Aggregation) or value is None:
        return value or Aggregation.COUNT
    text = str(value).strip().lower()
    if text not in {member.value for member in Aggregation}:
        logger.warning("Unknown aggregation %r, falling back to count", value)
        return Aggregation.COUNT
    return text


class FilterPredicate(BaseModel):
    field: str = ""
    operator: str = "eq"
    value: Any = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)


class ChartColumns(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x: Optional[str] = None
    y: str = "id"
    group_by: Optional[str] = Field(None, alias="groupBy")


class ChartSpec(BaseModel):
    """Declarative chart definition proposed by the generator or a user."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    title: str = ""
    type: str = "bar"
    table: str
    columns: ChartColumns = Field(default_factory=ChartColumns)
    aggregation: Aggregation = Aggregation.COUNT
    filters: List[FilterPredicate] = Field(default_factory=list)
    date_range: Optional[str] = Field(None, alias="dateRange")

    @field_validator("aggregation", mode="before")
    @classmethod
    def normalize_aggregation(cls, value: Any) -> Any:
        return _normalize_aggregation(value)


class KPISpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    title: str = ""
    table: str
    column: str = "id"
    aggregation: Aggregation = Aggregation.COUNT
    icon: Optional[str] = None
    compare_with: Optional[str] = Field(None, alias="compareWith")
    filters: List[FilterPredicate] = Field(default_factory=list)

    @field_validator("aggregation", mode="before")
    @classmethod
    def normalize_aggregation(cls, value: Any) -> Any:
        return _normalize_aggregation(value)


class CustomChartSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table: str
    x_axis: str = Field(alias="xAxis")
    y_axis: List[str] = Field(default_factory=list, alias="yAxis")


class CustomChartSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    chart_type: str = Field("bar", alias="chartType")
    data_source: CustomChartSource = Field(alias="dataSource")
    filters: List[FilterPredicate] = Field(default_factory=list)
    aggregation: Aggregation = Aggregation.COUNT
    group_by: Optional[str] = Field(None, alias="groupBy")

    @field_validator("aggregation", mode="before")
    @classmethod
    def normalize_aggregation(cls, value: Any) -> Any:
        return _normalize_aggregation(value)


class ChartResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chart_id: str = Field(alias="chartId")
    points: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = Field(0, alias="rowCount")
    date_strategy: Optional[str] = Field(None, alias="dateStrategy")


class KPIResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kpi_id: str = Field(alias="kpiId")
    value: float = 0.0
    growth: float = 0.0
    row_count: int = Field(0, alias="rowCount")


class CacheEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    item_id: str = Field(alias="itemId")
    item_type: Literal["chart", "kpi"] = Field(alias="itemType")
    spec: Dict[str, Any]
    result: Any
    computed_at: datetime = Field(alias="computedAt")


class CachedDashboard(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    charts: List[CacheEntry] = Field(default_factory=list)
    kpis: List[CacheEntry] = Field(default_factory=list)
    computed_at: Optional[datetime] = Field(None, alias="computedAt")

    @property
    def empty(self) -> bool:
        return not self.charts and not self.kpis


class CacheStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    last_synced: Optional[datetime] = Field(None, alias="lastSynced")
    last_cached: Optional[datetime] = Field(None, alias="lastCached")
    needs_refresh: bool = Field(alias="needsRefresh")


class TableDiscovery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_name: str = Field(alias="tableName")
    columns: List[ColumnInfo] = Field(default_factory=list)
    row_count: int = Field(0, alias="rowCount")
    sample_data: List[Dict[str, Any]] = Field(default_factory=list, alias="sampleData")


class DashboardConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    charts: List[ChartSpec] = Field(default_factory=list)
    kpis: List[KPISpec] = Field(default_factory=list)
    reasoning: str = ""
    model: Optional[str] = None
    generated_at: Optional[datetime] = Field(None, alias="generatedAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class DashboardView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    cached: bool
    charts: List[CacheEntry] = Field(default_factory=list)
    kpis: List[CacheEntry] = Field(default_factory=list)
    computed_at: Optional[datetime] = Field(None, alias="computedAt")


class CustomChart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    chart_id: str = Field(alias="chartId")
    spec: CustomChartSpec
    data: List[Dict[str, Any]] = Field(default_factory=list)
    computed_at: datetime = Field(alias="computedAt")
    created_at: datetime = Field(alias="createdAt")
