import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .aggregation import AggregationEngine
from .cache import ConfigStore, CustomChartStore, DashboardCache
from .config import Settings, settings as default_settings
from .dashboard import DashboardOrchestrator
from .errors import DashSyncError
from .generator import ChatCompletionsGenerator, ConfigGenerator
from .models import (
    CachedDashboard,
    CacheStatus,
    ChartResult,
    ChartSpec,
    ColumnInfo,
    CustomChart,
    CustomChartSpec,
    DashboardConfig,
    DashboardView,
    KPIResult,
    KPISpec,
    SourceInfo,
    SourceKind,
    SourceSyncResult,
    SyncedTable,
    TableSyncResult,
)
from .store import Database, RowStore, create_database
from .sync import ConnectorFactory, SyncEngine

logger = logging.getLogger(__name__)


class SourcePayload(BaseModel):
    name: str
    kind: SourceKind
    descriptor: str
    description: Optional[str] = None


class TablePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_name: str = Field(alias="tableName")
    columns: Optional[List[ColumnInfo]] = None


@dataclass
class Services:
    db: Database
    store: RowStore
    sync: SyncEngine
    engine: AggregationEngine
    cache: DashboardCache
    configs: ConfigStore
    dashboards: DashboardOrchestrator


def build_services(
    settings: Settings,
    db: Database,
    connector_factory: Optional[ConnectorFactory] = None,
    config_generator: Optional[ConfigGenerator] = None,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> Services:
    store = RowStore(db)
    engine = AggregationEngine(
        db,
        group_limit=settings.group_limit,
        time_series_limit=settings.time_series_limit,
        custom_chart_limit=settings.custom_chart_limit,
        growth_window_days=settings.growth_window_days,
    )
    cache = DashboardCache(db)
    configs = ConfigStore(db)
    generator = config_generator or ChatCompletionsGenerator(settings, transport=http_transport)
    return Services(
        db=db,
        store=store,
        sync=SyncEngine(
            store,
            batch_size=settings.sync_batch_size,
            timeout=settings.http_timeout_seconds,
            connector_factory=connector_factory,
            http_transport=http_transport,
        ),
        engine=engine,
        cache=cache,
        configs=configs,
        dashboards=DashboardOrchestrator(
            store,
            engine,
            cache,
            configs,
            CustomChartStore(db),
            generator=generator,
            sample_size=settings.discovery_sample_size,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


# sources


@router.post("/sources", status_code=201)
def register_source(payload: SourcePayload, services: Services = Depends(get_services)) -> SourceInfo:
    return services.sync.register_source(
        payload.name, payload.kind, payload.descriptor, payload.description
    )


@router.get("/sources")
def list_sources(services: Services = Depends(get_services)) -> List[SourceInfo]:
    return services.store.list_sources()


@router.get("/sources/{source_id}")
def get_source(source_id: str, services: Services = Depends(get_services)) -> SourceInfo:
    return services.store.get_source(source_id)


@router.post("/sources/{source_id}/test")
def test_source(source_id: str, services: Services = Depends(get_services)) -> dict:
    services.sync.test_source(source_id)
    return {"status": "ok", "sourceId": source_id}


# tables and sync


@router.post("/sources/{source_id}/tables", status_code=201)
def register_table(
    source_id: str, payload: TablePayload, services: Services = Depends(get_services)
) -> SyncedTable:
    return services.sync.register_table(source_id, payload.table_name, payload.columns)


@router.get("/sources/{source_id}/tables")
def list_tables(source_id: str, services: Services = Depends(get_services)) -> List[SyncedTable]:
    services.store.get_source(source_id)
    return services.store.list_tables(source_id)


@router.post("/sources/{source_id}/tables/discover")
def discover_external_tables(
    source_id: str, services: Services = Depends(get_services)
) -> List[SyncedTable]:
    return services.sync.register_discovered_tables(source_id)


@router.post("/sources/{source_id}/sync")
def sync_all(source_id: str, services: Services = Depends(get_services)) -> SourceSyncResult:
    return services.sync.sync_all(source_id)


@router.get("/sources/{source_id}/sync/status")
def sync_status(source_id: str, services: Services = Depends(get_services)) -> dict:
    return services.sync.status(source_id)


@router.post("/sources/{source_id}/sync/{table_name}")
def sync_table(
    source_id: str, table_name: str, services: Services = Depends(get_services)
) -> TableSyncResult:
    return services.sync.sync_table(source_id, table_name)


# ad-hoc data


@router.post("/sources/{source_id}/charts/data")
def chart_data(
    source_id: str, spec: ChartSpec, services: Services = Depends(get_services)
) -> ChartResult:
    services.store.get_source(source_id)
    return services.engine.chart(source_id, spec)


@router.post("/sources/{source_id}/kpis/data")
def kpi_data(source_id: str, spec: KPISpec, services: Services = Depends(get_services)) -> KPIResult:
    services.store.get_source(source_id)
    return services.engine.kpi(source_id, spec)


# dashboard


@router.get("/sources/{source_id}/dashboard")
def load_dashboard(source_id: str, services: Services = Depends(get_services)) -> DashboardView:
    return services.dashboards.load(source_id)


@router.post("/sources/{source_id}/dashboard/regenerate")
def regenerate_dashboard(source_id: str, services: Services = Depends(get_services)) -> dict:
    services.dashboards.regenerate(source_id)
    return {"status": "cleared", "sourceId": source_id}


@router.post("/sources/{source_id}/dashboard/refresh")
def refresh_dashboard(source_id: str, services: Services = Depends(get_services)) -> DashboardView:
    return services.dashboards.refresh(source_id)


@router.get("/sources/{source_id}/cache")
def get_cache(source_id: str, services: Services = Depends(get_services)) -> CachedDashboard:
    services.store.get_source(source_id)
    return services.cache.get_all(source_id)


@router.delete("/sources/{source_id}/cache")
def clear_cache(source_id: str, services: Services = Depends(get_services)) -> dict:
    services.store.get_source(source_id)
    return {"cleared": services.cache.clear(source_id)}


@router.get("/sources/{source_id}/cache/status")
def cache_status(source_id: str, services: Services = Depends(get_services)) -> CacheStatus:
    services.store.get_source(source_id)
    return services.cache.status(source_id)


@router.get("/sources/{source_id}/config")
def get_config(source_id: str, services: Services = Depends(get_services)) -> Optional[DashboardConfig]:
    services.store.get_source(source_id)
    return services.configs.get(source_id)


@router.delete("/sources/{source_id}/config")
def delete_config(source_id: str, services: Services = Depends(get_services)) -> dict:
    services.store.get_source(source_id)
    return {"deleted": services.configs.delete(source_id)}


# custom charts


@router.get("/sources/{source_id}/custom-charts")
def list_custom_charts(
    source_id: str, services: Services = Depends(get_services)
) -> List[CustomChart]:
    return services.dashboards.list_custom_charts(source_id)


@router.post("/sources/{source_id}/custom-charts", status_code=201)
def create_custom_chart(
    source_id: str, spec: CustomChartSpec, services: Services = Depends(get_services)
) -> CustomChart:
    return services.dashboards.save_custom_chart(source_id, spec)


@router.delete("/sources/{source_id}/custom-charts/{chart_id}")
def delete_custom_chart(
    source_id: str, chart_id: str, services: Services = Depends(get_services)
) -> dict:
    services.dashboards.delete_custom_chart(source_id, chart_id)
    return {"deleted": chart_id}


@router.patch("/sources/{source_id}/custom-charts/{chart_id}")
def refresh_custom_chart(
    source_id: str, chart_id: str, services: Services = Depends(get_services)
) -> CustomChart:
    return services.dashboards.refresh_custom_chart(source_id, chart_id)


async def handle_dashsync_error(request: Request, exc: DashSyncError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def create_app(
    settings: Optional[Settings] = None,
    connector_factory: Optional[ConnectorFactory] = None,
    config_generator: Optional[ConfigGenerator] = None,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = create_database(settings.store_backend, settings.database_path)
        app.state.services = build_services(
            settings, db, connector_factory, config_generator, http_transport
        )
        logger.info("Opened %s store at %s", settings.store_backend, db.path)
        try:
            yield
        finally:
            db.close()

    app = FastAPI(
        title="DashSync",
        version="0.1.0",
        description="Snapshot external databases and serve cached dashboard aggregates.",
        lifespan=lifespan,
    )
    app.add_exception_handler(DashSyncError, handle_dashsync_error)
    app.include_router(router)
    return app


app = create_app()
