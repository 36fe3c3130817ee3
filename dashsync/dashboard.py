import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from .aggregation import AggregationEngine
from .cache import ConfigStore, CustomChartStore, DashboardCache
from .errors import (
    AggregationError,
    ConfigGenerationError,
    ConfigNotFoundError,
    InvalidRequestError,
    NoTablesError,
)
from .generator import ConfigGenerator
from .models import (
    ChartResult,
    ChartSpec,
    CustomChart,
    CustomChartSpec,
    DashboardConfig,
    DashboardView,
    KPIResult,
    KPISpec,
    TableDiscovery,
    new_id,
)
from .store import RowStore
from .sync import infer_columns

logger = logging.getLogger(__name__)

CUSTOM_CHART_PREFIX = "custom_"


class KeyedLock:
    """One re-entrant lock per key, created on first use.

    Locks are never evicted. Keys are source ids, so the map grows with the
    number of registered sources and lives as long as the orchestrator.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield


def _normalize_items(raw: Any, model: type, kind: str) -> List[Any]:
    if not isinstance(raw, list):
        return []
    items = []
    for item in raw:
        if not isinstance(item, Mapping):
            logger.warning("Dropping %s that is not an object: %r", kind, item)
            continue
        item = dict(item)
        if not item.get("id"):
            item["id"] = new_id()
        try:
            items.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping invalid %s %s: %s", kind, item.get("id"), exc)
    return items


def normalize_config(raw: Mapping[str, Any]) -> DashboardConfig:
    """Coerce a generator reply into a config, dropping items that do not validate."""
    return DashboardConfig(
        charts=_normalize_items(raw.get("charts"), ChartSpec, "chart"),
        kpis=_normalize_items(raw.get("kpis"), KPISpec, "kpi"),
        reasoning=str(raw.get("reasoning") or ""),
        model=raw.get("model"),
    )


class DashboardOrchestrator:
    """Serves a source's dashboard from cache, rebuilding it when stale."""

    def __init__(
        self,
        store: RowStore,
        engine: AggregationEngine,
        cache: DashboardCache,
        configs: ConfigStore,
        custom_charts: CustomChartStore,
        generator: Optional[ConfigGenerator] = None,
        sample_size: int = 5,
    ):
        self.store = store
        self.engine = engine
        self.cache = cache
        self.configs = configs
        self.custom_charts = custom_charts
        self.generator = generator
        self.sample_size = sample_size
        self.locks = KeyedLock()

    def discover(self, source_id: str) -> List[TableDiscovery]:
        self.store.get_source(source_id)
        tables = self.store.list_tables(source_id)
        if not tables:
            raise NoTablesError(source_id)
        discovered = []
        for table in tables:
            samples = self.store.sample_rows(table.id, self.sample_size)
            columns = table.columns
            if not columns and samples:
                columns = infer_columns(samples[0])
            discovered.append(
                TableDiscovery(
                    table_name=table.table_name,
                    columns=columns,
                    row_count=self.store.count_rows(table.id),
                    sample_data=samples,
                )
            )
        return discovered

    def refresh_all(
        self,
        source_id: str,
        charts: Sequence[ChartSpec],
        kpis: Sequence[KPISpec],
    ) -> DashboardView:
        with self.locks.hold(source_id):
            computed: List[Tuple[Any, Any]] = []
            for chart in charts:
                try:
                    result = self.engine.chart(source_id, chart)
                except AggregationError as exc:
                    logger.warning("Chart %s computed no data: %s", chart.id, exc)
                    result = ChartResult(chart_id=chart.id)
                computed.append((chart, result.points))
            for kpi in kpis:
                try:
                    result = self.engine.kpi(source_id, kpi)
                except AggregationError as exc:
                    logger.warning("KPI %s computed no data: %s", kpi.id, exc)
                    result = KPIResult(kpi_id=kpi.id)
                computed.append(
                    (kpi, result.model_dump(by_alias=True, include={"value", "growth", "row_count"}))
                )

            # readers see either the previous dashboard or the complete new one
            with self.cache.db.transaction():
                self.cache.clear(source_id)
                for spec, value in computed:
                    self.cache.put(source_id, spec.id, spec, value)
            logger.info(
                "Cached %d charts and %d KPIs for source %s", len(charts), len(kpis), source_id
            )
            return self._view(source_id, cached=False)

    def _view(self, source_id: str, cached: bool) -> DashboardView:
        dashboard = self.cache.get_all(source_id)
        return DashboardView(
            source_id=source_id,
            cached=cached,
            charts=dashboard.charts,
            kpis=dashboard.kpis,
            computed_at=dashboard.computed_at,
        )

    def _is_hot(self, source_id: str) -> bool:
        return not self.cache.get_all(source_id).empty and not self.cache.is_stale(source_id)

    def load(self, source_id: str) -> DashboardView:
        self.store.get_source(source_id)
        if self._is_hot(source_id):
            return self._view(source_id, cached=True)

        with self.locks.hold(source_id):
            # another request may have rebuilt it while we waited
            if self._is_hot(source_id):
                return self._view(source_id, cached=True)
            tables = self.discover(source_id)
            config = self.configs.get(source_id)
            if config is None:
                config = self.configs.save(source_id, self._generate(tables))
            return self.refresh_all(source_id, config.charts, config.kpis)

    def _generate(self, tables: Sequence[TableDiscovery]) -> DashboardConfig:
        if self.generator is None:
            raise ConfigGenerationError("No dashboard config generator is configured")
        config = normalize_config(self.generator(tables))
        logger.info(
            "Generated config with %d charts and %d KPIs", len(config.charts), len(config.kpis)
        )
        return config

    def regenerate(self, source_id: str) -> None:
        self.store.get_source(source_id)
        with self.locks.hold(source_id):
            self.configs.delete(source_id)
            self.cache.clear(source_id)

    def refresh(self, source_id: str) -> DashboardView:
        self.store.get_source(source_id)
        config = self.configs.get(source_id)
        if config is None:
            raise ConfigNotFoundError(source_id)
        return self.refresh_all(source_id, config.charts, config.kpis)

    # custom charts

    def save_custom_chart(self, source_id: str, spec: CustomChartSpec) -> CustomChart:
        self.store.get_source(source_id)
        data = self.engine.custom_chart(source_id, spec)
        chart_id = f"{CUSTOM_CHART_PREFIX}{new_id()}"
        return self.custom_charts.save(source_id, chart_id, spec, data)

    def list_custom_charts(self, source_id: str) -> List[CustomChart]:
        return self.custom_charts.list(source_id)

    def delete_custom_chart(self, source_id: str, chart_id: str) -> None:
        if not chart_id.startswith(CUSTOM_CHART_PREFIX):
            raise InvalidRequestError("Only custom charts can be deleted")
        self.custom_charts.delete(source_id, chart_id)

    def refresh_custom_chart(self, source_id: str, chart_id: str) -> CustomChart:
        chart = self.custom_charts.get(source_id, chart_id)
        data = self.engine.custom_chart(source_id, chart.spec)
        return self.custom_charts.save(source_id, chart_id, chart.spec, data)
