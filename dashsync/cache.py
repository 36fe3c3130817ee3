import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from .errors import ItemNotFoundError
from .models import (
    CacheEntry,
    CachedDashboard,
    CacheStatus,
    ChartSpec,
    CustomChart,
    CustomChartSpec,
    DashboardConfig,
)
from .store import Database
from .values import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


def _dump(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    elif isinstance(value, (list, tuple)):
        value = [
            item.model_dump(mode="json", by_alias=True) if isinstance(item, BaseModel) else item
            for item in value
        ]
    return json.dumps(value)


class DashboardCache:
    """Computed chart and KPI results keyed by (source, item)."""

    def __init__(self, db: Database):
        self.db = db

    def put(
        self,
        source_id: str,
        item_id: str,
        spec: BaseModel,
        result: Any,
        computed_at: Optional[datetime] = None,
    ) -> None:
        item_type = "chart" if isinstance(spec, ChartSpec) else "kpi"
        self.db.execute(
            """
            INSERT INTO dashboard_cache (source_id, item_id, item_type, spec, result, computed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (source_id, item_id) DO UPDATE SET
                item_type = excluded.item_type,
                spec = excluded.spec,
                result = excluded.result,
                computed_at = excluded.computed_at
            """,
            (
                source_id,
                item_id,
                item_type,
                _dump(spec),
                _dump(result),
                to_iso(computed_at or utc_now()),
            ),
        )

    def get_all(self, source_id: str) -> CachedDashboard:
        rows = self.db.query(
            "SELECT * FROM dashboard_cache WHERE source_id = ? ORDER BY rowid",
            (source_id,),
        )
        charts: List[CacheEntry] = []
        kpis: List[CacheEntry] = []
        for row in rows:
            entry = CacheEntry(
                source_id=row["source_id"],
                item_id=row["item_id"],
                item_type=row["item_type"],
                spec=json.loads(row["spec"]),
                result=json.loads(row["result"]),
                computed_at=from_iso(row["computed_at"]),
            )
            (charts if entry.item_type == "chart" else kpis).append(entry)
        computed = [entry.computed_at for entry in charts + kpis]
        return CachedDashboard(
            source_id=source_id,
            charts=charts,
            kpis=kpis,
            computed_at=min(computed) if computed else None,
        )

    def clear(self, source_id: str) -> int:
        removed = self.db.execute("DELETE FROM dashboard_cache WHERE source_id = ?", (source_id,))
        logger.info("Cleared %d cached items for source %s", removed, source_id)
        return removed

    def last_computed(self, source_id: str) -> Optional[datetime]:
        row = self.db.query_one(
            "SELECT MAX(computed_at) AS computed_at FROM dashboard_cache WHERE source_id = ?",
            (source_id,),
        )
        return from_iso(row["computed_at"]) if row else None

    def _last_synced(self, source_id: str) -> Optional[datetime]:
        row = self.db.query_one(
            "SELECT last_synced_at FROM external_sources WHERE id = ?", (source_id,)
        )
        return from_iso(row["last_synced_at"]) if row else None

    def status(self, source_id: str) -> CacheStatus:
        last_synced = self._last_synced(source_id)
        last_cached = self.last_computed(source_id)
        if last_cached is None:
            needs_refresh = True
        else:
            needs_refresh = last_synced is not None and last_synced > last_cached
        return CacheStatus(
            source_id=source_id,
            last_synced=last_synced,
            last_cached=last_cached,
            needs_refresh=needs_refresh,
        )

    def is_stale(self, source_id: str) -> bool:
        return self.status(source_id).needs_refresh


class ConfigStore:
    """The chart/KPI configuration stored per source."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, source_id: str) -> Optional[DashboardConfig]:
        row = self.db.query_one(
            "SELECT * FROM dashboard_configs WHERE source_id = ?", (source_id,)
        )
        if row is None:
            return None
        payload = json.loads(row["config"])
        return DashboardConfig(
            charts=payload.get("charts", []),
            kpis=payload.get("kpis", []),
            reasoning=row["reasoning"] or "",
            model=row["model"],
            generated_at=from_iso(row["generated_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def save(self, source_id: str, config: DashboardConfig) -> DashboardConfig:
        now = utc_now()
        existing = self.get(source_id)
        generated_at = config.generated_at or (existing.generated_at if existing else None) or now
        body = {
            "charts": [chart.model_dump(mode="json", by_alias=True) for chart in config.charts],
            "kpis": [kpi.model_dump(mode="json", by_alias=True) for kpi in config.kpis],
        }
        self.db.execute(
            """
            INSERT INTO dashboard_configs
                (source_id, config, model, reasoning, generated_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (source_id) DO UPDATE SET
                config = excluded.config,
                model = excluded.model,
                reasoning = excluded.reasoning,
                generated_at = excluded.generated_at,
                updated_at = excluded.updated_at
            """,
            (
                source_id,
                json.dumps(body),
                config.model,
                config.reasoning,
                to_iso(generated_at),
                to_iso(now),
            ),
        )
        return config.model_copy(update={"generated_at": generated_at, "updated_at": now})

    def delete(self, source_id: str) -> bool:
        return self.db.execute(
            "DELETE FROM dashboard_configs WHERE source_id = ?", (source_id,)
        ) > 0


class CustomChartStore:
    """User-built charts, kept apart from the generated dashboard cache."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _chart(row: Mapping[str, Any]) -> CustomChart:
        return CustomChart(
            source_id=row["source_id"],
            chart_id=row["chart_id"],
            spec=CustomChartSpec.model_validate(json.loads(row["spec"])),
            data=json.loads(row["result"]),
            computed_at=from_iso(row["computed_at"]),
            created_at=from_iso(row["created_at"]),
        )

    def save(
        self,
        source_id: str,
        chart_id: str,
        spec: CustomChartSpec,
        data: Sequence[Dict[str, Any]],
    ) -> CustomChart:
        now = to_iso(utc_now())
        self.db.execute(
            """
            INSERT INTO custom_charts (source_id, chart_id, spec, result, computed_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (source_id, chart_id) DO UPDATE SET
                spec = excluded.spec,
                result = excluded.result,
                computed_at = excluded.computed_at
            """,
            (source_id, chart_id, _dump(spec), _dump(list(data)), now, now),
        )
        return self.get(source_id, chart_id)

    def get(self, source_id: str, chart_id: str) -> CustomChart:
        row = self.db.query_one(
            "SELECT * FROM custom_charts WHERE source_id = ? AND chart_id = ?",
            (source_id, chart_id),
        )
        if row is None:
            raise ItemNotFoundError(f"Custom chart '{chart_id}' not found")
        return self._chart(row)

    def list(self, source_id: str) -> List[CustomChart]:
        rows = self.db.query(
            "SELECT * FROM custom_charts WHERE source_id = ? ORDER BY created_at, chart_id",
            (source_id,),
        )
        return [self._chart(row) for row in rows]

    def delete(self, source_id: str, chart_id: str) -> None:
        removed = self.db.execute(
            "DELETE FROM custom_charts WHERE source_id = ? AND chart_id = ?",
            (source_id, chart_id),
        )
        if not removed:
            raise ItemNotFoundError(f"Custom chart '{chart_id}' not found")
