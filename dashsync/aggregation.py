import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .dates import DATE_STRATEGIES, DateStrategy, display_label, first_success, is_date_column
from .errors import AggregationError
from .models import (
    Aggregation,
    ChartResult,
    ChartSpec,
    CustomChartSpec,
    FilterPredicate,
    KPIResult,
    KPISpec,
)
from .querybuilder import RowQuery
from .store import Database
from .values import round_half_up, to_iso, to_number, utc_now

logger = logging.getLogger(__name__)

PREVIOUS_PERIOD = "previous_period"


def _rounded(value: Any, places: int = 2) -> float:
    return round_half_up(to_number(value, 0.0), places)


class AggregationEngine:
    """Compiles chart and KPI specs into queries over synced JSON rows.

    Charts are resolved in a fixed precedence: grouped/pie, date time series,
    category grouping, then a scalar aggregate over the whole table.
    """

    def __init__(
        self,
        db: Database,
        group_limit: int = 20,
        time_series_limit: int = 60,
        custom_chart_limit: int = 100,
        growth_window_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.group_limit = group_limit
        self.time_series_limit = time_series_limit
        self.custom_chart_limit = custom_chart_limit
        self.growth_window = timedelta(days=growth_window_days)
        self.clock = clock

    def chart(self, source_id: str, spec: ChartSpec) -> ChartResult:
        try:
            return self._chart(source_id, spec)
        except sqlite3.Error as exc:
            raise AggregationError(f"Chart '{spec.id}' failed: {exc}") from exc

    def kpi(self, source_id: str, spec: KPISpec) -> KPIResult:
        try:
            return self._kpi(source_id, spec)
        except sqlite3.Error as exc:
            raise AggregationError(f"KPI '{spec.id}' failed: {exc}") from exc

    def custom_chart(self, source_id: str, spec: CustomChartSpec) -> List[Dict[str, Any]]:
        try:
            return self._custom_chart(source_id, spec)
        except sqlite3.Error as exc:
            raise AggregationError(f"Custom chart '{spec.title}' failed: {exc}") from exc

    def _chart(self, source_id: str, spec: ChartSpec) -> ChartResult:
        x_column = spec.columns.x
        group_column = spec.columns.group_by
        row_count = self.count(source_id, spec.table, spec.filters)

        if spec.type == "pie" or group_column:
            key_column = group_column or x_column
            if not key_column:
                return ChartResult(chart_id=spec.id, row_count=row_count)
            rows = self._grouped(source_id, spec, key_column)
            points = [{"name": str(row["group_key"]), "value": _rounded(row["result"])} for row in rows]
            return ChartResult(chart_id=spec.id, points=points, row_count=row_count)

        if x_column and is_date_column(x_column):
            strategy, rows = first_success(
                DATE_STRATEGIES, lambda candidate: self._time_series(source_id, spec, candidate)
            )
            points = [
                {
                    "date": str(row["group_key"]),
                    "label": display_label(str(row["group_key"])),
                    "value": _rounded(row["result"]),
                }
                for row in rows
            ]
            return ChartResult(
                chart_id=spec.id,
                points=points,
                row_count=row_count,
                date_strategy=strategy.name if strategy else None,
            )

        if x_column:
            rows = self._grouped(source_id, spec, x_column)
            points = [
                {"category": str(row["group_key"]), "value": _rounded(row["result"])} for row in rows
            ]
            return ChartResult(chart_id=spec.id, points=points, row_count=row_count)

        query = RowQuery(source_id, spec.table).filter(spec.filters)
        aggregate = query.aggregate(spec.aggregation, spec.columns.y)
        row = self.db.query_one(
            f"SELECT {aggregate} AS result FROM synced_rows WHERE {query.where_sql()}",
            query.params,
        )
        value = _rounded(row["result"] if row else 0)
        return ChartResult(chart_id=spec.id, points=[{"value": value}], row_count=row_count)

    def _grouped(self, source_id: str, spec: ChartSpec, key_column: str) -> List[sqlite3.Row]:
        query = RowQuery(source_id, spec.table).filter(spec.filters)
        key = f"COALESCE({query.text(key_column)}, 'Unknown')"
        aggregate = query.aggregate(spec.aggregation, spec.columns.y)
        limit = query.bind(self.group_limit)
        return self.db.query(
            f"""
            SELECT {key} AS group_key, {aggregate} AS result
            FROM synced_rows
            WHERE {query.where_sql()}
            GROUP BY group_key
            ORDER BY result DESC, group_key ASC
            LIMIT {limit}
            """,
            query.params,
        )

    def _time_series(
        self, source_id: str, spec: ChartSpec, strategy: DateStrategy
    ) -> List[sqlite3.Row]:
        query = RowQuery(source_id, spec.table).filter(spec.filters)
        key = f"{strategy.sql_function}({query.text(spec.columns.x)})"
        query.require(f"{key} IS NOT NULL")
        aggregate = query.aggregate(spec.aggregation, spec.columns.y)
        limit = query.bind(self.time_series_limit)
        rows = self.db.query(
            f"""
            SELECT {key} AS group_key, {aggregate} AS result
            FROM synced_rows
            WHERE {query.where_sql()}
            GROUP BY group_key
            ORDER BY group_key ASC
            LIMIT {limit}
            """,
            query.params,
        )
        logger.debug("Date strategy %s produced %d groups", strategy.name, len(rows))
        return rows

    def _kpi(self, source_id: str, spec: KPISpec) -> KPIResult:
        query = RowQuery(source_id, spec.table).filter(spec.filters)
        aggregate = query.aggregate(spec.aggregation, spec.column)
        row = self.db.query_one(
            f"SELECT {aggregate} AS result, COUNT(*) AS row_count "
            f"FROM synced_rows WHERE {query.where_sql()}",
            query.params,
        )
        if row is None or not row["row_count"]:
            return KPIResult(kpi_id=spec.id)

        growth = 0.0
        # Growth compares sync recency windows and is only computed for counts.
        if spec.compare_with == PREVIOUS_PERIOD and spec.aggregation == Aggregation.COUNT:
            growth = self.growth(source_id, spec.table, spec.filters)
        return KPIResult(
            kpi_id=spec.id,
            value=_rounded(row["result"]),
            growth=round_half_up(growth, 1),
            row_count=row["row_count"],
        )

    def growth(
        self, source_id: str, table: str, filters: Sequence[FilterPredicate] = ()
    ) -> float:
        now = self.clock()
        boundary = now - self.growth_window
        recent = self.count(source_id, table, filters, since=boundary)
        previous = self.count(
            source_id, table, filters, since=boundary - self.growth_window, until=boundary
        )
        if previous == 0:
            return 0.0
        return (recent - previous) / previous * 100

    def count(
        self,
        source_id: str,
        table: str,
        filters: Sequence[FilterPredicate] = (),
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        query = RowQuery(source_id, table).filter(filters)
        if since is not None:
            query.require(f"synced_at >= {query.bind(to_iso(since))}")
        if until is not None:
            query.require(f"synced_at < {query.bind(to_iso(until))}")
        row = self.db.query_one(
            f"SELECT COUNT(*) AS c FROM synced_rows WHERE {query.where_sql()}", query.params
        )
        return row["c"] if row else 0

    def _custom_chart(self, source_id: str, spec: CustomChartSpec) -> List[Dict[str, Any]]:
        data_source = spec.data_source
        if not data_source.table or not data_source.x_axis or not data_source.y_axis:
            return []
        query = RowQuery(source_id, data_source.table).filter(spec.filters)
        key = query.text(spec.group_by or data_source.x_axis)
        query.require(f"{key} IS NOT NULL")
        aggregates = ", ".join(
            f"{query.aggregate(spec.aggregation, column)} AS result_{index}"
            for index, column in enumerate(data_source.y_axis)
        )
        limit = query.bind(self.custom_chart_limit)
        rows = self.db.query(
            f"""
            SELECT {key} AS group_key, {aggregates}
            FROM synced_rows
            WHERE {query.where_sql()}
            GROUP BY group_key
            ORDER BY group_key
            LIMIT {limit}
            """,
            query.params,
        )
        points = []
        for row in rows:
            point: Dict[str, Any] = {data_source.x_axis: row["group_key"]}
            for index, column in enumerate(data_source.y_axis):
                point[column] = _rounded(row[f"result_{index}"])
            points.append(point)
        return points
