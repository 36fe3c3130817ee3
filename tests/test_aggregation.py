from datetime import timedelta

import pytest

from dashsync.aggregation import AggregationEngine
from dashsync.errors import AggregationError
from dashsync.models import ChartSpec, CustomChartSpec, FilterPredicate, KPISpec
from dashsync.values import to_iso, utc_now

ORDERS = [
    {"id": 1, "region": "north", "amount": 10, "order_date": "2024-03-01 09:00:00"},
    {"id": 2, "region": "north", "amount": "15.5", "order_date": "2024-03-01 18:30:00"},
    {"id": 3, "region": "south", "amount": "n/a", "order_date": "2024-03-02 07:15:00"},
    {"id": 4, "region": "south", "amount": 4.125, "order_date": "2024-03-03 12:00:00"},
    {"id": 5, "amount": 100, "order_date": "2024-03-03 13:00:00"},
]

EVENTS = [
    {"id": "e1", "created": "1704412800"},
    {"id": "e2", "created": "1704416400"},
    {"id": "e3", "created": "1704499200"},
]


@pytest.fixture
def synced(sync_engine, source, tables):
    tables["orders"] = ORDERS
    tables["events"] = EVENTS
    tables["periods"] = [{"id": 1, "date": "Q1 2024 (est)"}, {"id": 2, "date": "Q2 2024 (est)"}]
    for name in ("users", "orders", "events", "periods"):
        sync_engine.register_table(source.id, name)
    sync_engine.sync_all(source.id)
    return source


def chart(**kwargs):
    return ChartSpec.model_validate(kwargs)


class TestUsersScenario:
    def test_pie_groups_by_status(self, engine, synced):
        result = engine.chart(
            synced.id, chart(id="c1", type="pie", table="users", columns={"x": "status"})
        )
        assert result.points == [
            {"name": "active", "value": 2},
            {"name": "inactive", "value": 1},
        ]
        assert result.row_count == 3

    def test_time_series_by_created_at(self, engine, synced):
        result = engine.chart(
            synced.id, chart(id="c2", type="line", table="users", columns={"x": "created_at"})
        )
        assert result.points == [
            {"date": "2024-01-05", "label": "Jan 5", "value": 2},
            {"date": "2024-02-01", "label": "Feb 1", "value": 1},
        ]
        assert result.date_strategy == "iso_t"


class TestCharts:
    def test_group_by_overrides_x(self, engine, synced):
        result = engine.chart(
            synced.id,
            chart(type="bar", table="users", columns={"x": "created_at", "groupBy": "status"}),
        )
        assert [p["name"] for p in result.points] == ["active", "inactive"]

    def test_pie_without_key_is_empty(self, engine, synced):
        result = engine.chart(synced.id, chart(type="pie", table="users", columns={}))
        assert result.points == []

    def test_missing_group_key_is_unknown(self, engine, synced):
        result = engine.chart(
            synced.id, chart(type="pie", table="orders", columns={"x": "region"})
        )
        assert result.points == [
            {"name": "north", "value": 2},
            {"name": "south", "value": 2},
            {"name": "Unknown", "value": 1},
        ]

    def test_grouped_counts_sum_to_scalar(self, engine, synced):
        filters = [{"field": "amount", "operator": "gte", "value": "5"}]
        grouped = engine.chart(
            synced.id, chart(type="bar", table="orders", columns={"x": "region"}, filters=filters)
        )
        scalar = engine.chart(synced.id, chart(type="stat", table="orders", filters=filters))
        assert sum(p["value"] for p in grouped.points) == scalar.points[0]["value"] == 3
        assert grouped.row_count == scalar.row_count == 3

    def test_sum_ignores_non_numeric_values(self, engine, synced):
        result = engine.chart(
            synced.id,
            chart(type="bar", table="orders", columns={"x": "region", "y": "amount"}, aggregation="sum"),
        )
        assert result.points == [
            {"category": "Unknown", "value": 100.0},
            {"category": "north", "value": 25.5},
            {"category": "south", "value": 4.13},
        ]

    def test_avg_min_max(self, engine, synced):
        def scalar(aggregation):
            spec = chart(type="stat", table="orders", columns={"y": "amount"}, aggregation=aggregation)
            return engine.chart(synced.id, spec).points[0]["value"]

        assert scalar("avg") == 32.41
        assert scalar("min") == 4.13
        assert scalar("max") == 100

    def test_unknown_aggregation_counts(self, engine, synced):
        spec = chart(type="stat", table="orders", columns={"y": "amount"}, aggregation="median")
        assert engine.chart(synced.id, spec).points == [{"value": 5}]

    def test_iso_space_dates(self, engine, synced):
        result = engine.chart(
            synced.id,
            chart(type="area", table="orders", columns={"x": "order_date", "y": "amount"}, aggregation="sum"),
        )
        assert result.date_strategy == "iso_space"
        assert [(p["date"], p["value"]) for p in result.points] == [
            ("2024-03-01", 25.5),
            ("2024-03-02", 0),
            ("2024-03-03", 104.13),
        ]

    def test_epoch_seconds_skip_iso_strategies(self, engine, synced):
        result = engine.chart(synced.id, chart(type="line", table="events", columns={"x": "created"}))
        assert result.date_strategy == "epoch_seconds"
        assert [(p["date"], p["value"]) for p in result.points] == [
            ("2024-01-05", 2),
            ("2024-01-06", 1),
        ]

    def test_raw_prefix_is_last_resort(self, engine, synced):
        result = engine.chart(synced.id, chart(type="line", table="periods", columns={"x": "date"}))
        assert result.date_strategy == "raw_prefix"
        assert [p["date"] for p in result.points] == ["Q1 2024 (e", "Q2 2024 (e"]
        assert result.points[0]["label"] == "Q1 2024 (e"

    def test_no_rows_is_empty(self, engine, source):
        result = engine.chart(source.id, chart(type="line", table="users", columns={"x": "created_at"}))
        assert result.points == []
        assert result.date_strategy is None

    def test_numeric_eq_filter(self, engine, synced):
        spec = chart(
            type="stat",
            table="orders",
            filters=[FilterPredicate(field="amount", operator="eq", value="10")],
        )
        assert engine.chart(synced.id, spec).points == [{"value": 1}]

    def test_invalid_field_raises(self, engine, synced):
        with pytest.raises(AggregationError):
            engine.chart(synced.id, chart(type="bar", table="users", columns={"x": 'bad"field'}))

    def test_time_series_keeps_earliest_days(self, db, synced):
        engine = AggregationEngine(db, time_series_limit=2)
        result = engine.chart(
            synced.id, chart(type="line", table="orders", columns={"x": "order_date"})
        )
        assert [(p["date"], p["value"]) for p in result.points] == [
            ("2024-03-01", 2),
            ("2024-03-02", 1),
        ]

    def test_group_limit(self, db, synced):
        engine = AggregationEngine(db, group_limit=1)
        result = engine.chart(synced.id, chart(type="pie", table="users", columns={"x": "status"}))
        assert result.points == [{"name": "active", "value": 2}]


class TestKPIs:
    def test_count(self, engine, synced):
        result = engine.kpi(synced.id, KPISpec(id="k1", table="users"))
        assert (result.value, result.growth, result.row_count) == (3, 0, 3)

    def test_avg_with_previous_period_has_no_growth(self, engine, synced, db):
        db.execute(
            "UPDATE synced_rows SET synced_at = ? WHERE table_name = 'orders' AND original_id = '1'",
            (to_iso(utc_now() - timedelta(days=40)),),
        )
        spec = KPISpec(table="orders", column="amount", aggregation="avg", compareWith="previous_period")
        result = engine.kpi(synced.id, spec)
        assert result.growth == 0
        assert result.value == 32.41

    def test_count_growth_uses_sync_time(self, engine, synced, db):
        db.execute(
            "UPDATE synced_rows SET synced_at = ? WHERE table_name = 'users' AND data LIKE '%inactive%'",
            (to_iso(utc_now() - timedelta(days=45)),),
        )
        spec = KPISpec(table="users", compareWith="previous_period")
        result = engine.kpi(synced.id, spec)
        assert result.value == 3
        assert result.growth == 100.0

    def test_growth_without_previous_rows_is_zero(self, engine, synced):
        spec = KPISpec(table="users", compareWith="previous_period")
        assert engine.kpi(synced.id, spec).growth == 0

    def test_growth_rounds_to_one_place(self, db, synced):
        stamp = to_iso(utc_now() - timedelta(days=35))
        db.execute(
            "UPDATE synced_rows SET synced_at = ? WHERE table_name = 'orders' AND original_id IN ('1', '2', '3')",
            (stamp,),
        )
        engine = AggregationEngine(db)
        result = engine.kpi(synced.id, KPISpec(table="orders", compareWith="previous_period"))
        assert result.growth == -33.3

    def test_empty_table(self, engine, source):
        result = engine.kpi(source.id, KPISpec(table="users", column="amount", aggregation="sum"))
        assert (result.value, result.growth, result.row_count) == (0, 0, 0)

    def test_filters(self, engine, synced):
        spec = KPISpec(
            table="users", filters=[FilterPredicate(field="status", operator="eq", value="active")]
        )
        assert engine.kpi(synced.id, spec).value == 2


class TestCustomCharts:
    def test_groups_by_x_axis(self, engine, synced):
        spec = CustomChartSpec.model_validate(
            {
                "title": "Revenue by region",
                "dataSource": {"table": "orders", "xAxis": "region", "yAxis": ["amount", "id"]},
                "aggregation": "sum",
            }
        )
        assert engine.custom_chart(synced.id, spec) == [
            {"region": "north", "amount": 25.5, "id": 3},
            {"region": "south", "amount": 4.13, "id": 7},
        ]

    def test_filters_apply(self, engine, synced):
        spec = CustomChartSpec.model_validate(
            {
                "title": "Active users",
                "dataSource": {"table": "users", "xAxis": "status", "yAxis": ["id"]},
                "filters": [{"field": "status", "operator": "neq", "value": "inactive"}],
            }
        )
        assert engine.custom_chart(synced.id, spec) == [{"status": "active", "id": 2}]

    def test_without_y_axis(self, engine, synced):
        spec = CustomChartSpec.model_validate(
            {"title": "Empty", "dataSource": {"table": "users", "xAxis": "status", "yAxis": []}}
        )
        assert engine.custom_chart(synced.id, spec) == []
