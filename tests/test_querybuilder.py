import pytest

from dashsync.errors import AggregationError, InvalidFieldError
from dashsync.models import Aggregation, FilterPredicate, SourceKind
from dashsync.querybuilder import RowQuery, json_path


@pytest.fixture
def items(store, sync_engine):
    source = sync_engine.register_source("shop", SourceKind.MYSQL, "mysql://u:p@db.local:3306/shop")
    table = store.register_table(source.id, "items")
    store.replace_rows(
        table,
        [
            {"id": 1, "code": "42", "price": 10, "name": "50% off", "active": True},
            {"id": 2, "code": 42, "price": "20.5", "name": "widget", "active": False},
            {"id": 3, "code": "042", "price": "n/a", "name": "wid_get", "active": None},
            {"id": 4, "code": "abc", "price": None, "name": "gadget"},
        ],
        batch_size=10,
    )
    return source


def matching_ids(db, source_id, *filters):
    query = RowQuery(source_id, "items").filter(filters)
    rows = db.query(
        f"SELECT {query.text('id')} AS id FROM synced_rows WHERE {query.where_sql()} ORDER BY id",
        query.params,
    )
    return [row["id"] for row in rows]


class TestJsonPath:
    def test_quotes_field(self):
        assert json_path("created_at") == '$."created_at"'
        assert json_path("Order Date") == '$."Order Date"'

    @pytest.mark.parametrize("field", ["", None, 'a"b', "a\\b", "line\nbreak", "x" * 129])
    def test_rejects_unsafe_fields(self, field):
        with pytest.raises(InvalidFieldError):
            json_path(field)


class TestRowQuery:
    def test_values_are_bound_not_inlined(self):
        query = RowQuery("src", "items").filter(
            [FilterPredicate(field="name", operator="eq", value="x' OR 1=1 --")]
        )
        sql = query.where_sql()
        assert "OR 1=1" not in sql
        assert "x' OR 1=1 --" in query.params.values()
        assert '$."name"' in query.params.values()

    def test_count_aggregate(self):
        assert RowQuery("s", "t").aggregate(Aggregation.COUNT, "amount") == "COUNT(*)"

    def test_sum_aggregate_casts_and_coalesces(self):
        sql = RowQuery("s", "t").aggregate(Aggregation.SUM, "amount")
        assert sql.startswith("COALESCE(SUM(ds_to_number(")
        assert sql.endswith(", 0)")


class TestFilters:
    def test_no_filters_is_noop(self, db, items):
        assert matching_ids(db, items.id) == ["1", "2", "3", "4"]

    def test_numeric_eq_matches_string_and_number(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="eq", value="42"))
        assert ids == ["1", "2", "3"]

    def test_eq_with_number_value(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="eq", value=42))
        assert ids == ["1", "2", "3"]

    def test_text_eq(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="eq", value="abc"))
        assert ids == ["4"]

    def test_numeric_neq_matches_on_raw_text_difference(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="neq", value="42"))
        assert ids == ["3", "4"]

    def test_text_neq(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="neq", value="abc"))
        assert ids == ["1", "2", "3"]

    def test_comparisons_skip_non_numeric(self, db, items):
        assert matching_ids(
            db, items.id, FilterPredicate(field="price", operator="gt", value="10")
        ) == ["2"]
        assert matching_ids(
            db, items.id, FilterPredicate(field="price", operator="lte", value="20.5")
        ) == ["1", "2"]

    def test_comparison_needs_numeric_value(self, items):
        with pytest.raises(AggregationError):
            RowQuery(items.id, "items").filter(
                [FilterPredicate(field="price", operator="gte", value="cheap")]
            )

    def test_contains_escapes_wildcards(self, db, items):
        assert matching_ids(
            db, items.id, FilterPredicate(field="name", operator="contains", value="%")
        ) == ["1"]
        assert matching_ids(
            db, items.id, FilterPredicate(field="name", operator="contains", value="d_g")
        ) == ["3"]

    def test_starts_with(self, db, items):
        assert matching_ids(
            db, items.id, FilterPredicate(field="name", operator="startsWith", value="wid")
        ) == ["2", "3"]

    def test_booleans_compare_as_text(self, db, items):
        assert matching_ids(
            db, items.id, FilterPredicate(field="active", operator="eq", value=True)
        ) == ["1"]

    def test_missing_field_never_matches(self, db, items):
        assert matching_ids(
            db, items.id, FilterPredicate(field="active", operator="neq", value="true")
        ) == ["2"]

    def test_unknown_operator_falls_back_to_eq(self, db, items):
        ids = matching_ids(db, items.id, FilterPredicate(field="code", operator="like", value="abc"))
        assert ids == ["4"]

    def test_empty_field_or_value_is_skipped(self, db, items):
        ids = matching_ids(
            db,
            items.id,
            FilterPredicate(field="", operator="eq", value="x"),
            FilterPredicate(field="code", operator="eq", value=""),
        )
        assert ids == ["1", "2", "3", "4"]

    def test_filters_are_and_combined(self, db, items):
        ids = matching_ids(
            db,
            items.id,
            FilterPredicate(field="code", operator="eq", value="42"),
            FilterPredicate(field="name", operator="startsWith", value="wid"),
        )
        assert ids == ["2", "3"]
