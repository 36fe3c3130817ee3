"""Parameterized SQL fragments over the JSON documents in ``synced_rows``.

Every user supplied value, JSON paths included, is bound as a named parameter.
Field names are additionally checked against an allow-list before they are
turned into a quoted JSON path, so a column name can never change the shape of
the path or the statement.
"""

import logging
import re
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .dates import DATE_STRATEGIES
from .errors import AggregationError, InvalidFieldError
from .models import Aggregation, FilterPredicate
from .values import looks_numeric, to_number

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r'^[^"\\\x00-\x1f]{1,128}$')

_SQL_AGGREGATES = {
    Aggregation.SUM: "SUM",
    Aggregation.AVG: "AVG",
    Aggregation.MIN: "MIN",
    Aggregation.MAX: "MAX",
}

_COMPARISONS = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "contains", "startsWith")


def json_path(field: Optional[str]) -> str:
    if not field or not _FIELD_NAME.match(field):
        raise InvalidFieldError(field)
    return f'$."{field}"'


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def register_functions(conn: sqlite3.Connection) -> None:
    """Expose the value casts and date strategies to SQL."""
    conn.create_function("ds_to_number", 1, to_number, deterministic=True)
    for strategy in DATE_STRATEGIES:
        conn.create_function(strategy.sql_function, 1, strategy.parse, deterministic=True)


class RowQuery:
    """Accumulates SQL fragments and their named parameters for one statement."""

    def __init__(self, source_id: str, table_name: str):
        self.params: Dict[str, Any] = {}
        self.where: List[str] = [
            f"source_id = {self.bind(source_id)}",
            f"table_name = {self.bind(table_name)}",
        ]

    def bind(self, value: Any) -> str:
        name = f"p{len(self.params)}"
        self.params[name] = value
        return f":{name}"

    def text(self, field: Optional[str]) -> str:
        """Field value as text; JSON null and missing fields are NULL."""
        path = self.bind(json_path(field))
        return (
            f"(CASE json_type(data, {path}) "
            "WHEN 'true' THEN 'true' WHEN 'false' THEN 'false' WHEN 'null' THEN NULL "
            f"ELSE CAST(json_extract(data, {path}) AS TEXT) END)"
        )

    def number(self, field: Optional[str]) -> str:
        return f"ds_to_number({self.text(field)})"

    def aggregate(self, aggregation: Aggregation, field: Optional[str]) -> str:
        if aggregation == Aggregation.COUNT:
            return "COUNT(*)"
        return f"COALESCE({_SQL_AGGREGATES[aggregation]}({self.number(field)}), 0)"

    def require(self, clause: str) -> "RowQuery":
        self.where.append(clause)
        return self

    def filter(self, filters: Iterable[FilterPredicate]) -> "RowQuery":
        for predicate in filters:
            if not predicate.field or predicate.value is None or predicate.value == "":
                continue
            self.where.append(self._predicate(predicate))
        return self

    def _predicate(self, predicate: FilterPredicate) -> str:
        value_text = self.text(predicate.field)
        value = str(predicate.value)
        operator = predicate.operator
        if operator not in OPERATORS:
            logger.warning("Unknown filter operator %r, using eq", operator)
            operator = "eq"

        if operator in ("eq", "neq"):
            op = "=" if operator == "eq" else "!="
            if looks_numeric(value):
                # either the raw text or the numeric cast may satisfy the comparison
                match = (
                    f"({value_text} {op} {self.bind(value)} OR "
                    f"COALESCE(ds_to_number({value_text}) {op} {self.bind(to_number(value))}, 0))"
                )
            else:
                match = f"({value_text} {op} {self.bind(value)})"
        elif operator in _COMPARISONS:
            bound = to_number(value)
            if bound is None:
                raise AggregationError(
                    f"Filter on '{predicate.field}' needs a numeric value, got {value!r}"
                )
            match = f"ds_to_number({value_text}) {_COMPARISONS[operator]} {self.bind(bound)}"
        elif operator == "contains":
            match = f"{value_text} LIKE {self.bind('%' + _escape_like(value) + '%')} ESCAPE '\\'"
        else:
            match = f"{value_text} LIKE {self.bind(_escape_like(value) + '%')} ESCAPE '\\'"
        return f"({value_text} IS NOT NULL AND {match})"

    def where_sql(self) -> str:
        return " AND ".join(self.where)
