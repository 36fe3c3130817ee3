"""Helpers for the loosely typed values found in synced documents.

Rows arrive from very different drivers, so a document is treated as a map of
field name to ``JSONValue``. The cast helpers mirror the permissive coercion
dashboards expect: a value that cannot be read as a number is simply absent.
"""

import hashlib
import json
import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Union

JSONValue = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
Document = Dict[str, JSONValue]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_json_value(value: Any) -> JSONValue:
    """Convert a driver value into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_value(v) for v in value]
    return str(value)


def to_document(row: Mapping[str, Any]) -> Document:
    return {str(key): to_json_value(value) for key, value in row.items()}


def to_number(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default
    if not math.isfinite(number):
        return default
    return number


def to_text(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)


def looks_numeric(value: Any) -> bool:
    return to_number(value) is not None


def round_half_up(value: float, places: int) -> float:
    try:
        quantum = Decimal(1).scaleb(-places)
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return 0.0


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def serialize_document(document: Mapping[str, Any]) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def original_id(document: Mapping[str, Any]) -> str:
    """Natural id of a row, or a stable hash of its sorted key/value pairs."""
    for key in ("id", "_id"):
        value = document.get(key)
        if value is not None and value != "":
            return to_text(value)
    pairs = sorted((str(k), to_text(v, "null")) for k, v in document.items())
    digest = hashlib.md5(json.dumps(pairs).encode("utf-8")).hexdigest()
    return f"hash:{digest}"
