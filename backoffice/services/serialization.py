from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.inspection import inspect as sa_inspect


def serialize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: serialize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def record_to_dict(record: Any) -> dict[str, Any]:
    mapper = sa_inspect(type(record))
    return {column.key: serialize_value(getattr(record, column.key)) for column in mapper.columns}


def loaded_counts(record: Any) -> dict[str, int]:
    """``<relation>_count`` values attached to a record by the repository."""
    mapper = sa_inspect(type(record))
    counts: dict[str, int] = {}
    for name in mapper.relationships.keys():
        value = record.__dict__.get(f"{name}_count")
        if value is not None:
            counts[f"{name}_count"] = int(value)
    return counts


def loaded_relations(record: Any) -> list[str]:
    state = sa_inspect(record)
    return sorted(name for name in sa_inspect(type(record)).relationships.keys() if name not in state.unloaded)
