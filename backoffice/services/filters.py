from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterator, Mapping

from sqlalchemy import String, cast, func, select
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query

from backoffice.core.errors import InvalidFilterValue

logger = logging.getLogger(__name__)

FilterHandler = Callable[[Query, Any], Query]

LIKE_SUFFIX = "_like"
BETWEEN_SUFFIX = "_between"
IN_SUFFIX = "_in"
IS_SUFFIX = "_is"
COUNT_SUFFIX = "_count"


class FilterRegistry:
    """Named filter handlers of a resource, resolved by exact filter key."""

    def __init__(self, handlers: Mapping[str, FilterHandler] | None = None) -> None:
        self._handlers: dict[str, FilterHandler] = dict(handlers or {})

    def register(self, key: str) -> Callable[[FilterHandler], FilterHandler]:
        def _decorator(handler: FilterHandler) -> FilterHandler:
            self._handlers[key] = handler
            return handler

        return _decorator

    def get(self, key: str) -> FilterHandler | None:
        return self._handlers.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


def _coerce_bool_filter_value(column_key: str, value):
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise InvalidFilterValue(column_key, "boolean")


def _coerce_number_filter_value(column_key: str, value, python_type):
    if isinstance(value, bool):
        # "1"/"0" arrive as booleans after wire normalization.
        value = int(value)
    if python_type in {int, float} and isinstance(value, (int, float)) and not isinstance(value, bool):
        return python_type(value)
    if python_type is Decimal and isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if not text:
        raise InvalidFilterValue(column_key, "number")
    normalized = text.replace(",", ".")
    try:
        if python_type is int:
            return int(normalized)
        if python_type is float:
            return float(normalized)
        return Decimal(normalized)
    except (ValueError, TypeError, InvalidOperation):
        raise InvalidFilterValue(column_key, "number")


def _coerce_date_filter_value(column_key: str, value):
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    text = str(value or "").strip()
    if not text:
        raise InvalidFilterValue(column_key, "date")
    try:
        # Accept either YYYY-MM-DD or full ISO datetime and take its date part.
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidFilterValue(column_key, "date")


def _coerce_datetime_filter_value(column_key: str, value):
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, datetime.min.time())
    else:
        text = str(value or "").strip()
        if not text:
            raise InvalidFilterValue(column_key, "datetime")
        try:
            if "T" not in text and " " not in text and len(text) == 10:
                # Date-only filter value for timestamp columns -> start of the day.
                parsed = datetime.combine(date.fromisoformat(text), datetime.min.time())
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidFilterValue(column_key, "datetime")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _flag_text(value) -> str:
    return ("1" if value else "0") if isinstance(value, bool) else str(value)


def _column_python_type(column):
    try:
        return column.property.columns[0].type.python_type
    except Exception:
        return None


def coerce_filter_value(column, value):
    python_type = _column_python_type(column)
    if python_type is None:
        return value
    if python_type is uuid.UUID:
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value or "").strip())
        except ValueError:
            raise InvalidFilterValue(column.key, "uuid")
    if python_type is bool:
        return _coerce_bool_filter_value(column.key, value)
    if python_type in {int, float, Decimal}:
        return _coerce_number_filter_value(column.key, value, python_type)
    if python_type is datetime:
        return _coerce_datetime_filter_value(column.key, value)
    if python_type is date:
        return _coerce_date_filter_value(column.key, value)
    if python_type is str and isinstance(value, bool):
        return _flag_text(value)
    return value


def _column_attr(model, name: str):
    mapper = sa_inspect(model)
    if name not in mapper.columns:
        logger.debug("filter skipped: %s has no column %r", mapper.class_.__name__, name)
        return None
    return getattr(model, name)


def _strip_suffix(key: str, suffix: str) -> str:
    return key[: -len(suffix)]


def _like_predicate(column, name: str, value):
    needle = _flag_text(value)
    if name == "id" or name.endswith("_id"):
        # Numeric keys: substring search on their text form, no lower-casing.
        return cast(column, String).like(f"%{needle}%")
    return func.lower(cast(column, String)).like(f"%{needle.lower()}%")


def live_rows_clause(mapped_class):
    """Exclude soft-deleted rows of a related class, if it supports soft delete."""
    marker = getattr(mapped_class, "deleted_at", None)
    if marker is None or "deleted_at" not in sa_inspect(mapped_class).columns:
        return None
    return marker.is_(None)


def relation_count_at_least(query: Query, model, relation: str, minimum: int) -> Query:
    mapper = sa_inspect(model)
    if relation not in mapper.relationships:
        logger.debug("count filter skipped: %s has no relation %r", mapper.class_.__name__, relation)
        return query
    if minimum <= 0:
        return query
    pk = getattr(model, mapper.primary_key[0].key)
    target = mapper.relationships[relation].mapper
    matching_ids = select(pk).join(getattr(model, relation))
    live = live_rows_clause(target.class_)
    if live is not None:
        matching_ids = matching_ids.where(live)
    matching_ids = matching_ids.group_by(pk).having(func.count(target.primary_key[0]) >= minimum)
    return query.filter(pk.in_(matching_ids))


def _apply_standard_filter(query: Query, model, key: str, value) -> Query:
    if key.endswith(LIKE_SUFFIX):
        name = _strip_suffix(key, LIKE_SUFFIX)
        column = _column_attr(model, name)
        if column is None:
            return query
        return query.filter(_like_predicate(column, name, value))

    if key.endswith(BETWEEN_SUFFIX) and isinstance(value, Mapping):
        column = _column_attr(model, _strip_suffix(key, BETWEEN_SUFFIX))
        if column is None:
            return query
        if value.get("from") is not None:
            query = query.filter(column >= coerce_filter_value(column, value["from"]))
        if value.get("to") is not None:
            query = query.filter(column <= coerce_filter_value(column, value["to"]))
        return query

    if key.endswith(IN_SUFFIX) and isinstance(value, (list, tuple, set, frozenset)):
        column = _column_attr(model, _strip_suffix(key, IN_SUFFIX))
        if column is None:
            return query
        return query.filter(column.in_([coerce_filter_value(column, item) for item in value]))

    if key.endswith(IS_SUFFIX):
        column = _column_attr(model, _strip_suffix(key, IS_SUFFIX))
        if column is None:
            return query
        if value == "null":
            return query.filter(column.is_(None))
        if value == "notnull":
            return query.filter(column.is_not(None))
        return query

    if key.endswith(COUNT_SUFFIX) and key not in sa_inspect(model).columns:
        try:
            minimum = int(value)
        except (TypeError, ValueError):
            raise InvalidFilterValue(key, "number")
        return relation_count_at_least(query, model, _strip_suffix(key, COUNT_SUFFIX), minimum)

    column = _column_attr(model, key)
    if column is None:
        return query
    return query.filter(column == coerce_filter_value(column, value))


def apply_filters(
    query: Query,
    model,
    filters: Mapping[str, Any] | None,
    handlers: FilterRegistry | Mapping[str, FilterHandler] | None = None,
) -> Query:
    for key, value in (filters or {}).items():
        if value is None:
            continue
        handler = handlers.get(key) if handlers is not None else None
        if handler is not None:
            query = handler(query, value)
            continue
        query = _apply_standard_filter(query, model, key, value)
    return query
