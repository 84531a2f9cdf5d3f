from __future__ import annotations

import logging
from typing import Any, Collection, Mapping

from sqlalchemy import asc, desc
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query

logger = logging.getLogger(__name__)

SORT_DIRECTIONS = ("asc", "desc")


def resolve_sort(
    requested_column: str | None,
    requested_dir: str | None,
    allowed: Collection[str],
    default: tuple[str, str],
) -> tuple[str, str]:
    if not requested_column or requested_column not in allowed:
        return default
    # A malformed direction falls back to "desc", not to the default direction.
    direction = requested_dir if requested_dir in SORT_DIRECTIONS else "desc"
    return requested_column, direction


def apply_sort(
    query: Query,
    model,
    column: str,
    direction: str,
    expressions: Mapping[str, Any] | None = None,
) -> Query:
    expression = (expressions or {}).get(column)
    if expression is None:
        if column not in sa_inspect(model).columns:
            logger.debug("sort skipped: %s has no column %r", model.__name__, column)
            return query
        expression = getattr(model, column)
    return query.order_by(asc(expression) if direction == "asc" else desc(expression))
