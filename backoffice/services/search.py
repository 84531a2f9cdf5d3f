from __future__ import annotations

from typing import Sequence

from sqlalchemy import String, cast, func, or_
from sqlalchemy.orm import Query


def apply_search(query: Query, model, term: str | None, columns: Sequence[str]) -> Query:
    if not term or not columns:
        return query
    needle = f"%{term.lower()}%"
    return query.filter(
        or_(*[func.lower(cast(getattr(model, column), String)).like(needle) for column in columns])
    )
