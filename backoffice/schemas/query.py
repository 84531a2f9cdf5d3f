from __future__ import annotations

import math
from typing import Any, Iterable, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from backoffice.core.config import settings

Dir = Literal["asc", "desc"]

_TRUE_LITERALS = {"true", "1"}
_BOOL_LITERALS = {"true", "false", "1", "0"}


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _normalize_direction(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in {"asc", "desc"} else "desc"


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def normalize_filters(filters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Normalize raw request filters into filter DSL values.

    Empty values are dropped, ``{"from", "to"}`` ranges keep only their
    non-empty bounds, lists lose empty members and ``"true"/"false"/"1"/"0"``
    strings become booleans.
    """
    normalized: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if _is_empty(value):
            continue
        if isinstance(value, Mapping) and ("from" in value or "to" in value):
            bounds = {bound: value.get(bound) for bound in ("from", "to") if not _is_empty(value.get(bound))}
            if bounds:
                normalized[key] = bounds
            continue
        if isinstance(value, (list, tuple, set)):
            items = [item for item in value if not _is_empty(item)]
            if items:
                normalized[key] = items
            continue
        if isinstance(value, str) and value.strip().lower() in _BOOL_LITERALS:
            normalized[key] = value.strip().lower() in _TRUE_LITERALS
            continue
        normalized[key] = value
    return normalized


def _decode_bracket_filters(items: Iterable[tuple[str, str]]) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    for raw_key, value in items:
        if not raw_key.startswith("filters[") or not raw_key.endswith("]"):
            continue
        parts = raw_key[len("filters["):-1].split("][")
        name = parts[0]
        if not name:
            continue
        if len(parts) == 1:
            filters[name] = value
        elif parts[1] == "":
            current = filters.get(name)
            filters[name] = (current if isinstance(current, list) else []) + [value]
        else:
            current = filters.get(name)
            bucket = current if isinstance(current, dict) else {}
            bucket[parts[1]] = value
            filters[name] = bucket
    return filters


class ListQuery(BaseModel):
    """Search, filter, sort and pagination request for a resource listing."""

    model_config = ConfigDict(frozen=True)

    q: str | None = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default_factory=lambda: settings.LIST_DEFAULT_PER_PAGE, gt=0)
    sort: str | None = None
    # Kept as plain text: an unknown direction is resolved to "desc" at sort time.
    dir: str | None = "desc"
    filters: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "ListQuery":
        page = _to_int(params.get("page"), 1)
        per_page = _to_int(params.get("per_page"), settings.LIST_DEFAULT_PER_PAGE)
        if per_page <= 0:
            per_page = settings.LIST_DEFAULT_PER_PAGE
        raw_filters = params.get("filters")
        q = params.get("q")
        return cls(
            q=str(q) if not _is_empty(q) else None,
            page=page if page >= 1 else 1,
            per_page=min(per_page, settings.LIST_MAX_PER_PAGE),
            sort=str(params.get("sort")) if not _is_empty(params.get("sort")) else None,
            dir=_normalize_direction(params.get("dir", "desc")),
            filters=normalize_filters(raw_filters if isinstance(raw_filters, Mapping) else None),
        )

    @classmethod
    def from_query_string_items(cls, items: Iterable[tuple[str, str]]) -> "ListQuery":
        pairs = list(items)
        params: dict[str, Any] = {key: value for key, value in pairs if not key.startswith("filters[")}
        params["filters"] = _decode_bracket_filters(pairs)
        return cls.from_params(params)

    def for_page(self, page: int, per_page: int | None = None) -> "ListQuery":
        return self.model_copy(update={"page": page, "per_page": per_page or self.per_page})


def _as_name_set(value: Any) -> frozenset[str]:
    if _is_empty(value):
        return frozenset()
    if isinstance(value, str):
        return frozenset(part.strip() for part in value.split(",") if part.strip())
    return frozenset(str(part).strip() for part in value if str(part).strip())


class ShowQuery(BaseModel):
    """Relation/count expansion and soft-delete visibility for a single fetch."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    with_: frozenset[str] = Field(default_factory=frozenset, alias="with")
    with_count: frozenset[str] = Field(default_factory=frozenset, alias="withCount")
    with_trashed: bool = Field(default=False, alias="withTrashed")
    append: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "ShowQuery":
        trashed = params.get("withTrashed")
        if isinstance(trashed, str):
            trashed = trashed.strip().lower() in {"1", "true", "yes"}
        return cls(
            with_=_as_name_set(params.get("with")),
            with_count=_as_name_set(params.get("withCount")),
            with_trashed=bool(trashed),
            append=_as_name_set(params.get("append")),
        )

    @property
    def has_relations(self) -> bool:
        return bool(self.with_)

    @property
    def has_counts(self) -> bool:
        return bool(self.with_count)

    @property
    def has_appends(self) -> bool:
        return bool(self.append)


class PageMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_page: int = Field(alias="currentPage")
    per_page: int = Field(alias="perPage")
    total: int
    last_page: int = Field(alias="lastPage")

    @classmethod
    def build(cls, page: int, per_page: int, total: int) -> "PageMeta":
        return cls(
            current_page=page,
            per_page=per_page,
            total=total,
            last_page=max(1, math.ceil(total / per_page)),
        )


class PaginatedResult(BaseModel):
    """One page of records (executor) or projected rows (orchestrator)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rows: List[Any] = []
    meta: PageMeta

    def to_payload(self) -> dict[str, Any]:
        return {"rows": list(self.rows), "meta": self.meta.model_dump(by_alias=True)}
