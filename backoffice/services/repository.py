from __future__ import annotations

import enum
import logging
import uuid
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

from sqlalchemy import func, insert, or_
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query, Session, selectinload

from backoffice.core.errors import NotFound
from backoffice.db.transaction import transaction
from backoffice.models.common import utcnow
from backoffice.schemas.query import ListQuery, PageMeta, PaginatedResult, ShowQuery
from backoffice.services.filters import FilterRegistry, apply_filters, live_rows_clause
from backoffice.services.search import apply_search
from backoffice.services.sorting import apply_sort, resolve_sort

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RelationKind(str, enum.Enum):
    MANY_TO_MANY = "many_to_many"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value or "").strip())
    except ValueError:
        return None


class BaseRepository:
    """Query executor shared by every resource.

    Subclasses describe a resource declaratively (model, searchable columns,
    sort whitelist, named filters, relations, soft-delete support) and get
    listing, lookups, CRUD, bulk mutations and row locking for free.
    """

    model: type = None
    resource_name: str | None = None
    searchable: Sequence[str] = ()
    allowed_sorts: frozenset[str] = frozenset({"id", "created_at", "updated_at"})
    default_sort: tuple[str, str] = ("id", "desc")
    filters: FilterRegistry = FilterRegistry()
    relations: Mapping[str, RelationKind] = {}
    appendable: frozenset[str] = frozenset()
    supports_soft_delete: bool = False
    soft_delete_column: str = "deleted_at"
    active_column: str = "is_active"

    def __init__(self, db: Session) -> None:
        self.db = db

    @property
    def name(self) -> str:
        return self.resource_name or self.model.__tablename__

    # --- hooks ---

    def base_query(self, *, with_trashed: bool = False, only_trashed: bool = False) -> Query:
        query = self.db.query(self.model)
        if self.supports_soft_delete:
            marker = getattr(self.model, self.soft_delete_column)
            if only_trashed:
                query = query.filter(marker.is_not(None))
            elif not with_trashed:
                query = query.filter(marker.is_(None))
        return query

    def with_relations(self, query: Query) -> Query:
        return query

    def sort_expressions(self) -> dict[str, Any]:
        return {}

    # --- composition ---

    def key_attr(self, key: str):
        return getattr(self.model, key)

    def key_values(self, key: str, values: Iterable[Any]) -> list[Any]:
        if key != "uuid":
            return list(values)
        return [parsed for parsed in (_as_uuid(value) for value in values) if parsed is not None]

    def _expand(self, query: Query, relations: Iterable[str]) -> Query:
        known = sa_inspect(self.model).relationships
        for name in sorted(set(relations)):
            if name not in known:
                logger.debug("relation skipped: %s has no relation %r", self.name, name)
                continue
            query = query.options(selectinload(getattr(self.model, name)))
        return query

    def load_counts(self, records: Sequence[Any], relations: Iterable[str]) -> None:
        """Attach ``<relation>_count`` to every record using one grouped query per relation."""
        if not records:
            return
        mapper = sa_inspect(self.model)
        pk = getattr(self.model, mapper.primary_key[0].key)
        ids = [getattr(record, pk.key) for record in records]
        for name in sorted(set(relations)):
            if name not in mapper.relationships:
                logger.debug("count skipped: %s has no relation %r", self.name, name)
                continue
            target = mapper.relationships[name].mapper
            query = (
                self.db.query(pk, func.count(target.primary_key[0]))
                .join(getattr(self.model, name))
                .filter(pk.in_(ids))
                .group_by(pk)
            )
            live = live_rows_clause(target.class_)
            if live is not None:
                query = query.filter(live)
            counts = {row_id: int(total) for row_id, total in query.all()}
            for record in records:
                setattr(record, f"{name}_count", counts.get(getattr(record, pk.key), 0))

    def compose(self, list_query: ListQuery, relations: Iterable[str] = ()) -> Query:
        query = self._expand(self.base_query(), relations)
        query = self.with_relations(query)
        query = apply_search(query, self.model, list_query.q, self.searchable)
        query = apply_filters(query, self.model, list_query.filters, self.filters)
        column, direction = resolve_sort(list_query.sort, list_query.dir, self.allowed_sorts, self.default_sort)
        return apply_sort(query, self.model, column, direction, self.sort_expressions())

    # --- listing ---

    def list(self, list_query: ListQuery, relations: Iterable[str] = (), counts: Iterable[str] = ()) -> PaginatedResult:
        logger.debug(
            "list %s q=%r page=%s per_page=%s sort=%s dir=%s filters=%s",
            self.name,
            list_query.q,
            list_query.page,
            list_query.per_page,
            list_query.sort,
            list_query.dir,
            sorted(list_query.filters),
        )
        query = self.compose(list_query, relations)
        total = query.order_by(None).count()
        records = query.offset((list_query.page - 1) * list_query.per_page).limit(list_query.per_page).all()
        self.load_counts(records, counts)
        return PaginatedResult(
            rows=records,
            meta=PageMeta.build(list_query.page, list_query.per_page, total),
        )

    paginate = list

    def paginate_by_ids_desc(
        self,
        ids: Sequence[Any],
        per_page: int,
        relations: Iterable[str] = (),
        counts: Iterable[str] = (),
    ) -> PaginatedResult:
        if not ids:
            return PaginatedResult(rows=[], meta=PageMeta.build(1, per_page, 0))
        query = self.with_relations(self._expand(self.base_query(), relations))
        query = query.filter(self.key_attr("id").in_(list(ids)))
        total = query.count()
        records = query.order_by(self.key_attr("id").desc()).limit(per_page).all()
        self.load_counts(records, counts)
        return PaginatedResult(rows=records, meta=PageMeta.build(1, per_page, total))

    def all(self) -> list[Any]:
        return self.base_query().all()

    def count(self, filters: Mapping[str, Any] | None = None) -> int:
        return apply_filters(self.base_query(), self.model, filters, self.filters).count()

    # --- lookups ---

    def _find(self, key: str, value: Any, relations: Iterable[str] = (), *, with_trashed: bool = False):
        if key == "uuid":
            value = _as_uuid(value)
            if value is None:
                return None
        query = self._expand(self.base_query(with_trashed=with_trashed), relations)
        return query.filter(self.key_attr(key) == value).first()

    def _find_or_fail(self, key: str, value: Any, relations: Iterable[str] = (), *, with_trashed: bool = False):
        record = self._find(key, value, relations, with_trashed=with_trashed)
        if record is None:
            raise NotFound(self.name, key, value)
        return record

    def find_by_id(self, record_id: Any, relations: Iterable[str] = ()):
        return self._find("id", record_id, relations)

    def find_or_fail_by_id(self, record_id: Any, relations: Iterable[str] = ()):
        return self._find_or_fail("id", record_id, relations)

    def find_by_uuid(self, record_uuid: Any, relations: Iterable[str] = ()):
        return self._find("uuid", record_uuid, relations)

    def find_or_fail_by_uuid(self, record_uuid: Any, relations: Iterable[str] = ()):
        return self._find_or_fail("uuid", record_uuid, relations)

    def exists_by_id(self, record_id: Any) -> bool:
        return self._find("id", record_id) is not None

    def exists_by_uuid(self, record_uuid: Any) -> bool:
        return self._find("uuid", record_uuid) is not None

    def _show(self, key: str, value: Any, show_query: ShowQuery):
        with_trashed = show_query.with_trashed and self.supports_soft_delete
        if key == "uuid":
            value = _as_uuid(value)
        query = self.with_relations(self._expand(self.base_query(with_trashed=with_trashed), show_query.with_))
        record = query.filter(self.key_attr(key) == value).first() if value is not None else None
        if record is None:
            raise NotFound(self.name, key, value)
        self.load_counts([record], show_query.with_count)
        return record

    def show_by_id(self, record_id: Any, show_query: ShowQuery):
        return self._show("id", record_id, show_query)

    def show_by_uuid(self, record_uuid: Any, show_query: ShowQuery):
        return self._show("uuid", record_uuid, show_query)

    # --- writes ---

    def resolve(self, record_or_id: Any, *, with_trashed: bool = False, key: str = "id"):
        if isinstance(record_or_id, self.model):
            return record_or_id
        return self._find_or_fail(key, record_or_id, with_trashed=with_trashed and self.supports_soft_delete)

    def create(self, attributes: Mapping[str, Any]):
        record = self.model(**dict(attributes))
        self.db.add(record)
        self.db.flush()
        return record

    def create_many(self, rows: Iterable[Mapping[str, Any]]) -> list[Any]:
        return [self.create(attributes) for attributes in rows]

    def update(self, record_or_id: Any, attributes: Mapping[str, Any]):
        record = self.resolve(record_or_id)
        for key, value in attributes.items():
            setattr(record, key, value)
        self.db.add(record)
        self.db.flush()
        self.db.refresh(record)
        return record

    def upsert(self, rows: Sequence[Mapping[str, Any]], unique_by: Sequence[str], update_columns: Sequence[str]) -> int:
        if not rows:
            return 0
        columns = sa_inspect(self.model).columns
        set_columns = list(update_columns)
        if "updated_at" in columns and "updated_at" not in set_columns:
            set_columns.append("updated_at")
        dialect = self.db.get_bind().dialect.name
        if dialect in {"postgresql", "sqlite"}:
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            else:
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            stmt = dialect_insert(self.model).values([dict(row) for row in rows])
            set_ = {name: stmt.excluded[name] for name in update_columns}
            if "updated_at" in set_columns and "updated_at" not in set_:
                set_["updated_at"] = utcnow()
            stmt = stmt.on_conflict_do_update(index_elements=list(unique_by), set_=set_)
            return int(self.db.execute(stmt).rowcount or 0)

        affected = 0
        for row in rows:
            match = self.base_query(with_trashed=True).filter_by(**{key: row[key] for key in unique_by}).first()
            if match is None:
                self.db.execute(insert(self.model).values(**dict(row)))
            else:
                for name in update_columns:
                    setattr(match, name, row.get(name))
                self.db.flush()
            affected += 1
        return affected

    def delete(self, record_or_id: Any) -> bool:
        record = self.resolve(record_or_id)
        if self.supports_soft_delete:
            setattr(record, self.soft_delete_column, utcnow())
        else:
            self.db.delete(record)
        self.db.flush()
        return True

    def force_delete(self, record_or_id: Any) -> bool:
        record = self.resolve(record_or_id, with_trashed=True)
        self.db.delete(record)
        self.db.flush()
        return True

    def restore(self, record_or_id: Any) -> bool:
        if not self.supports_soft_delete:
            return False
        record = self.resolve(record_or_id, with_trashed=True)
        setattr(record, self.soft_delete_column, None)
        self.db.flush()
        return True

    def set_active(self, record_or_id: Any, active: bool):
        return self.update(record_or_id, {self.active_column: bool(active)})

    # --- bulk ---

    def _bulk_delete(self, key: str, values: Sequence[Any]) -> int:
        if not values:
            return 0
        query = self.base_query().filter(self.key_attr(key).in_(self.key_values(key, values)))
        if self.supports_soft_delete:
            affected = query.update({self.soft_delete_column: utcnow()}, synchronize_session="fetch")
        else:
            affected = query.delete(synchronize_session="fetch")
        logger.info("bulk delete %s by %s: %s affected", self.name, key, affected)
        return int(affected)

    def _bulk_force_delete(self, key: str, values: Sequence[Any]) -> int:
        if not values:
            return 0
        query = self.base_query(with_trashed=True).filter(self.key_attr(key).in_(self.key_values(key, values)))
        affected = query.delete(synchronize_session="fetch")
        logger.info("bulk force delete %s by %s: %s affected", self.name, key, affected)
        return int(affected)

    def _bulk_restore(self, key: str, values: Sequence[Any]) -> int:
        if not values or not self.supports_soft_delete:
            return 0
        query = self.base_query(only_trashed=True).filter(self.key_attr(key).in_(self.key_values(key, values)))
        affected = query.update({self.soft_delete_column: None}, synchronize_session="fetch")
        logger.info("bulk restore %s by %s: %s affected", self.name, key, affected)
        return int(affected)

    def _bulk_set_active(self, key: str, values: Sequence[Any], active: bool) -> int:
        if not values:
            return 0
        flag = getattr(self.model, self.active_column)
        query = self.base_query().filter(
            self.key_attr(key).in_(self.key_values(key, values)),
            or_(flag.is_(None), flag != bool(active)),
        )
        affected = query.update({self.active_column: bool(active)}, synchronize_session="fetch")
        logger.info("bulk set %s=%s on %s by %s: %s affected", self.active_column, bool(active), self.name, key, affected)
        return int(affected)

    def bulk_delete_by_ids(self, ids: Sequence[Any]) -> int:
        return self._bulk_delete("id", ids)

    def bulk_delete_by_uuids(self, uuids: Sequence[Any]) -> int:
        return self._bulk_delete("uuid", uuids)

    def bulk_force_delete_by_ids(self, ids: Sequence[Any]) -> int:
        return self._bulk_force_delete("id", ids)

    def bulk_force_delete_by_uuids(self, uuids: Sequence[Any]) -> int:
        return self._bulk_force_delete("uuid", uuids)

    def bulk_restore_by_ids(self, ids: Sequence[Any]) -> int:
        return self._bulk_restore("id", ids)

    def bulk_restore_by_uuids(self, uuids: Sequence[Any]) -> int:
        return self._bulk_restore("uuid", uuids)

    def bulk_set_active_by_ids(self, ids: Sequence[Any], active: bool) -> int:
        return self._bulk_set_active("id", ids, active)

    def bulk_set_active_by_uuids(self, uuids: Sequence[Any], active: bool) -> int:
        return self._bulk_set_active("uuid", uuids, active)

    # --- pessimistic locking ---

    def locked_query(self, key: str, value: Any) -> Query:
        if key == "uuid":
            value = _as_uuid(value)
        return (
            self.base_query()
            .filter(self.key_attr(key) == value)
            .with_for_update()
            .populate_existing()
        )

    def _with_lock(self, key: str, value: Any, callback: Callable[[Any], T]) -> T:
        with transaction(self.db):
            record = self.locked_query(key, value).first()
            if record is None:
                raise NotFound(self.name, key, value)
            return callback(record)

    def with_pessimistic_lock_by_id(self, record_id: Any, callback: Callable[[Any], T]) -> T:
        return self._with_lock("id", record_id, callback)

    def with_pessimistic_lock_by_uuid(self, record_uuid: Any, callback: Callable[[Any], T]) -> T:
        return self._with_lock("uuid", record_uuid, callback)
