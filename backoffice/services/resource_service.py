from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, TypeVar

from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import Conflict, DomainRuleViolation
from backoffice.db.transaction import after_commit, transaction
from backoffice.schemas.query import ListQuery, PaginatedResult, ShowQuery
from backoffice.services.activation import ActivationGate
from backoffice.services.exporters import Columns, ExporterRegistry, ExportResult, column_keys, default_exporters
from backoffice.services.repository import BaseRepository, RelationKind
from backoffice.services.serialization import loaded_counts, loaded_relations, record_to_dict, serialize_value

logger = logging.getLogger(__name__)

T = TypeVar("T")

MutationListener = Callable[[str, Any], None]

RELATION_IDS_SUFFIX = "_ids"


def _version_seconds(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return math.floor(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return math.floor(value.timestamp())


class ResourceService:
    """Mutation orchestrator for one resource.

    Wraps a repository with transactions, create/update hooks, optimistic
    locking, many-to-many sync of ``<relation>_ids`` fields, row projection
    and streaming export. Concrete services override the hooks and the
    ``to_row``/``to_item`` projections.
    """

    repository_class: type[BaseRepository] = BaseRepository
    list_relations: Sequence[str] = ()
    list_counts: Sequence[str] = ()
    activation_gate: ActivationGate | None = None
    has_delete_guards: bool = False
    continue_on_rule_violation: bool = True
    export_page_size: int | None = None
    version_column: str = "updated_at"

    def __init__(
        self,
        db: Session,
        repository: BaseRepository | None = None,
        exporters: ExporterRegistry | None = None,
    ) -> None:
        self.db = db
        self.repo = repository if repository is not None else self.repository_class(db)
        self.exporters = exporters if exporters is not None else default_exporters()
        self._mutation_listeners: list[MutationListener] = []

    # --- transactions & listeners ---

    def transaction(self):
        return transaction(self.db)

    def add_mutation_listener(self, listener: MutationListener) -> None:
        self._mutation_listeners.append(listener)

    def _mutate(self, action: str, operation: Callable[[], T]) -> T:
        with self.transaction():
            result = operation()
            for listener in self._mutation_listeners:
                after_commit(self.db, lambda listener=listener: listener(action, result))
        return result

    # --- reads ---

    def _project(self, result: PaginatedResult) -> PaginatedResult:
        self.prepare_rows(result.rows)
        return PaginatedResult(rows=[self.to_row(record) for record in result.rows], meta=result.meta)

    def list(
        self,
        list_query: ListQuery,
        relations: Iterable[str] | None = None,
        counts: Iterable[str] | None = None,
    ) -> PaginatedResult:
        result = self.repo.list(
            list_query,
            self.list_relations if relations is None else relations,
            self.list_counts if counts is None else counts,
        )
        return self._project(result)

    def list_by_ids_desc(self, ids: Sequence[Any], per_page: int) -> PaginatedResult:
        return self._project(self.repo.paginate_by_ids_desc(ids, per_page, self.list_relations, self.list_counts))

    def get_by_id(self, record_id: Any, relations: Iterable[str] = ()):
        return self.repo.find_by_id(record_id, relations)

    def get_or_fail_by_id(self, record_id: Any, relations: Iterable[str] = ()):
        return self.repo.find_or_fail_by_id(record_id, relations)

    def get_by_uuid(self, record_uuid: Any, relations: Iterable[str] = ()):
        return self.repo.find_by_uuid(record_uuid, relations)

    def get_or_fail_by_uuid(self, record_uuid: Any, relations: Iterable[str] = ()):
        return self.repo.find_or_fail_by_uuid(record_uuid, relations)

    def _show_payload(self, record: Any, show_query: ShowQuery) -> dict[str, Any]:
        meta = {
            "loaded_relations": loaded_relations(record),
            "loaded_counts": sorted(loaded_counts(record)),
            "appended": [],
        }
        item = self.to_item(record)
        for name in sorted(show_query.append):
            if name not in self.repo.appendable:
                logger.debug("append skipped: %s does not expose %r", self.repo.name, name)
                continue
            item[name] = serialize_value(getattr(record, name))
            meta["appended"].append(name)
        return {"item": item, "meta": meta}

    def show_by_id(self, record_id: Any, show_query: ShowQuery) -> dict[str, Any]:
        return self._show_payload(self.repo.show_by_id(record_id, show_query), show_query)

    def show_by_uuid(self, record_uuid: Any, show_query: ShowQuery) -> dict[str, Any]:
        return self._show_payload(self.repo.show_by_uuid(record_uuid, show_query), show_query)

    # --- projections ---

    def prepare_rows(self, records: Sequence[Any]) -> None:
        """Batch-load whatever ``to_row`` needs for a page of records."""

    def to_row(self, record: Any) -> dict[str, Any]:
        return {**record_to_dict(record), **loaded_counts(record)}

    def to_item(self, record: Any) -> dict[str, Any]:
        return self.to_row(record)

    # --- hooks ---

    def before_create(self, attributes: dict[str, Any]) -> None:
        pass

    def after_create(self, record: Any, attributes: Mapping[str, Any]) -> None:
        pass

    def before_update(self, record: Any, attributes: dict[str, Any]) -> None:
        pass

    def after_update(self, record: Any, attributes: Mapping[str, Any]) -> None:
        pass

    def ensure_deletable(self, record: Any) -> None:
        """Raise DomainRuleViolation to block deleting ``record``."""

    # --- relation sync ---

    def pop_relation_ids(self, attributes: dict[str, Any]) -> dict[str, list[Any]]:
        columns = sa_inspect(self.repo.model).columns
        relation_ids: dict[str, list[Any]] = {}
        for key in list(attributes):
            value = attributes[key]
            if key.endswith(RELATION_IDS_SUFFIX) and key not in columns and isinstance(value, (list, tuple, set)):
                relation_ids[key[: -len(RELATION_IDS_SUFFIX)]] = list(attributes.pop(key))
        return relation_ids

    def sync_relations(self, record: Any, relation_ids: Mapping[str, Sequence[Any]]) -> None:
        mapper = sa_inspect(self.repo.model)
        for name, ids in relation_ids.items():
            if self.repo.relations.get(name) != RelationKind.MANY_TO_MANY or name not in mapper.relationships:
                logger.debug("relation sync skipped: %s has no many-to-many %r", self.repo.name, name)
                continue
            target = mapper.relationships[name].mapper
            target_pk = getattr(target.class_, target.primary_key[0].key)
            items = self.db.query(target.class_).filter(target_pk.in_(list(ids))).all() if ids else []
            setattr(record, name, items)
        if relation_ids:
            self.db.flush()

    # --- writes ---

    def create(self, attributes: Mapping[str, Any]):
        def _create():
            data = dict(attributes)
            self.before_create(data)
            relation_ids = self.pop_relation_ids(data)
            record = self.repo.create(data)
            self.sync_relations(record, relation_ids)
            self.after_create(record, {**data, **{f"{name}_ids": ids for name, ids in relation_ids.items()}})
            return record

        return self._mutate("create", _create)

    def create_many(self, rows: Iterable[Mapping[str, Any]]) -> list[Any]:
        return self._mutate("create_many", lambda: self.repo.create_many(rows))

    def upsert(self, rows: Sequence[Mapping[str, Any]], unique_by: Sequence[str], update_columns: Sequence[str]) -> int:
        return self._mutate("upsert", lambda: self.repo.upsert(rows, unique_by, update_columns))

    def ensure_version(self, record: Any, expected_version: Any) -> None:
        current = getattr(record, self.version_column)
        if _version_seconds(current) is None or _version_seconds(current) != _version_seconds(expected_version):
            logger.warning(
                "optimistic lock conflict on %s id=%s expected=%s current=%s",
                self.repo.name,
                getattr(record, "id", None),
                expected_version,
                current,
            )
            raise Conflict(self.repo.name, getattr(record, "id", None), expected_version, serialize_value(current))

    def update(self, record_or_id: Any, attributes: Mapping[str, Any], expected_version: Any = None):
        def _update():
            record = self.repo.resolve(record_or_id)
            if expected_version is not None:
                if sa_inspect(record).persistent:
                    self.db.refresh(record)
                self.ensure_version(record, expected_version)
            data = dict(attributes)
            self.before_update(record, data)
            relation_ids = self.pop_relation_ids(data)
            record = self.repo.update(record, data)
            self.sync_relations(record, relation_ids)
            self.after_update(record, {**data, **{f"{name}_ids": ids for name, ids in relation_ids.items()}})
            return record

        return self._mutate("update", _update)

    def delete(self, record_or_id: Any) -> bool:
        def _delete():
            record = self.repo.resolve(record_or_id)
            self.ensure_deletable(record)
            return self.repo.delete(record)

        return self._mutate("delete", _delete)

    def force_delete(self, record_or_id: Any) -> bool:
        def _force_delete():
            record = self.repo.resolve(record_or_id, with_trashed=True)
            self.ensure_deletable(record)
            return self.repo.force_delete(record)

        return self._mutate("force_delete", _force_delete)

    def restore(self, record_or_id: Any) -> bool:
        return self._mutate("restore", lambda: self.repo.restore(record_or_id))

    def set_active(self, record_or_id: Any, active: bool):
        return self._mutate("set_active", lambda: self.repo.set_active(record_or_id, active))

    # --- bulk ---

    def _guarded_bulk_delete(self, key: str, values: Sequence[Any], *, force: bool, keep_going: bool) -> int:
        records = (
            self.repo.base_query(with_trashed=force)
            .filter(self.repo.key_attr(key).in_(self.repo.key_values(key, values)))
            .all()
        )
        deleted = 0
        for record in records:
            try:
                self.ensure_deletable(record)
            except DomainRuleViolation as exc:
                if not keep_going:
                    raise
                logger.warning("bulk delete skipped %s id=%s: %s", self.repo.name, record.id, exc.detail)
                continue
            if force:
                self.repo.force_delete(record)
            else:
                self.repo.delete(record)
            deleted += 1
        return deleted

    def _bulk_delete(self, key: str, values: Sequence[Any], *, force: bool, continue_on_rule_violation: bool | None) -> int:
        if not values:
            return 0
        action = "bulk_force_delete" if force else "bulk_delete"
        if not self.has_delete_guards:
            method = getattr(self.repo, f"{action}_by_{key}s")
            return self._mutate(action, lambda: method(values))
        keep_going = self.continue_on_rule_violation if continue_on_rule_violation is None else continue_on_rule_violation
        return self._mutate(action, lambda: self._guarded_bulk_delete(key, values, force=force, keep_going=keep_going))

    def bulk_delete_by_ids(self, ids: Sequence[Any], *, continue_on_rule_violation: bool | None = None) -> int:
        return self._bulk_delete("id", ids, force=False, continue_on_rule_violation=continue_on_rule_violation)

    def bulk_delete_by_uuids(self, uuids: Sequence[Any], *, continue_on_rule_violation: bool | None = None) -> int:
        return self._bulk_delete("uuid", uuids, force=False, continue_on_rule_violation=continue_on_rule_violation)

    def bulk_force_delete_by_ids(self, ids: Sequence[Any], *, continue_on_rule_violation: bool | None = None) -> int:
        return self._bulk_delete("id", ids, force=True, continue_on_rule_violation=continue_on_rule_violation)

    def bulk_force_delete_by_uuids(self, uuids: Sequence[Any], *, continue_on_rule_violation: bool | None = None) -> int:
        return self._bulk_delete("uuid", uuids, force=True, continue_on_rule_violation=continue_on_rule_violation)

    def bulk_restore_by_ids(self, ids: Sequence[Any]) -> int:
        if not ids:
            return 0
        return self._mutate("bulk_restore", lambda: self.repo.bulk_restore_by_ids(ids))

    def bulk_restore_by_uuids(self, uuids: Sequence[Any]) -> int:
        if not uuids:
            return 0
        return self._mutate("bulk_restore", lambda: self.repo.bulk_restore_by_uuids(uuids))

    def _bulk_set_active(self, key: str, values: Sequence[Any], active: bool) -> int:
        if not values:
            return 0
        if self.activation_gate is not None:
            gate = self.activation_gate
            return self._mutate("bulk_set_active", lambda: gate.apply(self.repo, key, values, active))
        method = getattr(self.repo, f"bulk_set_active_by_{key}s")
        return self._mutate("bulk_set_active", lambda: method(values, active))

    def bulk_set_active_by_ids(self, ids: Sequence[Any], active: bool) -> int:
        return self._bulk_set_active("id", ids, active)

    def bulk_set_active_by_uuids(self, uuids: Sequence[Any], active: bool) -> int:
        return self._bulk_set_active("uuid", uuids, active)

    # --- locking ---

    def with_pessimistic_lock_by_id(self, record_id: Any, callback: Callable[[Any], T]) -> T:
        return self.repo.with_pessimistic_lock_by_id(record_id, callback)

    def with_pessimistic_lock_by_uuid(self, record_uuid: Any, callback: Callable[[Any], T]) -> T:
        return self.repo.with_pessimistic_lock_by_uuid(record_uuid, callback)

    # --- export ---

    def default_export_columns(self) -> Columns:
        return ["id", "created_at", "updated_at"]

    def default_export_filename(self, fmt: str) -> str:
        return f"{self.repo.name}_export_{datetime.now():%Y%m%d_%H%M%S}.{fmt}"

    def export_rows(self, list_query: ListQuery, columns: Columns | None = None) -> Iterator[dict[str, Any]]:
        """Yield projected rows page by page; each page is a fresh query."""
        keys = set(column_keys(columns)) if columns else None
        page_size = self.export_page_size or settings.EXPORT_PAGE_SIZE
        page = 1
        while True:
            result = self.repo.list(list_query.for_page(page, page_size), self.list_relations, self.list_counts)
            self.prepare_rows(result.rows)
            for record in result.rows:
                row = self.to_row(record)
                if keys is not None:
                    row = {key: value for key, value in row.items() if key in keys}
                yield row
            page += 1
            if page > result.meta.last_page:
                break

    def export(
        self,
        list_query: ListQuery,
        fmt: str,
        columns: Columns | None = None,
        filename: str | None = None,
    ) -> ExportResult:
        exporter = self.exporters.resolve(fmt)
        selected = columns or self.default_export_columns()
        return ExportResult(
            stream=exporter.stream(self.export_rows(list_query, selected), selected),
            filename=filename or self.default_export_filename(getattr(exporter, "extension", fmt.lower())),
            media_type=exporter.media_type,
        )
