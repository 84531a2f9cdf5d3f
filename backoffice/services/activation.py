from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backoffice.db.transaction import transaction

logger = logging.getLogger(__name__)

# Receives the session and candidate primary keys, returns the keys that have dependents.
DependentsLookup = Callable[[Session, Sequence[Any]], Collection[Any]]


@dataclass
class ActivationGate:
    """Guarded ACTIVE/INACTIVE batch transition.

    Records already in the target state are never touched. When deactivating,
    the guards run in order and each one only sees the candidates the previous
    guard let through; rejected records are silently left out of the update.
    """

    active_column: str = "is_active"
    name_column: str = "name"
    protected_names: frozenset[str] = field(default_factory=frozenset)
    block_protected: bool = True
    dependents: DependentsLookup | None = None
    block_if_has_dependents: bool = False

    def _deactivation_guards(self, db: Session, candidates: list[Any]) -> list[Any]:
        if self.block_protected and self.protected_names:
            kept = [row for row in candidates if getattr(row, self.name_column) not in self.protected_names]
            if len(kept) != len(candidates):
                logger.info("deactivation skipped for %s protected record(s)", len(candidates) - len(kept))
            candidates = kept
        if self.block_if_has_dependents and self.dependents is not None and candidates:
            busy = set(self.dependents(db, [row.id for row in candidates]))
            if busy:
                logger.info("deactivation skipped for %s record(s) with dependents", len(busy))
                candidates = [row for row in candidates if row.id not in busy]
        return candidates

    def apply(self, repository, key: str, values: Sequence[Any], active: bool) -> int:
        if not values:
            return 0
        target = bool(active)
        db, model = repository.db, repository.model
        with transaction(db):
            flag = getattr(model, self.active_column)
            rows = (
                repository.base_query()
                .filter(repository.key_attr(key).in_(repository.key_values(key, values)))
                .filter(or_(flag.is_(None), flag != target))
                .all()
            )
            candidates = list(rows)
            if not candidates:
                return 0
            if not target:
                candidates = self._deactivation_guards(db, candidates)
            ids = [row.id for row in candidates]
            if not ids:
                return 0
            return int(
                db.query(model)
                .filter(model.id.in_(ids))
                .update({self.active_column: target}, synchronize_session="fetch")
            )
