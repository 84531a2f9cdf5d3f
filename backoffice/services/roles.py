from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Query, Session

from backoffice.core.config import settings
from backoffice.core.errors import DomainRuleViolation, InvalidFilterValue
from backoffice.models.permission import Permission
from backoffice.models.role import Role, role_permissions
from backoffice.models.user import User, user_roles
from backoffice.services.activation import ActivationGate
from backoffice.services.filters import FilterRegistry
from backoffice.services.repository import BaseRepository, RelationKind
from backoffice.services.resource_service import ResourceService

logger = logging.getLogger(__name__)

USERS_PREVIEW_LIMIT = 10

role_filters = FilterRegistry()


def permissions_count_expr():
    return (
        select(func.count(role_permissions.c.permission_id))
        .where(role_permissions.c.role_id == Role.id)
        .correlate(Role)
        .scalar_subquery()
    )


def users_count_expr():
    return (
        select(func.count(user_roles.c.user_id))
        .select_from(user_roles.join(User, User.id == user_roles.c.user_id))
        .where(user_roles.c.role_id == Role.id, User.deleted_at.is_(None))
        .correlate(Role)
        .scalar_subquery()
    )


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidFilterValue(key, "number")


def _as_day(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise InvalidFilterValue("created_at", "date")


def _names(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(part) for part in value if str(part).strip()]
    return []


@role_filters.register("permissions")
def filter_by_permission_names(query: Query, value: Any) -> Query:
    names = _names(value)
    if not names:
        return query
    return query.filter(Role.permissions.any(Permission.name.in_(names)))


@role_filters.register("permissions_count_min")
def filter_permissions_count_min(query: Query, value: Any) -> Query:
    return query.filter(permissions_count_expr() >= _as_int("permissions_count_min", value))


@role_filters.register("permissions_count_max")
def filter_permissions_count_max(query: Query, value: Any) -> Query:
    return query.filter(permissions_count_expr() <= _as_int("permissions_count_max", value))


@role_filters.register("users_count_min")
def filter_users_count_min(query: Query, value: Any) -> Query:
    return query.filter(users_count_expr() >= _as_int("users_count_min", value))


@role_filters.register("users_count_max")
def filter_users_count_max(query: Query, value: Any) -> Query:
    return query.filter(users_count_expr() <= _as_int("users_count_max", value))


@role_filters.register("created_between")
def filter_created_between(query: Query, value: Any) -> Query:
    if not isinstance(value, Mapping):
        return query
    # Whole-day bounds: "to" includes every moment of that day.
    if value.get("from") is not None:
        start = datetime.combine(_as_day(value["from"]), time.min, tzinfo=timezone.utc)
        query = query.filter(Role.created_at >= start)
    if value.get("to") is not None:
        end = datetime.combine(_as_day(value["to"]) + timedelta(days=1), time.min, tzinfo=timezone.utc)
        query = query.filter(Role.created_at < end)
    return query


def roles_with_users(db: Session, role_ids: Sequence[Any]) -> set[Any]:
    rows = db.execute(
        select(user_roles.c.role_id)
        .join(User, User.id == user_roles.c.user_id)
        .where(user_roles.c.role_id.in_(list(role_ids)), User.deleted_at.is_(None))
        .distinct()
    )
    return {row[0] for row in rows}


def user_name_previews(db: Session, role_ids: Sequence[Any]) -> dict[Any, list[str]]:
    """First ``USERS_PREVIEW_LIMIT`` live user names per role, in one query."""
    previews: dict[Any, list[str]] = {role_id: [] for role_id in role_ids}
    if not previews:
        return previews
    ranked = (
        select(
            user_roles.c.role_id.label("role_id"),
            User.name.label("name"),
            func.row_number()
            .over(partition_by=user_roles.c.role_id, order_by=(User.name, User.id))
            .label("position"),
        )
        .join(User, User.id == user_roles.c.user_id)
        .where(user_roles.c.role_id.in_(list(previews)), User.deleted_at.is_(None))
        .subquery()
    )
    rows = db.execute(
        select(ranked.c.role_id, ranked.c.name)
        .where(ranked.c.position <= USERS_PREVIEW_LIMIT)
        .order_by(ranked.c.role_id, ranked.c.position)
    )
    for role_id, name in rows:
        previews[role_id].append(name)
    return previews


class RoleRepository(BaseRepository):
    model = Role
    searchable = ("name",)
    allowed_sorts = frozenset(
        {"id", "name", "guard_name", "created_at", "updated_at", "permissions_count", "users_count", "is_active"}
    )
    default_sort = ("id", "desc")
    filters = role_filters
    relations = {
        "permissions": RelationKind.MANY_TO_MANY,
        "users": RelationKind.MANY_TO_MANY,
    }

    def sort_expressions(self) -> dict[str, Any]:
        return {
            "permissions_count": permissions_count_expr(),
            "users_count": users_count_expr(),
        }


class PermissionCache:
    """Permission names per active role, kept until a role mutation forgets them."""

    def __init__(self) -> None:
        self._by_role: dict[str, frozenset[str]] = {}

    def permissions_for(self, db: Session, role_name: str) -> frozenset[str]:
        cached = self._by_role.get(role_name)
        if cached is not None:
            return cached
        rows = db.execute(
            select(Permission.name)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .join(Role, Role.id == role_permissions.c.role_id)
            .where(Role.name == role_name, Role.is_active.is_(True))
        )
        names = frozenset(row[0] for row in rows)
        self._by_role[role_name] = names
        return names

    def forget(self, *_: Any) -> None:
        if self._by_role:
            logger.info("permission cache cleared (%s roles)", len(self._by_role))
        self._by_role.clear()

    def __len__(self) -> int:
        return len(self._by_role)


class RoleService(ResourceService):
    repository_class = RoleRepository
    list_relations = ("permissions",)
    list_counts = ("permissions", "users")
    has_delete_guards = True

    def __init__(self, db: Session, repository=None, exporters=None, permission_cache: PermissionCache | None = None):
        super().__init__(db, repository, exporters)
        self._user_previews: dict[int, list[str]] = {}
        if permission_cache is not None:
            self.add_mutation_listener(permission_cache.forget)

    @property
    def activation_gate(self) -> ActivationGate:
        return ActivationGate(
            protected_names=frozenset(settings.roles_protected_names_set),
            block_protected=settings.ROLES_BLOCK_DEACTIVATE_PROTECTED,
            dependents=roles_with_users,
            block_if_has_dependents=settings.ROLES_BLOCK_DEACTIVATE_IF_HAS_USERS,
        )

    def ensure_deletable(self, record: Role) -> None:
        if record.name in settings.roles_protected_names_set:
            raise DomainRuleViolation(f'Role "{record.name}" is protected and cannot be deleted', role_id=record.id)
        if roles_with_users(self.db, [record.id]):
            raise DomainRuleViolation(f'Role "{record.name}" still has users assigned', role_id=record.id)

    def prepare_rows(self, records: Sequence[Role]) -> None:
        self._user_previews = user_name_previews(self.db, [record.id for record in records])

    def user_names(self, role: Role) -> list[str]:
        # Page previews are single use so a later projection of the same role re-reads storage.
        preview = self._user_previews.pop(role.id, None)
        if preview is not None:
            return preview
        return user_name_previews(self.db, [role.id])[role.id]

    def to_row(self, record: Role) -> dict[str, Any]:
        row = super().to_row(record)
        permissions = [
            {"id": permission.id, "name": permission.name, "description": permission.description}
            for permission in record.permissions
        ]
        users = self.user_names(record)
        users_count = row.get("users_count", len(users))
        users_details = ", ".join(users)
        if users_count > len(users):
            users_details = f"{users_details} (+{users_count - len(users)} more)".strip()
        row.update(
            {
                "permissions": permissions,
                "permissions_ids": [permission["id"] for permission in permissions],
                "permissions_count": row.get("permissions_count", len(permissions)),
                "permissions_details": ", ".join(p["description"] or p["name"] for p in permissions),
                "users": users,
                "users_count": users_count,
                "users_details": users_details,
            }
        )
        return row

    def default_export_columns(self) -> dict[str, str]:
        return {
            "id": "#",
            "name": "Name",
            "guard_name": "Guard",
            "permissions_details": "Permissions",
            "users_details": "Users",
            "is_active": "Status",
            "created_at": "Created",
        }
