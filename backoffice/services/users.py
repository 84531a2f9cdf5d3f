from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Query

from backoffice.core.security import hash_password
from backoffice.models.role import Role
from backoffice.models.user import User, user_roles
from backoffice.services.filters import FilterRegistry
from backoffice.services.repository import BaseRepository, RelationKind
from backoffice.services.resource_service import ResourceService

user_filters = FilterRegistry()


@user_filters.register("roles")
def filter_by_role_names(query: Query, value: Any) -> Query:
    names = [value] if isinstance(value, str) else [str(item) for item in value or []]
    names = [name.strip() for name in names if name.strip()]
    if not names:
        return query
    return query.filter(User.roles.any(Role.name.in_(names)))


@user_filters.register("role_id")
def filter_by_role_id(query: Query, value: Any) -> Query:
    try:
        role_id = int(value)
    except (TypeError, ValueError):
        return query
    return query.filter(User.roles.any(Role.id == role_id))


class UserRepository(BaseRepository):
    model = User
    searchable = ("name", "email")
    allowed_sorts = frozenset({"id", "name", "email", "is_active", "created_at", "updated_at", "roles_count"})
    filters = user_filters
    relations = {"roles": RelationKind.MANY_TO_MANY}
    appendable = frozenset({"display_label"})
    supports_soft_delete = True

    def sort_expressions(self) -> dict[str, Any]:
        roles_count = (
            select(func.count(user_roles.c.role_id))
            .where(user_roles.c.user_id == User.id)
            .correlate(User)
            .scalar_subquery()
        )
        return {"roles_count": roles_count}


class UserService(ResourceService):
    repository_class = UserRepository
    list_relations = ("roles",)
    list_counts = ("roles",)

    @staticmethod
    def _hash_password(attributes: dict[str, Any]) -> None:
        password = attributes.pop("password", None)
        if password:
            attributes["password_hash"] = hash_password(password)

    def before_create(self, attributes: dict[str, Any]) -> None:
        self._hash_password(attributes)

    def before_update(self, record: User, attributes: dict[str, Any]) -> None:
        self._hash_password(attributes)

    def to_row(self, record: User) -> dict[str, Any]:
        row = super().to_row(record)
        row.pop("password_hash", None)
        row["roles"] = [role.name for role in record.roles]
        row["roles_ids"] = [role.id for role in record.roles]
        return row

    def default_export_columns(self) -> dict[str, str]:
        return {
            "id": "#",
            "name": "Name",
            "email": "Email",
            "roles": "Roles",
            "is_active": "Status",
            "created_at": "Created",
        }
