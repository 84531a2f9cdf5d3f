from sqlalchemy import Boolean, Column, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship
from backoffice.db.session import Base
from backoffice.models.common import IntIdMixin, TimestampMixin, UUIDMixin
from backoffice.models.permission import Permission

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

class Role(Base, IntIdMixin, UUIDMixin, TimestampMixin):
    __tablename__ = "roles"
    name: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    guard_name: Mapped[str] = mapped_column(String(50), default="web", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permissions: Mapped[list[Permission]] = relationship(secondary=role_permissions, order_by=Permission.name)
    users: Mapped[list["User"]] = relationship(secondary="user_roles", back_populates="roles")  # noqa: F821
