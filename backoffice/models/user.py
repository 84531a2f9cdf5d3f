from sqlalchemy import Boolean, Column, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship
from backoffice.db.session import Base
from backoffice.models.common import IntIdMixin, SoftDeleteMixin, TimestampMixin, UUIDMixin
from backoffice.models.role import Role

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

class User(Base, IntIdMixin, UUIDMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    roles: Mapped[list[Role]] = relationship(secondary=user_roles, back_populates="users", order_by=Role.name)

    @property
    def display_label(self) -> str:
        return f"{self.name} <{self.email}>"
