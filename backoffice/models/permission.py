from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from backoffice.db.session import Base
from backoffice.models.common import IntIdMixin, TimestampMixin

class Permission(Base, IntIdMixin, TimestampMixin):
    __tablename__ = "permissions"
    name: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
