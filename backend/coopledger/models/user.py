"""User model for ledger authentication and authorization."""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, String, Uuid, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coopledger.database import Base
from coopledger.models.base import TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from coopledger.models.org import Cooperative


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A ledger user with role-based access, optionally bound to one cooperative."""
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False
    )
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    cooperative_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cooperatives.id"),
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )

    # ------ relationships ------
    cooperative: Mapped[Cooperative | None] = relationship(
        "Cooperative",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.username!r} role={self.role!r}>"
