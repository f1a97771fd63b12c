"""Base model utilities for the cooperative ledger.

Provides a UUID primary-key mixin so every model automatically gets
an ``id`` column of type ``Uuid`` generated on insert, and a
``created_at`` timestamp mixin.
"""
from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column


class UUIDPrimaryKeyMixin:
    """Mixin that adds a UUID primary key column named ``id``."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class TimestampMixin:
    """Mixin that adds a ``created_at`` column stamped on insert."""

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )


def enum_type(enum_cls: type[enum.Enum]) -> Enum:
    """String-backed enum column storing member values (portable across dialects)."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
