"""Organizational models: cooperatives (tenants) and their fiscal periods."""
from __future__ import annotations

import datetime
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, String, Uuid, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coopledger.database import Base
from coopledger.models.base import TimestampMixin, UUIDPrimaryKeyMixin, enum_type
from coopledger.models.enums import PeriodStatus

if TYPE_CHECKING:
    from coopledger.models.gl import Account, JournalEntry


class Cooperative(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A cooperative; owns its accounts, periods and entries exclusively."""
    __tablename__ = "cooperatives"

    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )

    # ------ relationships ------
    accounts: Mapped[list[Account]] = relationship(
        "Account",
        back_populates="cooperative",
    )
    fiscal_periods: Mapped[list[FiscalPeriod]] = relationship(
        "FiscalPeriod",
        back_populates="cooperative",
    )
    journal_entries: Mapped[list[JournalEntry]] = relationship(
        "JournalEntry",
        back_populates="cooperative",
    )

    def __repr__(self) -> str:
        return f"<Cooperative {self.code!r} {self.name!r}>"


class FiscalPeriod(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """An accounting window; ``open`` accepts postings, ``closed`` is final."""
    __tablename__ = "fiscal_periods"
    __table_args__ = (
        Index("ix_fiscal_periods_coop_dates", "cooperative_id", "start_date", "end_date"),
    )

    cooperative_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cooperatives.id"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[PeriodStatus] = mapped_column(
        enum_type(PeriodStatus),
        nullable=False,
        default=PeriodStatus.OPEN,
    )
    closed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))

    # ------ relationships ------
    cooperative: Mapped[Cooperative] = relationship(
        "Cooperative",
        back_populates="fiscal_periods",
    )

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def contains(self, day: datetime.date) -> bool:
        return self.start_date <= day <= self.end_date

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.name!r} status={self.status.value!r}>"
