"""General Ledger models: chart of accounts, journal entries, and journal lines."""
from __future__ import annotations

import datetime
import decimal
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coopledger.database import Base
from coopledger.models.base import TimestampMixin, UUIDPrimaryKeyMixin, enum_type
from coopledger.models.enums import AccountType, EntrySource, NormalBalance

if TYPE_CHECKING:
    from coopledger.models.org import Cooperative, FiscalPeriod

# Storage precision; display rounds to 2 places.
MONEY = Numeric(18, 4)


class Account(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Chart of Accounts entry."""
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("cooperative_id", "code", name="uq_accounts_cooperative_code"),
    )

    cooperative_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cooperatives.id"),
        nullable=False,
        index=True,
    )
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        enum_type(AccountType),
        nullable=False,
    )
    subtype: Mapped[str | None] = mapped_column(String(50))
    normal_balance: Mapped[NormalBalance] = mapped_column(
        enum_type(NormalBalance),
        nullable=False,
    )
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id"),
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    # Generated by the ledger itself (retained earnings); never deleted.
    is_system: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    description: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))

    # ------ relationships ------
    cooperative: Mapped[Cooperative] = relationship(
        "Cooperative",
        back_populates="accounts",
    )
    parent: Mapped[Account | None] = relationship(
        "Account",
        remote_side="Account.id",
        back_populates="children",
    )
    children: Mapped[list[Account]] = relationship(
        "Account",
        back_populates="parent",
    )
    journal_lines: Mapped[list[JournalLine]] = relationship(
        "JournalLine",
        back_populates="account",
    )

    def __repr__(self) -> str:
        return f"<Account {self.code!r} {self.name!r}>"


class JournalEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A balanced, append-only set of postings (header)."""
    __tablename__ = "journal_entries"
    __table_args__ = (
        UniqueConstraint(
            "cooperative_id", "reference_number", name="uq_journal_entries_cooperative_reference"
        ),
    )

    cooperative_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cooperatives.id"),
        nullable=False,
        index=True,
    )
    fiscal_period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )
    reference_number: Mapped[str] = mapped_column(String(20), nullable=False)
    entry_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    source: Mapped[EntrySource] = mapped_column(
        enum_type(EntrySource),
        nullable=False,
        default=EntrySource.MANUAL,
    )
    reverses_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("journal_entries.id"),
        unique=True,
    )
    total_debit: Mapped[decimal.Decimal] = mapped_column(MONEY, nullable=False)
    total_credit: Mapped[decimal.Decimal] = mapped_column(MONEY, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))

    # ------ relationships ------
    cooperative: Mapped[Cooperative] = relationship(
        "Cooperative",
        back_populates="journal_entries",
    )
    fiscal_period: Mapped[FiscalPeriod] = relationship(
        "FiscalPeriod",
        lazy="selectin",
    )
    lines: Mapped[list[JournalLine]] = relationship(
        "JournalLine",
        back_populates="journal_entry",
        order_by="JournalLine.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<JournalEntry {self.reference_number!r} source={self.source.value!r}>"


class JournalLine(UUIDPrimaryKeyMixin, Base):
    """Individual debit or credit line within a journal entry."""
    __tablename__ = "journal_lines"

    journal_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("journal_entries.id"),
        nullable=False,
        index=True,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(Text)
    debit: Mapped[decimal.Decimal] = mapped_column(MONEY, nullable=False, default=decimal.Decimal("0"))
    credit: Mapped[decimal.Decimal] = mapped_column(MONEY, nullable=False, default=decimal.Decimal("0"))

    # ------ relationships ------
    journal_entry: Mapped[JournalEntry] = relationship(
        "JournalEntry",
        back_populates="lines",
    )
    account: Mapped[Account] = relationship(
        "Account",
        back_populates="journal_lines",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<JournalLine #{self.line_number} "
            f"debit={self.debit} credit={self.credit}>"
        )
