"""Journal entry validation, posting and reversal.

Posted entries are append-only.  A correction is a new entry of source
``reversal`` whose lines swap the debits and credits of the original, and
an entry can be reversed at most once.
"""
from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import LedgerConfig
from coopledger.errors import (
    ConflictError,
    InsufficientLinesError,
    InvalidAccountError,
    InvalidFiscalPeriodError,
    NotFoundError,
    UnbalancedEntryError,
    ValidationError,
)
from coopledger.models.enums import EntrySource, PeriodStatus
from coopledger.models.gl import Account, JournalEntry, JournalLine
from coopledger.models.org import FiscalPeriod
from coopledger.services.balances import ZERO, BalanceCache, to_money
from coopledger.services.cooperatives import require_cooperative
from coopledger.services.events import EventBus, JournalEntryCreated
from coopledger.services.transactions import CooperativeLocks, run_with_retry

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class LineDraft:
    account_id: uuid.UUID
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str | None = None


@dataclasses.dataclass
class EntryDraft:
    """An entry as submitted, before validation."""

    cooperative_id: uuid.UUID
    entry_date: datetime.date
    lines: list[LineDraft]
    fiscal_period_id: uuid.UUID | None = None
    description: str | None = None
    source: EntrySource = EntrySource.MANUAL
    reverses_entry_id: uuid.UUID | None = None
    created_by: uuid.UUID | None = None


# Numeric(18, 4) leaves 14 integer digits.
MAX_AMOUNT = Decimal(10) ** 14


def _line_amount(value: Decimal | None, line_number: int, side: str) -> Decimal:
    try:
        amount = ZERO if value is None else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(
            f"Line {side} amount is not a number", {"line_number": line_number}
        ) from None
    # Quantizing past the decimal context precision raises, so bound first.
    if amount.is_finite() and abs(amount) < MAX_AMOUNT:
        amount = to_money(amount)
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        raise ValidationError(
            f"Line {side} amount is out of range",
            {"line_number": line_number, "max_amount": str(MAX_AMOUNT)},
        )
    return amount


class JournalEntryValidator:
    """Checks a draft against the posting rules, stopping at the first failure.

    1. at least two lines, each with exactly one positive side
    2. every account exists, is active and belongs to the cooperative
       (closing entries may name inactive accounts)
    3. debits equal credits within the tolerance
    4. the period belongs to the cooperative, is open and contains the date
    """

    def __init__(self, db: AsyncSession, tolerance: Decimal) -> None:
        self.db = db
        self.tolerance = tolerance

    async def validate(
        self, draft: EntryDraft, period: FiscalPeriod | None
    ) -> dict[uuid.UUID, Account]:
        self._check_lines(draft)
        accounts = await self._check_accounts(draft)
        self._check_balance(draft)
        self._check_period(draft, period)
        return accounts

    @staticmethod
    def _check_lines(draft: EntryDraft) -> None:
        if len(draft.lines) < 2:
            raise InsufficientLinesError(
                "A journal entry needs at least two lines",
                {"line_count": len(draft.lines)},
            )
        total_debit = total_credit = ZERO
        for number, line in enumerate(draft.lines, start=1):
            debit = _line_amount(line.debit, number, "debit")
            credit = _line_amount(line.credit, number, "credit")
            if debit < 0 or credit < 0:
                raise ValidationError(
                    "Line amounts cannot be negative", {"line_number": number}
                )
            if (debit > 0) == (credit > 0):
                raise ValidationError(
                    "Each line must have either a debit or a credit amount, not both",
                    {"line_number": number},
                )
            total_debit += debit
            total_credit += credit
        if max(total_debit, total_credit) >= MAX_AMOUNT:
            raise ValidationError(
                "Entry total is out of range", {"max_amount": str(MAX_AMOUNT)}
            )

    async def _check_accounts(self, draft: EntryDraft) -> dict[uuid.UUID, Account]:
        wanted = {line.account_id for line in draft.lines}
        result = await self.db.execute(select(Account).where(Account.id.in_(wanted)))
        accounts = {a.id: a for a in result.scalars().all()}

        for number, line in enumerate(draft.lines, start=1):
            account = accounts.get(line.account_id)
            if account is None or account.cooperative_id != draft.cooperative_id:
                raise InvalidAccountError(
                    "Account does not exist in this cooperative",
                    {"line_number": number, "account_id": str(line.account_id)},
                )
            if not account.is_active and draft.source != EntrySource.CLOSING:
                raise InvalidAccountError(
                    f"Account {account.code} is inactive",
                    {"line_number": number, "account_id": str(line.account_id)},
                )
        return accounts

    def _check_balance(self, draft: EntryDraft) -> None:
        total_debit = sum((to_money(line.debit) for line in draft.lines), ZERO)
        total_credit = sum((to_money(line.credit) for line in draft.lines), ZERO)
        if abs(total_debit - total_credit) > self.tolerance:
            raise UnbalancedEntryError(total_debit, total_credit)

    @staticmethod
    def _check_period(draft: EntryDraft, period: FiscalPeriod | None) -> None:
        if period is None or period.cooperative_id != draft.cooperative_id:
            raise InvalidFiscalPeriodError(
                "No open fiscal period covers this entry",
                {
                    "fiscal_period_id": str(draft.fiscal_period_id) if draft.fiscal_period_id else None,
                    "entry_date": draft.entry_date.isoformat(),
                },
            )
        if not period.is_open:
            raise InvalidFiscalPeriodError(
                f"Fiscal period {period.name} is closed",
                {"fiscal_period_id": str(period.id)},
            )
        if not period.contains(draft.entry_date):
            raise InvalidFiscalPeriodError(
                f"Entry date {draft.entry_date} is outside fiscal period {period.name}",
                {
                    "fiscal_period_id": str(period.id),
                    "start_date": period.start_date.isoformat(),
                    "end_date": period.end_date.isoformat(),
                },
            )


def entry_created_fact(entry: JournalEntry) -> JournalEntryCreated:
    return JournalEntryCreated(
        cooperative_id=entry.cooperative_id,
        journal_entry_id=entry.id,
        reference_number=entry.reference_number,
        fiscal_period_id=entry.fiscal_period_id,
        entry_date=entry.entry_date,
        source=entry.source.value,
        total_debit=entry.total_debit,
        total_credit=entry.total_credit,
        created_by=entry.created_by,
        reverses_entry_id=entry.reverses_entry_id,
    )


class JournalService:
    def __init__(
        self,
        db: AsyncSession,
        config: LedgerConfig,
        events: EventBus,
        cache: BalanceCache,
        locks: CooperativeLocks,
    ) -> None:
        self.db = db
        self.config = config
        self.events = events
        self.cache = cache
        self.locks = locks
        self.validator = JournalEntryValidator(db, config.balance_tolerance)

    async def create(
        self,
        cooperative_id: uuid.UUID,
        entry_date: datetime.date,
        lines: list[LineDraft],
        created_by: uuid.UUID | None = None,
        fiscal_period_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> JournalEntry:
        """Validate and post a manual entry.

        Without ``fiscal_period_id`` the open period containing
        ``entry_date`` is used.
        """
        await require_cooperative(self.db, cooperative_id)
        draft = EntryDraft(
            cooperative_id=cooperative_id,
            entry_date=entry_date,
            lines=lines,
            fiscal_period_id=fiscal_period_id,
            description=description,
            created_by=created_by,
        )

        async def _post() -> JournalEntry:
            period = await self._lock_period(draft)
            entry = await self.stage_entry(draft, period)
            await self.db.commit()
            self.cache.invalidate(cooperative_id)
            return entry

        async with self.locks.for_cooperative(cooperative_id):
            entry = await run_with_retry(self.db, _post)

        logger.info(
            "Journal entry posted: %s %s (cooperative=%s, period=%s)",
            entry.reference_number, entry.id, cooperative_id, entry.fiscal_period_id,
        )
        self.events.emit(entry_created_fact(entry))
        return entry

    async def reverse(
        self,
        cooperative_id: uuid.UUID,
        entry_id: uuid.UUID,
        created_by: uuid.UUID | None = None,
        entry_date: datetime.date | None = None,
        description: str | None = None,
    ) -> JournalEntry:
        """Post the mirror image of an entry into the currently open period."""

        async def _reverse() -> JournalEntry:
            original = await self.get(cooperative_id, entry_id)
            already = await self.db.execute(
                select(JournalEntry.reference_number).where(
                    JournalEntry.reverses_entry_id == entry_id
                )
            )
            existing_ref = already.scalar_one_or_none()
            if existing_ref is not None:
                raise ConflictError(
                    f"Entry {original.reference_number} has already been reversed",
                    {"reversal_reference_number": existing_ref},
                )

            period = await self._lock_active_period(cooperative_id)
            if period is None:
                raise InvalidFiscalPeriodError(
                    "No open fiscal period to post the reversal into"
                )
            day = entry_date
            if day is None:
                day = min(max(datetime.date.today(), period.start_date), period.end_date)

            draft = EntryDraft(
                cooperative_id=cooperative_id,
                entry_date=day,
                lines=[
                    LineDraft(
                        account_id=line.account_id,
                        debit=line.credit,
                        credit=line.debit,
                        description=line.description,
                    )
                    for line in original.lines
                ],
                fiscal_period_id=period.id,
                description=description or f"Reversal of {original.reference_number}",
                source=EntrySource.REVERSAL,
                reverses_entry_id=original.id,
                created_by=created_by,
            )
            entry = await self.stage_entry(draft, period)
            await self.db.commit()
            self.cache.invalidate(cooperative_id)
            return entry

        async with self.locks.for_cooperative(cooperative_id):
            reversal = await run_with_retry(self.db, _reverse)

        logger.info(
            "Journal entry %s reversed by %s (cooperative=%s)",
            entry_id, reversal.reference_number, cooperative_id,
        )
        self.events.emit(entry_created_fact(reversal))
        return reversal

    async def stage_entry(self, draft: EntryDraft, period: FiscalPeriod | None) -> JournalEntry:
        """Validate ``draft`` and add it to the session without committing.

        The caller holds the cooperative lock and owns the transaction.
        """
        accounts = await self.validator.validate(draft, period)

        total_debit = to_money(sum((to_money(line.debit) for line in draft.lines), ZERO))
        total_credit = to_money(sum((to_money(line.credit) for line in draft.lines), ZERO))
        entry = JournalEntry(
            cooperative_id=draft.cooperative_id,
            fiscal_period=period,
            fiscal_period_id=period.id,
            reference_number=await self._next_reference(draft.cooperative_id, draft.entry_date),
            entry_date=draft.entry_date,
            description=draft.description,
            source=draft.source,
            reverses_entry_id=draft.reverses_entry_id,
            total_debit=total_debit,
            total_credit=total_credit,
            created_by=draft.created_by,
        )
        entry.lines = [
            JournalLine(
                line_number=number,
                account=accounts[line.account_id],
                description=line.description,
                debit=to_money(line.debit),
                credit=to_money(line.credit),
            )
            for number, line in enumerate(draft.lines, start=1)
        ]
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def _next_reference(self, cooperative_id: uuid.UUID, day: datetime.date) -> str:
        result = await self.db.execute(
            select(func.count(JournalEntry.id)).where(JournalEntry.cooperative_id == cooperative_id)
        )
        sequence = (result.scalar_one() or 0) + 1
        return f"JE{day:%Y%m}{sequence:06d}"

    async def _lock_period(self, draft: EntryDraft) -> FiscalPeriod | None:
        stmt = select(FiscalPeriod).where(FiscalPeriod.cooperative_id == draft.cooperative_id)
        if draft.fiscal_period_id is not None:
            stmt = stmt.where(FiscalPeriod.id == draft.fiscal_period_id)
        else:
            stmt = stmt.where(
                FiscalPeriod.status == PeriodStatus.OPEN,
                FiscalPeriod.start_date <= draft.entry_date,
                FiscalPeriod.end_date >= draft.entry_date,
            )
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def _lock_active_period(self, cooperative_id: uuid.UUID) -> FiscalPeriod | None:
        result = await self.db.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.cooperative_id == cooperative_id,
                FiscalPeriod.status == PeriodStatus.OPEN,
            )
            .order_by(FiscalPeriod.created_at.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, cooperative_id: uuid.UUID, entry_id: uuid.UUID) -> JournalEntry:
        entry = await self.db.get(JournalEntry, entry_id)
        if entry is None or entry.cooperative_id != cooperative_id:
            raise NotFoundError("Journal entry not found", {"journal_entry_id": str(entry_id)})
        return entry

    async def list_entries(
        self,
        cooperative_id: uuid.UUID,
        fiscal_period_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[JournalEntry], int]:
        base = select(JournalEntry).where(JournalEntry.cooperative_id == cooperative_id)
        if fiscal_period_id is not None:
            base = base.where(JournalEntry.fiscal_period_id == fiscal_period_id)

        count = await self.db.execute(select(func.count()).select_from(base.subquery()))
        total = count.scalar_one()

        result = await self.db.execute(
            base.order_by(JournalEntry.entry_date.desc(), JournalEntry.reference_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total
