"""Fiscal Period Manager.

A period is created ``open`` and closed exactly once.  There is no reopen:
after ``close`` commits, the journal validator rejects every posting that
names the period.
"""
from __future__ import annotations

import calendar
import dataclasses
import datetime
import logging
import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import LedgerConfig
from coopledger.errors import (
    AlreadyClosedError,
    NotFoundError,
    OpenPeriodExistsError,
    OverlapError,
    ValidationError,
)
from coopledger.models.enums import (
    AccountType,
    EntrySource,
    PeriodStatus,
    normal_balance_for,
)
from coopledger.models.gl import Account, JournalEntry, JournalLine
from coopledger.models.org import FiscalPeriod
from coopledger.services.balances import ZERO, BalanceCache, BalanceCalculator, to_money
from coopledger.services.cooperatives import require_cooperative
from coopledger.services.events import (
    AccountCreated,
    EventBus,
    FiscalPeriodClosed,
    FiscalPeriodCreated,
    LedgerFact,
)
from coopledger.services.journal import (
    EntryDraft,
    JournalService,
    LineDraft,
    entry_created_fact,
)
from coopledger.services.transactions import CooperativeLocks, run_with_retry

logger = logging.getLogger(__name__)


def _month_end(day: datetime.date) -> datetime.date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def _add_months(day: datetime.date, months: int) -> datetime.date:
    index = day.year * 12 + day.month - 1 + months
    return datetime.date(index // 12, index % 12 + 1, 1)


def default_period_name(start: datetime.date, end: datetime.date) -> str:
    if start == datetime.date(start.year, 1, 1) and end == datetime.date(start.year, 12, 31):
        return f"FY{start.year}"
    if start.day == 1 and end == _month_end(start):
        return start.strftime("%Y-%m")
    return f"{start.isoformat()} - {end.isoformat()}"


def next_period_range(period: FiscalPeriod) -> tuple[datetime.date, datetime.date]:
    """The range that directly follows ``period`` and has the same length.

    Month-aligned periods (first day to some month end) advance by whole
    months, everything else by the same number of days.
    """
    start, end = period.start_date, period.end_date
    next_start = end + datetime.timedelta(days=1)
    if start.day == 1 and end == _month_end(end):
        months = (end.year - start.year) * 12 + end.month - start.month + 1
        return next_start, _month_end(_add_months(next_start, months - 1))
    return next_start, next_start + (end - start)


@dataclasses.dataclass
class ClosingCheck:
    """Readiness of a period to close.  Errors block a close, warnings do not."""

    period: FiscalPeriod
    entry_count: int
    total_debit: Decimal
    total_credit: Decimal
    unbalanced_entries: list[str] = dataclasses.field(default_factory=list)
    errors: list[str] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.errors


class FiscalPeriodManager:
    def __init__(
        self,
        db: AsyncSession,
        config: LedgerConfig,
        events: EventBus,
        cache: BalanceCache,
        locks: CooperativeLocks,
        balances: BalanceCalculator,
        journal: JournalService,
    ) -> None:
        self.db = db
        self.config = config
        self.events = events
        self.cache = cache
        self.locks = locks
        self.balances = balances
        self.journal = journal

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        cooperative_id: uuid.UUID,
        start_date: datetime.date,
        end_date: datetime.date,
        name: str | None = None,
        created_by: uuid.UUID | None = None,
    ) -> FiscalPeriod:
        if start_date >= end_date:
            raise ValidationError(
                "Fiscal period start date must be before its end date",
                {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        await require_cooperative(self.db, cooperative_id)

        async def _create() -> FiscalPeriod:
            period = await self._insert_period(
                cooperative_id, start_date, end_date, name, created_by
            )
            await self.db.commit()
            return period

        async with self.locks.for_cooperative(cooperative_id):
            period = await run_with_retry(self.db, _create)

        logger.info(
            "Fiscal period created: %s %s..%s (cooperative=%s)",
            period.name, start_date, end_date, cooperative_id,
        )
        self.events.emit(self._created_fact(period))
        return period

    async def _insert_period(
        self,
        cooperative_id: uuid.UUID,
        start_date: datetime.date,
        end_date: datetime.date,
        name: str | None,
        created_by: uuid.UUID | None,
    ) -> FiscalPeriod:
        overlap = await self.db.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.cooperative_id == cooperative_id,
                FiscalPeriod.start_date <= end_date,
                FiscalPeriod.end_date >= start_date,
            ).limit(1)
        )
        clash = overlap.scalar_one_or_none()
        if clash is not None:
            raise OverlapError(
                f"Fiscal period overlaps existing period {clash.name}",
                {
                    "fiscal_period_id": str(clash.id),
                    "start_date": clash.start_date.isoformat(),
                    "end_date": clash.end_date.isoformat(),
                },
            )

        still_open = await self.db.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.cooperative_id == cooperative_id,
                FiscalPeriod.status == PeriodStatus.OPEN,
            ).limit(1)
        )
        open_period = still_open.scalar_one_or_none()
        if open_period is not None:
            raise OpenPeriodExistsError(
                f"Fiscal period {open_period.name} is still open; close it first",
                {"fiscal_period_id": str(open_period.id)},
            )

        period = FiscalPeriod(
            cooperative_id=cooperative_id,
            name=(name or "").strip() or default_period_name(start_date, end_date),
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
            created_by=created_by,
        )
        self.db.add(period)
        await self.db.flush()
        return period

    async def get(self, cooperative_id: uuid.UUID, period_id: uuid.UUID) -> FiscalPeriod:
        period = await self.db.get(FiscalPeriod, period_id)
        if period is None or period.cooperative_id != cooperative_id:
            raise NotFoundError("Fiscal period not found", {"fiscal_period_id": str(period_id)})
        return period

    async def list_periods(
        self, cooperative_id: uuid.UUID, status: PeriodStatus | None = None
    ) -> list[FiscalPeriod]:
        stmt = select(FiscalPeriod).where(FiscalPeriod.cooperative_id == cooperative_id)
        if status is not None:
            stmt = stmt.where(FiscalPeriod.status == status)
        result = await self.db.execute(stmt.order_by(FiscalPeriod.start_date))
        return list(result.scalars().all())

    async def get_active(self, cooperative_id: uuid.UUID) -> FiscalPeriod | None:
        result = await self.db.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.cooperative_id == cooperative_id,
                FiscalPeriod.status == PeriodStatus.OPEN,
            )
            .order_by(FiscalPeriod.created_at.desc(), FiscalPeriod.start_date.desc())
        )
        periods = list(result.scalars().all())
        if len(periods) > 1:
            logger.warning(
                "Cooperative %s has %d open fiscal periods (%s); using %s",
                cooperative_id,
                len(periods),
                ", ".join(f"{p.name}/{p.id}" for p in periods),
                periods[0].id,
            )
        return periods[0] if periods else None

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def check_closing(
        self,
        cooperative_id: uuid.UUID,
        period_id: uuid.UUID,
        today: datetime.date | None = None,
    ) -> ClosingCheck:
        period = await self.get(cooperative_id, period_id)
        return await self._readiness(period, today or datetime.date.today())

    async def _readiness(self, period: FiscalPeriod, today: datetime.date) -> ClosingCheck:
        result = await self.db.execute(
            select(
                func.count(JournalEntry.id),
                func.coalesce(func.sum(JournalEntry.total_debit), 0),
                func.coalesce(func.sum(JournalEntry.total_credit), 0),
            ).where(JournalEntry.fiscal_period_id == period.id)
        )
        count, debit, credit = result.one()
        check = ClosingCheck(
            period=period,
            entry_count=count,
            total_debit=to_money(debit),
            total_credit=to_money(credit),
        )

        # Each entry is held to the posting tolerance on its own; the
        # period-wide sums may drift by up to the tolerance per entry.
        per_entry = await self.db.execute(
            select(
                JournalEntry.reference_number,
                func.coalesce(func.sum(JournalLine.debit), 0),
                func.coalesce(func.sum(JournalLine.credit), 0),
            )
            .join(JournalLine, JournalLine.journal_entry_id == JournalEntry.id)
            .where(JournalEntry.fiscal_period_id == period.id)
            .group_by(JournalEntry.id, JournalEntry.reference_number)
            .order_by(JournalEntry.reference_number)
        )
        check.unbalanced_entries = [
            reference
            for reference, entry_debit, entry_credit in per_entry.all()
            if abs(to_money(entry_debit) - to_money(entry_credit)) > self.config.balance_tolerance
        ]

        if not period.is_open:
            check.errors.append("Fiscal period is already closed")
        if check.unbalanced_entries:
            check.errors.append(
                f"{len(check.unbalanced_entries)} journal entries are out of balance: "
                + ", ".join(check.unbalanced_entries)
            )
        if today <= period.end_date:
            check.warnings.append(f"Period end date {period.end_date} has not passed yet")
        if count == 0:
            check.warnings.append("Period has no journal entries")
        return check

    async def close(
        self,
        cooperative_id: uuid.UUID,
        period_id: uuid.UUID,
        closed_by: uuid.UUID | None,
        *,
        generate_closing_entries: bool = False,
        open_next: bool = False,
        today: datetime.date | None = None,
    ) -> FiscalPeriod:
        """Close an open period.  Irreversible.

        With ``generate_closing_entries`` the revenue and expense balances
        of the period are moved into retained earnings by one closing entry
        dated on the last day of the period.  With ``open_next`` the next
        period of the same length is opened in the same transaction.
        """
        today = today or datetime.date.today()

        async def _close() -> tuple[FiscalPeriod, list[LedgerFact]]:
            result = await self.db.execute(
                select(FiscalPeriod)
                .where(
                    FiscalPeriod.id == period_id,
                    FiscalPeriod.cooperative_id == cooperative_id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            period = result.scalar_one_or_none()
            if period is None:
                raise NotFoundError(
                    "Fiscal period not found", {"fiscal_period_id": str(period_id)}
                )
            if not period.is_open:
                raise AlreadyClosedError(
                    f"Fiscal period {period.name} is already closed",
                    {
                        "fiscal_period_id": str(period.id),
                        "closed_at": period.closed_at.isoformat() if period.closed_at else None,
                    },
                )

            check = await self._readiness(period, today)
            if check.errors:
                raise ValidationError(
                    "Fiscal period is not ready to close", {"errors": check.errors}
                )

            facts: list[LedgerFact] = []
            closing_entry = None
            if generate_closing_entries:
                closing_entry = await self._stage_closing_entry(period, closed_by, facts)

            period.status = PeriodStatus.CLOSED
            period.closed_at = datetime.datetime.now(datetime.timezone.utc)
            period.closed_by = closed_by
            await self.db.flush()

            next_period = None
            if open_next:
                next_start, next_end = next_period_range(period)
                next_period = await self._insert_period(
                    cooperative_id, next_start, next_end, None, closed_by
                )

            await self.db.commit()
            self.cache.invalidate(cooperative_id)

            facts.append(FiscalPeriodClosed(
                cooperative_id=cooperative_id,
                fiscal_period_id=period.id,
                closed_by=closed_by,
                closed_at=period.closed_at,
                closing_entry_id=closing_entry.id if closing_entry else None,
            ))
            if next_period is not None:
                facts.append(self._created_fact(next_period))
            return period, facts

        async with self.locks.for_cooperative(cooperative_id):
            period, facts = await run_with_retry(self.db, _close)

        logger.info(
            "Fiscal period closed: %s %s (cooperative=%s, by=%s)",
            period.name, period.id, cooperative_id, closed_by,
        )
        self.events.emit_all(facts)
        return period

    async def _stage_closing_entry(
        self,
        period: FiscalPeriod,
        closed_by: uuid.UUID | None,
        facts: list[LedgerFact],
    ) -> JournalEntry | None:
        totals = await self.balances.totals_by_account(
            period.cooperative_id,
            fiscal_period_id=period.id,
            account_types=[AccountType.REVENUE, AccountType.EXPENSE],
        )

        lines: list[LineDraft] = []
        for row in totals:
            balance = row.balance
            if balance == ZERO:
                continue
            # Zero each account out against its normal side.
            if row.account.account_type == AccountType.REVENUE:
                debit, credit = (balance, ZERO) if balance > 0 else (ZERO, -balance)
            else:
                debit, credit = (ZERO, balance) if balance > 0 else (-balance, ZERO)
            lines.append(LineDraft(
                account_id=row.account.id,
                debit=debit,
                credit=credit,
                description=f"Close {row.account.code}",
            ))
        if not lines:
            logger.info("No revenue or expense activity to close in %s", period.name)
            return None

        net = sum((line.debit - line.credit for line in lines), ZERO)
        if net != ZERO:
            retained = await self._retained_earnings_account(period.cooperative_id, closed_by, facts)
            lines.append(LineDraft(
                account_id=retained.id,
                debit=-net if net < 0 else ZERO,
                credit=net if net > 0 else ZERO,
                description="Net income to retained earnings",
            ))

        entry = await self.journal.stage_entry(
            EntryDraft(
                cooperative_id=period.cooperative_id,
                entry_date=period.end_date,
                lines=lines,
                fiscal_period_id=period.id,
                description=f"Closing entry for {period.name}",
                source=EntrySource.CLOSING,
                created_by=closed_by,
            ),
            period,
        )
        facts.append(entry_created_fact(entry))
        return entry

    async def _retained_earnings_account(
        self,
        cooperative_id: uuid.UUID,
        created_by: uuid.UUID | None,
        facts: list[LedgerFact],
    ) -> Account:
        code = self.config.retained_earnings_code
        result = await self.db.execute(
            select(Account).where(Account.cooperative_id == cooperative_id, Account.code == code)
        )
        account = result.scalar_one_or_none()
        if account is not None:
            return account

        account = Account(
            cooperative_id=cooperative_id,
            code=code,
            name="Retained Earnings",
            account_type=AccountType.EQUITY,
            subtype="retained_earnings",
            normal_balance=normal_balance_for(AccountType.EQUITY),
            is_system=True,
            created_by=created_by,
        )
        self.db.add(account)
        await self.db.flush()
        logger.info("Retained earnings account %s created for cooperative %s", code, cooperative_id)
        facts.append(AccountCreated(
            cooperative_id=cooperative_id,
            account_id=account.id,
            code=code,
            account_type=AccountType.EQUITY.value,
            created_by=created_by,
        ))
        return account

    @staticmethod
    def _created_fact(period: FiscalPeriod) -> FiscalPeriodCreated:
        return FiscalPeriodCreated(
            cooperative_id=period.cooperative_id,
            fiscal_period_id=period.id,
            start_date=period.start_date,
            end_date=period.end_date,
            created_by=period.created_by,
        )
