"""Account balances derived from posted journal lines.

A balance is a pure function of the stored entries: ``debit - credit`` for
debit-normal accounts and ``credit - debit`` for credit-normal ones, over
lines whose entry is dated on or before the as-of date and whose fiscal
period had started by then.  Results may be served from ``BalanceCache``,
which every posting and period close invalidates for its cooperative.
"""
from __future__ import annotations

import dataclasses
import datetime
import time
import uuid
from collections import defaultdict
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.errors import NotFoundError
from coopledger.models.enums import AccountType, NormalBalance
from coopledger.models.gl import Account, JournalEntry, JournalLine
from coopledger.models.org import FiscalPeriod

STORAGE_QUANTUM = Decimal("0.0001")
DISPLAY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value: Any) -> Decimal:
    """Normalise a DB or user numeric to a 4-place Decimal (never via float math)."""
    if value is None:
        value = ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> str:
    """Display form: two decimal places."""
    return str(to_money(value).quantize(DISPLAY_QUANTUM, rounding=ROUND_HALF_UP))


def signed_balance(normal_balance: NormalBalance, debit: Decimal, credit: Decimal) -> Decimal:
    if normal_balance == NormalBalance.DEBIT:
        return debit - credit
    return credit - debit


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

CacheKey = tuple[uuid.UUID, uuid.UUID, datetime.date, bool]


class BalanceCache:
    """Read-through balance cache with explicit per-cooperative invalidation.

    Each cooperative has a generation counter bumped by ``invalidate``.  A
    reader records the generation before computing and ``put`` drops the
    value if an invalidation happened meanwhile, so a balance computed
    before a posting can never be stored after it.
    """

    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: dict[CacheKey, tuple[float, Decimal]] = {}
        self._generations: dict[uuid.UUID, int] = defaultdict(int)

    def generation(self, cooperative_id: uuid.UUID) -> int:
        return self._generations[cooperative_id]

    def get(self, key: CacheKey) -> Decimal | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if expires_at < time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: CacheKey, value: Decimal, generation: int) -> None:
        if self.ttl_seconds <= 0 or self._generations[key[0]] != generation:
            return
        self._entries[key] = (time.monotonic() + self.ttl_seconds, value)

    def invalidate(self, cooperative_id: uuid.UUID) -> None:
        self._generations[cooperative_id] += 1
        for key in [k for k in self._entries if k[0] == cooperative_id]:
            del self._entries[key]


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AccountTotals:
    account: Account
    debit: Decimal
    credit: Decimal

    @property
    def balance(self) -> Decimal:
        return signed_balance(self.account.normal_balance, self.debit, self.credit)


class BalanceCalculator:
    def __init__(self, db: AsyncSession, cache: BalanceCache) -> None:
        self.db = db
        self.cache = cache

    async def get_balance(
        self,
        cooperative_id: uuid.UUID,
        account_id: uuid.UUID,
        as_of: datetime.date,
        include_children: bool = False,
    ) -> Decimal:
        key = (cooperative_id, account_id, as_of, include_children)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        generation = self.cache.generation(cooperative_id)
        account = await self.db.get(Account, account_id)
        if account is None or account.cooperative_id != cooperative_id:
            raise NotFoundError("Account not found", {"account_id": str(account_id)})

        if include_children:
            accounts = await self._with_descendants(cooperative_id, account)
        else:
            accounts = {account.id: account.normal_balance}

        sums = await self._line_sums(cooperative_id, accounts.keys(), as_of)
        balance = ZERO
        for acc_id, normal_balance in accounts.items():
            debit, credit = sums.get(acc_id, (ZERO, ZERO))
            balance += signed_balance(normal_balance, debit, credit)
        balance = to_money(balance)

        self.cache.put(key, balance, generation)
        return balance

    async def _with_descendants(
        self, cooperative_id: uuid.UUID, root: Account
    ) -> dict[uuid.UUID, NormalBalance]:
        result = await self.db.execute(
            select(Account.id, Account.parent_id, Account.normal_balance)
            .where(Account.cooperative_id == cooperative_id)
        )
        children: dict[uuid.UUID, list[tuple[uuid.UUID, NormalBalance]]] = defaultdict(list)
        for acc_id, parent_id, normal_balance in result.all():
            if parent_id is not None:
                children[parent_id].append((acc_id, normal_balance))

        collected = {root.id: root.normal_balance}
        stack = [root.id]
        while stack:
            for child_id, normal_balance in children.get(stack.pop(), []):
                if child_id not in collected:
                    collected[child_id] = normal_balance
                    stack.append(child_id)
        return collected

    async def _line_sums(
        self,
        cooperative_id: uuid.UUID,
        account_ids: Iterable[uuid.UUID],
        as_of: datetime.date,
    ) -> dict[uuid.UUID, tuple[Decimal, Decimal]]:
        stmt = (
            select(
                JournalLine.account_id,
                func.coalesce(func.sum(JournalLine.debit), 0).label("debit"),
                func.coalesce(func.sum(JournalLine.credit), 0).label("credit"),
            )
            .join(JournalEntry, JournalEntry.id == JournalLine.journal_entry_id)
            .join(FiscalPeriod, FiscalPeriod.id == JournalEntry.fiscal_period_id)
            .where(
                JournalLine.account_id.in_(list(account_ids)),
                JournalEntry.cooperative_id == cooperative_id,
                JournalEntry.entry_date <= as_of,
                FiscalPeriod.start_date <= as_of,
            )
            .group_by(JournalLine.account_id)
        )
        result = await self.db.execute(stmt)
        return {
            row.account_id: (to_money(row.debit), to_money(row.credit))
            for row in result.all()
        }

    async def totals_by_account(
        self,
        cooperative_id: uuid.UUID,
        *,
        as_of: datetime.date | None = None,
        fiscal_period_id: uuid.UUID | None = None,
        account_types: Iterable[AccountType] | None = None,
    ) -> list[AccountTotals]:
        """Debit and credit sums per account with at least one line, ordered by code."""
        stmt = (
            select(
                Account,
                func.coalesce(func.sum(JournalLine.debit), 0).label("debit"),
                func.coalesce(func.sum(JournalLine.credit), 0).label("credit"),
            )
            .join(JournalLine, JournalLine.account_id == Account.id)
            .join(JournalEntry, JournalEntry.id == JournalLine.journal_entry_id)
            .where(
                Account.cooperative_id == cooperative_id,
                JournalEntry.cooperative_id == cooperative_id,
            )
        )
        if as_of is not None:
            stmt = stmt.join(FiscalPeriod, FiscalPeriod.id == JournalEntry.fiscal_period_id).where(
                JournalEntry.entry_date <= as_of,
                FiscalPeriod.start_date <= as_of,
            )
        if fiscal_period_id is not None:
            stmt = stmt.where(JournalEntry.fiscal_period_id == fiscal_period_id)
        if account_types is not None:
            stmt = stmt.where(Account.account_type.in_(list(account_types)))
        stmt = stmt.group_by(Account.id).order_by(Account.code)

        result = await self.db.execute(stmt)
        return [
            AccountTotals(account=account, debit=to_money(debit), credit=to_money(credit))
            for account, debit, credit in result.all()
        ]
