"""Financial reports built on the balance calculator."""
from __future__ import annotations

import dataclasses
import datetime
import uuid
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import LedgerConfig
from coopledger.models.enums import NormalBalance
from coopledger.models.gl import Account
from coopledger.services.balances import ZERO, BalanceCalculator
from coopledger.services.cooperatives import require_cooperative


@dataclasses.dataclass(frozen=True)
class TrialBalanceRow:
    account: Account
    debit: Decimal
    credit: Decimal


@dataclasses.dataclass(frozen=True)
class TrialBalance:
    cooperative_id: uuid.UUID
    as_of: datetime.date | None
    fiscal_period_id: uuid.UUID | None
    rows: list[TrialBalanceRow]
    total_debit: Decimal
    total_credit: Decimal
    balanced: bool


class ReportService:
    def __init__(self, db: AsyncSession, config: LedgerConfig, balances: BalanceCalculator) -> None:
        self.db = db
        self.config = config
        self.balances = balances

    async def trial_balance(
        self,
        cooperative_id: uuid.UUID,
        as_of: datetime.date | None = None,
        fiscal_period_id: uuid.UUID | None = None,
    ) -> TrialBalance:
        """Net balance per account, shown in the debit or credit column.

        A positive balance sits on the account's normal side; a negative one
        is shown on the opposite side.  Accounts netting to zero are omitted.
        """
        await require_cooperative(self.db, cooperative_id)
        totals = await self.balances.totals_by_account(
            cooperative_id, as_of=as_of, fiscal_period_id=fiscal_period_id
        )

        rows: list[TrialBalanceRow] = []
        total_debit = total_credit = ZERO
        for item in totals:
            balance = item.balance
            if balance == ZERO:
                continue
            on_debit_side = (item.account.normal_balance == NormalBalance.DEBIT) == (balance > 0)
            debit = abs(balance) if on_debit_side else ZERO
            credit = ZERO if on_debit_side else abs(balance)
            rows.append(TrialBalanceRow(account=item.account, debit=debit, credit=credit))
            total_debit += debit
            total_credit += credit

        return TrialBalance(
            cooperative_id=cooperative_id,
            as_of=as_of,
            fiscal_period_id=fiscal_period_id,
            rows=rows,
            total_debit=total_debit,
            total_credit=total_credit,
            balanced=abs(total_debit - total_credit) <= self.config.balance_tolerance,
        )
