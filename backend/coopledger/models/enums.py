"""Closed enumerations shared by the ledger models and services."""
from __future__ import annotations

import enum


class AccountType(str, enum.Enum):
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


class NormalBalance(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class PeriodStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class EntrySource(str, enum.Enum):
    MANUAL = "manual"
    REVERSAL = "reversal"
    CLOSING = "closing"


# ---------------------------------------------------------------------------
# Account type metadata
# ---------------------------------------------------------------------------

NORMAL_BALANCES: dict[AccountType, NormalBalance] = {
    AccountType.ASSET: NormalBalance.DEBIT,
    AccountType.LIABILITY: NormalBalance.CREDIT,
    AccountType.EQUITY: NormalBalance.CREDIT,
    AccountType.REVENUE: NormalBalance.CREDIT,
    AccountType.EXPENSE: NormalBalance.DEBIT,
}

SUBTYPES: dict[AccountType, tuple[str, ...]] = {
    AccountType.ASSET: ("current", "non_current", "fixed", "intangible"),
    AccountType.LIABILITY: ("current", "non_current", "debt"),
    AccountType.EQUITY: ("capital", "retained_earnings", "other_comprehensive_income"),
    AccountType.REVENUE: ("operating", "non_operating", "interest", "other"),
    AccountType.EXPENSE: (
        "cogs",
        "operating",
        "non_operating",
        "interest",
        "depreciation",
        "amortization",
    ),
}


def _check_exhaustive() -> None:
    for table_name, table in (("NORMAL_BALANCES", NORMAL_BALANCES), ("SUBTYPES", SUBTYPES)):
        missing = set(AccountType) - set(table)
        if missing:
            raise RuntimeError(
                f"{table_name} has no entry for {', '.join(sorted(m.value for m in missing))}"
            )


_check_exhaustive()


def normal_balance_for(account_type: AccountType) -> NormalBalance:
    return NORMAL_BALANCES[account_type]


def is_valid_subtype(account_type: AccountType, subtype: str) -> bool:
    return subtype in SUBTYPES[account_type]
