from coopledger.models.gl import Account, JournalEntry, JournalLine
from coopledger.models.org import Cooperative, FiscalPeriod
from coopledger.models.user import User

__all__ = [
    # Tenancy
    "Cooperative",
    # Ledger
    "Account",
    "FiscalPeriod",
    "JournalEntry",
    "JournalLine",
    # Users
    "User",
]
