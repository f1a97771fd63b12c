"""Ledger error taxonomy.

Every failure raised by the ledger services is a ``LedgerError`` carrying a
stable machine-readable ``kind``, a human-readable message, optional
diagnostic ``details`` and the HTTP status the API layer answers with.
None of these are retried; they describe bad caller input or a state the
caller must resolve.  ``InternalError`` is the only one produced by
infrastructure failures (see ``services.transactions.run_with_retry``).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    kind = "ledger_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.status_code,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Input problems
# ---------------------------------------------------------------------------


class ValidationError(LedgerError):
    kind = "validation_error"
    status_code = 422


class InsufficientLinesError(ValidationError):
    kind = "insufficient_lines"


class InvalidAccountError(ValidationError):
    kind = "invalid_account"


class NotFoundError(LedgerError):
    kind = "not_found"
    status_code = 404


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------


class ConflictError(LedgerError):
    kind = "conflict"
    status_code = 409


class DuplicateAccountCodeError(ConflictError, ValidationError):
    """Account code already used in the cooperative."""

    kind = "duplicate_code"
    status_code = 409


class OverlapError(ConflictError):
    kind = "period_overlap"


class OpenPeriodExistsError(ConflictError):
    kind = "open_period_exists"


class AlreadyClosedError(LedgerError):
    kind = "already_closed"
    status_code = 409


# ---------------------------------------------------------------------------
# Posting rules
# ---------------------------------------------------------------------------


class UnbalancedEntryError(LedgerError):
    kind = "unbalanced_entry"
    status_code = 422

    def __init__(self, total_debit: Decimal, total_credit: Decimal) -> None:
        super().__init__(
            f"Debits ({total_debit}) must equal credits ({total_credit})",
            {
                "total_debit": str(total_debit),
                "total_credit": str(total_credit),
                "difference": str(abs(total_debit - total_credit)),
            },
        )
        self.total_debit = total_debit
        self.total_credit = total_credit


class InvalidFiscalPeriodError(LedgerError):
    kind = "invalid_fiscal_period"
    status_code = 422


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class InternalError(LedgerError):
    kind = "internal_error"
    status_code = 500
