"""Ledger facts and the in-process event bus.

Services emit a fact only after their transaction has committed.  Delivery
is fire-and-forget: a failing subscriber is logged and never affects the
operation that produced the fact, and nothing is retried.
"""
from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from coopledger.services.audit_service import AuditEvent, AuditWriter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class LedgerFact:
    cooperative_id: uuid.UUID

    action = "ledger.fact"
    resource_type = "ledger"

    @property
    def resource_id(self) -> str | None:
        return None

    @property
    def actor_id(self) -> uuid.UUID | None:
        return None

    def payload(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        return {k: _jsonable(v) for k, v in data.items()}


@dataclasses.dataclass(frozen=True)
class AccountCreated(LedgerFact):
    account_id: uuid.UUID
    code: str
    account_type: str
    created_by: uuid.UUID | None = None

    action = "ledger.account.created"
    resource_type = "account"

    @property
    def resource_id(self) -> str:
        return str(self.account_id)

    @property
    def actor_id(self) -> uuid.UUID | None:
        return self.created_by


@dataclasses.dataclass(frozen=True)
class FiscalPeriodCreated(LedgerFact):
    fiscal_period_id: uuid.UUID
    start_date: datetime.date
    end_date: datetime.date
    created_by: uuid.UUID | None = None

    action = "ledger.fiscal_period.created"
    resource_type = "fiscal_period"

    @property
    def resource_id(self) -> str:
        return str(self.fiscal_period_id)

    @property
    def actor_id(self) -> uuid.UUID | None:
        return self.created_by


@dataclasses.dataclass(frozen=True)
class FiscalPeriodClosed(LedgerFact):
    fiscal_period_id: uuid.UUID
    closed_by: uuid.UUID | None
    closed_at: datetime.datetime
    closing_entry_id: uuid.UUID | None = None

    action = "ledger.fiscal_period.closed"
    resource_type = "fiscal_period"

    @property
    def resource_id(self) -> str:
        return str(self.fiscal_period_id)

    @property
    def actor_id(self) -> uuid.UUID | None:
        return self.closed_by


@dataclasses.dataclass(frozen=True)
class JournalEntryCreated(LedgerFact):
    journal_entry_id: uuid.UUID
    reference_number: str
    fiscal_period_id: uuid.UUID
    entry_date: datetime.date
    source: str
    total_debit: Decimal
    total_credit: Decimal
    created_by: uuid.UUID | None = None
    reverses_entry_id: uuid.UUID | None = None

    action = "ledger.journal_entry.created"
    resource_type = "journal_entry"

    @property
    def resource_id(self) -> str:
        return str(self.journal_entry_id)

    @property
    def actor_id(self) -> uuid.UUID | None:
        return self.created_by


def _jsonable(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[LedgerFact], None]


class EventBus:
    """Synchronous fan-out of facts to subscribers, one try/except per handler."""

    def __init__(self) -> None:
        self._handlers: dict[type[LedgerFact], list[Handler]] = defaultdict(list)

    def subscribe(self, fact_type: type[LedgerFact], handler: Handler) -> None:
        self._handlers[fact_type].append(handler)

    def emit(self, fact: LedgerFact) -> None:
        for fact_type, handlers in list(self._handlers.items()):
            if not isinstance(fact, fact_type):
                continue
            for handler in handlers:
                try:
                    handler(fact)
                except Exception:
                    logger.exception(
                        "Subscriber %r failed for %s", handler, fact.action
                    )

    def emit_all(self, facts: list[LedgerFact]) -> None:
        for fact in facts:
            self.emit(fact)


def audit_subscriber(writer: AuditWriter) -> Handler:
    """Return a handler that records every fact as a MUTATION audit event."""

    def _record(fact: LedgerFact) -> None:
        writer.fire_and_forget(AuditEvent.create(
            fact.action,
            cooperative_id=str(fact.cooperative_id),
            user_id=str(fact.actor_id) if fact.actor_id else None,
            resource_type=fact.resource_type,
            resource_id=fact.resource_id,
            details=fact.payload(),
        ))

    return _record
