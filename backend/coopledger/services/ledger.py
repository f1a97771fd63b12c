"""Process-wide ledger wiring.

The event bus, balance cache and cooperative locks live once per process;
the services built from them are cheap and bound to one ``AsyncSession``.
"""
from __future__ import annotations

import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coopledger.config import LedgerConfig, settings
from coopledger.errors import (
    AlreadyClosedError,
    ConflictError,
    LedgerError,
    ValidationError,
)
from coopledger.services.accounts import AccountRegistry
from coopledger.services.audit_service import AuditEventCategory, AuditWriter
from coopledger.services.balances import BalanceCache, BalanceCalculator
from coopledger.services.cooperatives import CooperativeService
from coopledger.services.events import EventBus, LedgerFact, audit_subscriber
from coopledger.services.fiscal_periods import FiscalPeriodManager
from coopledger.services.journal import JournalService
from coopledger.services.reports import ReportService
from coopledger.services.transactions import CooperativeLocks

logger = logging.getLogger(__name__)


class Ledger:
    def __init__(
        self,
        config: LedgerConfig,
        events: EventBus | None = None,
        cache: BalanceCache | None = None,
        locks: CooperativeLocks | None = None,
    ) -> None:
        self.config = config
        self.events = events or EventBus()
        self.cache = cache or BalanceCache(config.balance_cache_ttl_seconds)
        self.locks = locks or CooperativeLocks()

    def balances(self, db: AsyncSession) -> BalanceCalculator:
        return BalanceCalculator(db, self.cache)

    def accounts(self, db: AsyncSession) -> AccountRegistry:
        return AccountRegistry(db, self.events, self.balances(db))

    def journal(self, db: AsyncSession) -> JournalService:
        return JournalService(db, self.config, self.events, self.cache, self.locks)

    def periods(self, db: AsyncSession) -> FiscalPeriodManager:
        return FiscalPeriodManager(
            db,
            self.config,
            self.events,
            self.cache,
            self.locks,
            self.balances(db),
            self.journal(db),
        )

    def reports(self, db: AsyncSession) -> ReportService:
        return ReportService(db, self.config, self.balances(db))


def build_ledger(config: LedgerConfig, audit_writer: AuditWriter | None = None) -> Ledger:
    """Create a ledger whose facts are recorded by ``audit_writer``, if given."""
    ledger = Ledger(config)
    if audit_writer is not None:
        ledger.events.subscribe(LedgerFact, audit_subscriber(audit_writer))
    return ledger


# ---------------------------------------------------------------------------
# Singletons (used by routes, middleware and scheduled jobs)
# ---------------------------------------------------------------------------

_audit_writer: AuditWriter | None = None
_ledger: Ledger | None = None


def get_audit_writer() -> AuditWriter:
    global _audit_writer
    if _audit_writer is None:
        _audit_writer = AuditWriter(
            base_path=settings.AUDIT_STORAGE_PATH,
            retention_days={
                AuditEventCategory.MUTATION: None,
                AuditEventCategory.READ_ACCESS: settings.AUDIT_READ_RETENTION_DAYS,
                AuditEventCategory.SYSTEM: settings.AUDIT_SYSTEM_RETENTION_DAYS,
            },
        )
    return _audit_writer


def get_ledger() -> Ledger:
    global _ledger
    if _ledger is None:
        _ledger = build_ledger(LedgerConfig.from_settings(), get_audit_writer())
    return _ledger


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


async def auto_close_expired_periods(
    ledger: Ledger,
    session_factory: async_sessionmaker[AsyncSession],
    today: datetime.date | None = None,
) -> dict[str, Any]:
    """Close every open period whose end date has passed.

    Each close generates closing entries and opens the following period.
    A cooperative whose close is refused is logged and skipped, and one
    whose close fails outright is logged and counted as failed.  Either way
    the remaining cooperatives are still processed.
    """
    today = today or datetime.date.today()
    summary: dict[str, Any] = {"closed": 0, "skipped": 0, "failed": 0}

    async with session_factory() as db:
        cooperative_ids = [c.id for c in await CooperativeService(db).list_active()]

    for cooperative_id in cooperative_ids:
        async with session_factory() as db:
            periods = ledger.periods(db)
            period = await periods.get_active(cooperative_id)
            if period is None or period.end_date >= today:
                continue
            period_id = period.id
            try:
                await periods.close(
                    cooperative_id,
                    period_id,
                    None,
                    generate_closing_entries=True,
                    open_next=True,
                    today=today,
                )
            except (AlreadyClosedError, ConflictError, ValidationError) as exc:
                logger.warning(
                    "Auto-close skipped for period %s (cooperative=%s): %s",
                    period_id, cooperative_id, exc.message,
                )
                summary["skipped"] += 1
                continue
            except (LedgerError, SQLAlchemyError):
                logger.exception(
                    "Auto-close failed for period %s (cooperative=%s)",
                    period_id, cooperative_id,
                )
                summary["failed"] += 1
                continue
            summary["closed"] += 1

    return summary
