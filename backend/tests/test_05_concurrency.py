"""
Concurrency -- postings and period closes racing on one cooperative.

Each coroutine uses its own session, as concurrent requests would; the
shared ``Ledger`` carries the per-cooperative locks.
"""
import asyncio
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from conftest import cr, dr
from coopledger.errors import InternalError, InvalidFiscalPeriodError
from coopledger.models.enums import PeriodStatus
from coopledger.models.gl import JournalEntry
from coopledger.models.org import Cooperative, FiscalPeriod
from coopledger.services.transactions import CooperativeLocks, is_transient, run_with_retry


class TestCooperativeLocks:

    def test_501_one_lock_per_cooperative(self):
        locks = CooperativeLocks()
        a, b = uuid.uuid4(), uuid.uuid4()
        assert locks.for_cooperative(a) is locks.for_cooperative(a)
        assert locks.for_cooperative(a) is not locks.for_cooperative(b)


class TestRaces:

    async def test_502_close_races_post(self, ledger, session_factory, coop_a, chart, fy2024):
        """Either the entry lands before the close, or it is refused. Never both."""

        async def post():
            async with session_factory() as session:
                try:
                    await ledger.journal(session).create(
                        coop_a, date(2024, 6, 1), [dr(chart["1000"], 10), cr(chart["3000"], 10)],
                        fiscal_period_id=fy2024,
                    )
                except InvalidFiscalPeriodError:
                    return "rejected"
                return "posted"

        async def close():
            async with session_factory() as session:
                await ledger.periods(session).close(coop_a, fy2024, None)
                return "closed"

        results = await asyncio.gather(post(), close())
        assert results[1] == "closed"

        async with session_factory() as session:
            period = await session.get(FiscalPeriod, fy2024)
            count = (await session.execute(
                select(func.count(JournalEntry.id)).where(JournalEntry.fiscal_period_id == fy2024)
            )).scalar_one()

        assert period.status == PeriodStatus.CLOSED
        if results[0] == "posted":
            assert count == 1
        else:
            assert count == 0

    async def test_503_parallel_posts_get_distinct_references(
        self, ledger, session_factory, coop_a, chart, fy2024
    ):
        async def post(amount):
            async with session_factory() as session:
                entry = await ledger.journal(session).create(
                    coop_a, date(2024, 6, 1), [dr(chart["1000"], amount), cr(chart["3000"], amount)]
                )
                return entry.reference_number

        references = await asyncio.gather(*(post(n) for n in range(1, 6)))
        assert len(set(references)) == 5

        async with session_factory() as session:
            balance = await ledger.accounts(session).get_balance(coop_a, chart["1000"], date(2024, 12, 31))
        assert balance == Decimal("15")

    async def test_504_parallel_period_creates_leave_one_open(self, ledger, session_factory, coop_a):
        async def create(month):
            async with session_factory() as session:
                try:
                    await ledger.periods(session).create(
                        coop_a, date(2025, month, 1), date(2025, month, 28)
                    )
                except Exception as exc:
                    return type(exc).__name__
                return "created"

        results = await asyncio.gather(create(1), create(2), create(3))
        assert results.count("created") == 1
        assert set(results) - {"created"} == {"OpenPeriodExistsError"}


class _SqlState(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def _locked() -> OperationalError:
    return OperationalError("UPDATE fiscal_periods", {}, Exception("database is locked"))


class TestRetry:

    def test_505_transient_classification(self):
        assert is_transient(_locked())
        for code in ("40001", "40P01", "55P03"):
            assert is_transient(DBAPIError("SELECT 1", {}, _SqlState(code)))
        assert not is_transient(IntegrityError("INSERT", {}, _SqlState("23505")))
        assert not is_transient(ValueError("nope"))

    async def test_506_transient_failure_is_retried_once(self, db):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) == 1:
                raise _locked()
            return "done"

        assert await run_with_retry(db, operation) == "done"
        assert len(calls) == 2

    async def test_507_persistent_failure_becomes_internal_error(self, db):
        calls = []

        async def operation():
            calls.append(1)
            db.add(Cooperative(code=f"KSP-R{len(calls)}", name="Retry"))
            await db.flush()
            raise _locked()

        with pytest.raises(InternalError) as exc_info:
            await run_with_retry(db, operation)
        assert len(calls) == 2
        assert exc_info.value.details == {"attempts": 2}

        count = await db.execute(
            select(func.count(Cooperative.id)).where(Cooperative.code.like("KSP-R%"))
        )
        assert count.scalar_one() == 0

    async def test_508_integrity_error_propagates_unchanged(self, db):
        calls = []
        error = IntegrityError("INSERT INTO journal_entries", {}, _SqlState("23505"))

        async def operation():
            calls.append(1)
            raise error

        with pytest.raises(IntegrityError) as exc_info:
            await run_with_retry(db, operation)
        assert exc_info.value is error
        assert len(calls) == 1
