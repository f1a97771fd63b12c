"""
Audit trail -- fact delivery, the JSONL/SQLite stores, retention purge,
read-access middleware and the auto-close job.
"""
import json
import sqlite3
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import cr, dr
from coopledger.config import LedgerConfig
from coopledger.errors import InternalError, ValidationError
from coopledger.middleware.audit_middleware import AuditReadAccessMiddleware
from coopledger.models.enums import PeriodStatus
from coopledger.services.audit_service import (
    AuditEvent,
    AuditEventCategory,
    AuditWriter,
    classify_action,
)
from coopledger.services.events import AccountCreated, EventBus, LedgerFact
from coopledger.services.fiscal_periods import FiscalPeriodManager
from coopledger.services.ledger import auto_close_expired_periods, build_ledger


class InlineAuditWriter(AuditWriter):
    """Writes on the calling thread so tests can read the store immediately."""

    def fire_and_forget(self, event: AuditEvent) -> None:
        self.write_sync(event)


def _rows(writer: AuditWriter, where: str = "1=1", params: tuple = ()) -> list[dict]:
    conn = sqlite3.connect(str(writer.sqlite_path))
    conn.row_factory = sqlite3.Row
    try:
        return [dict(r) for r in conn.execute(f"SELECT * FROM audit_events WHERE {where}", params)]
    finally:
        conn.close()


def _event_at(category: AuditEventCategory, when: datetime, action: str = "test.event") -> AuditEvent:
    return AuditEvent(id=uuid4(), timestamp=when, category=category, action=action)


class TestClassification:

    def test_701_categories(self):
        assert classify_action("ledger.journal_entry.created") == AuditEventCategory.MUTATION
        assert classify_action("ledger.fiscal_period.closed") == AuditEventCategory.MUTATION
        assert classify_action("auth.login") == AuditEventCategory.MUTATION
        assert classify_action("auth.failed") == AuditEventCategory.SYSTEM
        assert classify_action("system.scheduler.auto_close_periods") == AuditEventCategory.SYSTEM
        assert classify_action("ledger.balance.view") == AuditEventCategory.READ_ACCESS
        assert classify_action("ledger.sync.ping") == AuditEventCategory.MUTATION


class TestAuditWriter:

    def test_702_writes_both_stores(self, tmp_path):
        writer = AuditWriter(tmp_path / "audit")
        event = AuditEvent.create(
            "ledger.account.created", cooperative_id="c1", resource_type="account", details={"code": "1000"}
        )
        writer.write_sync(event)

        jsonl = writer.jsonl_dir / f"{event.timestamp:%Y-%m-%d}.jsonl"
        record = json.loads(jsonl.read_text(encoding="utf-8").strip())
        assert record["id"] == str(event.id)
        assert record["category"] == "mutation"

        rows = _rows(writer)
        assert len(rows) == 1
        assert rows[0]["system_name"] == "coopledger"
        assert json.loads(rows[0]["details"]) == {"code": "1000"}

    def test_703_retention_purge(self, tmp_path):
        writer = AuditWriter(tmp_path / "audit")
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        old = now - timedelta(days=100)
        recent = now - timedelta(days=40)
        for category, when in [
            (AuditEventCategory.MUTATION, old),
            (AuditEventCategory.READ_ACCESS, old),
            (AuditEventCategory.SYSTEM, old),
            (AuditEventCategory.READ_ACCESS, recent),
            (AuditEventCategory.SYSTEM, recent),
        ]:
            writer.write_sync(_event_at(category, when))

        summary = writer.purge_expired(now=now)

        assert summary["sqlite_deleted"] == 3
        assert summary["jsonl_lines_removed"] == 3
        remaining = sorted((r["category"], r["timestamp"][:10]) for r in _rows(writer))
        assert remaining == [("mutation", old.date().isoformat()), ("read_access", recent.date().isoformat())]


class TestFactDelivery:

    def test_704_failing_subscriber_is_isolated(self, caplog):
        bus = EventBus()
        received = []

        def broken(fact):
            raise RuntimeError("subscriber down")

        bus.subscribe(LedgerFact, broken)
        bus.subscribe(AccountCreated, received.append)
        fact = AccountCreated(cooperative_id=uuid4(), account_id=uuid4(), code="1000", account_type="ASSET")
        bus.emit(fact)

        assert received == [fact]
        assert "subscriber down" in caplog.text

    async def test_705_ledger_facts_reach_audit_store(self, tmp_path, db, coop_a, users):
        writer = InlineAuditWriter(tmp_path / "audit")
        ledger = build_ledger(LedgerConfig(), writer)
        accountant = users["accountant"].id

        cash = await ledger.accounts(db).create(coop_a, "1000", "Cash", "ASSET", created_by=accountant)
        capital = await ledger.accounts(db).create(coop_a, "3000", "Capital", "EQUITY")
        period = await ledger.periods(db).create(coop_a, date(2024, 1, 1), date(2024, 12, 31))
        entry = await ledger.journal(db).create(
            coop_a, date(2024, 3, 1), [dr(cash.id, 10), cr(capital.id, 10)], created_by=accountant
        )
        await ledger.periods(db).close(coop_a, period.id, accountant)

        actions = [r["action"] for r in _rows(writer)]
        assert actions.count("ledger.account.created") == 2
        assert "ledger.fiscal_period.created" in actions
        assert "ledger.journal_entry.created" in actions
        assert "ledger.fiscal_period.closed" in actions

        posted = _rows(writer, "action = ?", ("ledger.journal_entry.created",))[0]
        assert posted["category"] == "mutation"
        assert posted["resource_id"] == str(entry.id)
        assert posted["user_id"] == str(accountant)
        assert posted["cooperative_id"] == str(coop_a)
        assert json.loads(posted["details"])["reference_number"] == entry.reference_number

    async def test_706_rejected_operation_is_not_audited(self, tmp_path, db, coop_a):
        writer = InlineAuditWriter(tmp_path / "audit")
        ledger = build_ledger(LedgerConfig(), writer)
        with pytest.raises(ValidationError):
            await ledger.accounts(db).create(coop_a, "1000", "Cash", "NOPE")
        assert _rows(writer) == []


class TestReadAccessMiddleware:

    async def test_707_sensitive_get_is_logged(self, tmp_path):
        writer = InlineAuditWriter(tmp_path / "audit")
        app = FastAPI()
        app.add_middleware(
            AuditReadAccessMiddleware,
            writer=writer,
            patterns=[r"^/api/cooperatives/(?P<cooperative_id>[^/]+)/reports/"],
        )

        @app.get("/api/cooperatives/{cooperative_id}/reports/trial-balance")
        async def report(cooperative_id: str):
            return {"ok": True}

        @app.get("/api/other")
        async def other():
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await client.get("/api/cooperatives/c-42/reports/trial-balance", params={"as_of": "2024-12-31"})
            await client.get("/api/other")

        rows = _rows(writer)
        assert len(rows) == 1
        assert rows[0]["category"] == "read_access"
        assert rows[0]["cooperative_id"] == "c-42"
        assert json.loads(rows[0]["details"])["query_params"] == {"as_of": "2024-12-31"}


class TestAutoClose:

    async def test_708_expired_periods_are_closed_and_rolled(
        self, ledger, session_factory, db, coop_a, chart, fy2024
    ):
        await ledger.journal(db).create(
            coop_a, date(2024, 3, 1), [dr(chart["1000"], 100), cr(chart["4000"], 100)]
        )

        summary = await auto_close_expired_periods(ledger, session_factory, today=date(2025, 1, 3))
        assert summary == {"closed": 1, "skipped": 0, "failed": 0}

        async with session_factory() as session:
            periods = ledger.periods(session)
            closed = await periods.get(coop_a, fy2024)
            active = await periods.get_active(coop_a)
            retained = await ledger.accounts(session).get_by_code(coop_a, "3200")
        assert closed.status == PeriodStatus.CLOSED
        assert active.name == "FY2025"
        assert retained is not None

    async def test_709_unexpired_period_is_left_open(self, ledger, session_factory, coop_a, fy2024):
        summary = await auto_close_expired_periods(ledger, session_factory, today=date(2024, 12, 31))
        assert summary == {"closed": 0, "skipped": 0, "failed": 0}

    async def test_710_refused_close_is_skipped(self, ledger, session_factory, db, coop_a, coop_b, fy2024):
        """Rolling coop B forward would overlap its closed February, so only A closes."""
        periods = ledger.periods(db)
        february = await periods.create(coop_b, date(2024, 2, 1), date(2024, 2, 29))
        await periods.close(coop_b, february.id, None)
        await periods.create(coop_b, date(2024, 1, 1), date(2024, 1, 31))

        summary = await auto_close_expired_periods(ledger, session_factory, today=date(2025, 1, 3))
        assert summary == {"closed": 1, "skipped": 1, "failed": 0}

        async with session_factory() as session:
            still_open = await ledger.periods(session).get_active(coop_b)
        assert still_open.name == "2024-01"

    async def test_711_failed_close_does_not_stop_the_run(
        self, ledger, session_factory, db, coop_a, coop_b, fy2024, monkeypatch, caplog
    ):
        await ledger.periods(db).create(coop_b, date(2024, 1, 1), date(2024, 12, 31))
        original = FiscalPeriodManager.close

        async def busy_for_a(self, cooperative_id, *args, **kwargs):
            if cooperative_id == coop_a:
                raise InternalError("The ledger is busy, please retry the request", {"attempts": 2})
            return await original(self, cooperative_id, *args, **kwargs)

        monkeypatch.setattr(FiscalPeriodManager, "close", busy_for_a)

        summary = await auto_close_expired_periods(ledger, session_factory, today=date(2025, 1, 3))
        assert summary == {"closed": 1, "skipped": 0, "failed": 1}
        assert "Auto-close failed" in caplog.text

        async with session_factory() as session:
            periods = ledger.periods(session)
            assert (await periods.get(coop_a, fy2024)).status == PeriodStatus.OPEN
            assert (await periods.get_active(coop_b)).name == "FY2025"


class TestScopedRetention:

    def test_712_purge_one_cooperative(self, tmp_path):
        writer = AuditWriter(tmp_path / "audit")
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        old = now - timedelta(days=100)
        for cooperative_id in ("c1", "c2"):
            writer.write_sync(AuditEvent(
                id=uuid4(), timestamp=old, category=AuditEventCategory.READ_ACCESS,
                action="ledger.balance.view", cooperative_id=cooperative_id,
            ))
        jsonl = writer.jsonl_dir / f"{old:%Y-%m-%d}.jsonl"
        with open(jsonl, "a", encoding="utf-8") as f:
            f.write("not json\n")

        summary = writer.purge_expired(now=now, cooperative_id="c1")

        assert summary == {"sqlite_deleted": 1, "jsonl_lines_removed": 1}
        assert [r["cooperative_id"] for r in _rows(writer)] == ["c2"]
        lines = jsonl.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert "not json" in lines

    def test_713_retention_windows_are_configurable(self, tmp_path):
        writer = AuditWriter(
            tmp_path / "audit",
            retention_days={
                AuditEventCategory.MUTATION: None,
                AuditEventCategory.READ_ACCESS: 7,
                AuditEventCategory.SYSTEM: None,
            },
        )
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        ten_days_ago = now - timedelta(days=10)
        writer.write_sync(_event_at(AuditEventCategory.READ_ACCESS, ten_days_ago))
        writer.write_sync(_event_at(AuditEventCategory.SYSTEM, ten_days_ago))

        summary = writer.purge_expired(now=now)

        assert summary == {"sqlite_deleted": 1, "jsonl_lines_removed": 1}
        assert [r["category"] for r in _rows(writer)] == ["system"]
