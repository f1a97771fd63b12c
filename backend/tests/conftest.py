"""
Test fixtures for the Cooperative Ledger.

Every test gets its own SQLite database file (via aiosqlite) with the full
schema created from the models, a fresh ``Ledger`` (event bus, balance
cache, cooperative locks) and an in-process HTTP client bound to the
FastAPI app through ``ASGITransport``.  Two cooperatives and one user per
role are seeded; tokens are minted directly, so no test depends on login.
"""
import os
import tempfile
import uuid
from datetime import date
from decimal import Decimal

# The application settings are read at import time.
_TMP_ROOT = tempfile.mkdtemp(prefix="coopledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_ROOT}/app.db")
os.environ.setdefault("AUDIT_STORAGE_PATH", os.path.join(_TMP_ROOT, "audit"))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from coopledger.config import LedgerConfig  # noqa: E402
from coopledger.database import Base, get_db  # noqa: E402
from coopledger.main import app  # noqa: E402
from coopledger.middleware.auth import hash_password, token_for_user  # noqa: E402
from coopledger.models import Cooperative, User  # noqa: E402
from coopledger.services.events import LedgerFact  # noqa: E402
from coopledger.services.journal import LineDraft  # noqa: E402
from coopledger.services.ledger import Ledger, build_ledger, get_ledger  # noqa: E402

PASSWORD = "ledger-pass-123"
_PASSWORD_HASH = hash_password(PASSWORD)

FY2024_START = date(2024, 1, 1)
FY2024_END = date(2024, 12, 31)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(token: str) -> dict:
    """Return auth header dict for a given token."""
    return {"Authorization": f"Bearer {token}"}


def dr(account_id, amount) -> LineDraft:
    """Debit line."""
    return LineDraft(account_id=account_id, debit=Decimal(str(amount)))


def cr(account_id, amount) -> LineDraft:
    """Credit line."""
    return LineDraft(account_id=account_id, credit=Decimal(str(amount)))


def line_json(account_id, debit="0", credit="0") -> dict:
    return {"account_id": str(account_id), "debit": str(debit), "credit": str(credit)}


# ---------------------------------------------------------------------------
# Database / ledger
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def facts() -> list:
    """Every fact the test's ledger emits, in order."""
    return []


@pytest.fixture
def ledger(facts) -> Ledger:
    ledger = build_ledger(LedgerConfig())
    ledger.events.subscribe(LedgerFact, facts.append)
    return ledger


@pytest_asyncio.fixture
async def client(session_factory, ledger):
    """In-process HTTP client; each request gets its own session."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger] = lambda: ledger

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def coop_a(db) -> uuid.UUID:
    cooperative = Cooperative(code="KSP-A", name="Koperasi Sejahtera A")
    db.add(cooperative)
    await db.commit()
    return cooperative.id


@pytest_asyncio.fixture
async def coop_b(db) -> uuid.UUID:
    cooperative = Cooperative(code="KSP-B", name="Koperasi Makmur B")
    db.add(cooperative)
    await db.commit()
    return cooperative.id


@pytest_asyncio.fixture
async def users(db, coop_a, coop_b) -> dict:
    """One user per role, keyed by username."""
    specs = [
        ("admin", "system_admin", None),
        ("manager", "manager", coop_a),
        ("accountant", "accountant", coop_a),
        ("auditor", "auditor", None),
        ("viewer", "viewer", coop_a),
        ("manager_b", "manager", coop_b),
    ]
    created = {}
    for username, role, cooperative_id in specs:
        user = User(
            username=username,
            password_hash=_PASSWORD_HASH,
            display_name=username.replace("_", " ").title(),
            email=f"{username}@coop.test",
            role=role,
            cooperative_id=cooperative_id,
        )
        db.add(user)
        created[username] = user
    await db.commit()
    return created


@pytest.fixture
def admin_headers(users) -> dict:
    return auth_headers(token_for_user(users["admin"]))


@pytest.fixture
def manager_headers(users) -> dict:
    return auth_headers(token_for_user(users["manager"]))


@pytest.fixture
def accountant_headers(users) -> dict:
    return auth_headers(token_for_user(users["accountant"]))


@pytest.fixture
def auditor_headers(users) -> dict:
    return auth_headers(token_for_user(users["auditor"]))


@pytest.fixture
def viewer_headers(users) -> dict:
    return auth_headers(token_for_user(users["viewer"]))


@pytest.fixture
def manager_b_headers(users) -> dict:
    return auth_headers(token_for_user(users["manager_b"]))


@pytest_asyncio.fixture
async def chart(ledger, db, coop_a) -> dict:
    """A small chart of accounts for cooperative A, account ids keyed by code."""
    registry = ledger.accounts(db)
    accounts = {}
    for code, name, account_type in [
        ("1000", "Cash", "ASSET"),
        ("1100", "Bank", "ASSET"),
        ("2000", "Member Deposits", "LIABILITY"),
        ("3000", "Capital", "EQUITY"),
        ("4000", "Interest Income", "REVENUE"),
        ("5000", "Operating Expenses", "EXPENSE"),
    ]:
        account = await registry.create(coop_a, code, name, account_type)
        accounts[code] = account.id
    return accounts


@pytest_asyncio.fixture
async def fy2024(ledger, db, coop_a) -> uuid.UUID:
    """Open calendar-year 2024 period for cooperative A."""
    period = await ledger.periods(db).create(coop_a, FY2024_START, FY2024_END)
    return period.id
