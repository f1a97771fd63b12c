"""General Ledger routes -- Chart of Accounts, Journal Entries, Balances."""
from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.middleware.auth import require_cooperative_access
from coopledger.models.gl import Account, JournalEntry
from coopledger.services.accounts import AccountNode
from coopledger.services.balances import format_money
from coopledger.services.journal import LineDraft
from coopledger.services.ledger import Ledger, get_ledger

router = APIRouter(prefix="/api/cooperatives/{cooperative_id}", tags=["general-ledger"])


# ---------------------------------------------------------------------------
# Pydantic Schemas
# ---------------------------------------------------------------------------

class AccountCreate(BaseModel):
    code: str
    name: str
    account_type: str
    subtype: str | None = None
    parent_id: uuid.UUID | None = None
    description: str | None = None


class AccountUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    is_active: bool | None = None


class JournalLineIn(BaseModel):
    account_id: uuid.UUID
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    description: str | None = None


class JournalEntryCreate(BaseModel):
    entry_date: date
    fiscal_period_id: uuid.UUID | None = None
    description: str | None = None
    lines: list[JournalLineIn]


class JournalEntryReverse(BaseModel):
    entry_date: date | None = None
    description: str | None = None


def _account_dict(a: Account) -> dict:
    return {
        "id": str(a.id),
        "cooperative_id": str(a.cooperative_id),
        "code": a.code,
        "name": a.name,
        "account_type": a.account_type.value,
        "subtype": a.subtype,
        "normal_balance": a.normal_balance.value,
        "parent_id": str(a.parent_id) if a.parent_id else None,
        "is_active": a.is_active,
        "is_system": a.is_system,
        "description": a.description,
    }


def _node_dict(node: AccountNode) -> dict:
    return {
        **_account_dict(node.account),
        "level": node.level,
        "path": node.path,
        "children": [_node_dict(child) for child in node.children],
    }


def _entry_dict(je: JournalEntry, with_lines: bool = True) -> dict:
    data = {
        "id": str(je.id),
        "cooperative_id": str(je.cooperative_id),
        "reference_number": je.reference_number,
        "fiscal_period_id": str(je.fiscal_period_id),
        "fiscal_period_name": je.fiscal_period.name if je.fiscal_period else None,
        "entry_date": je.entry_date.isoformat(),
        "description": je.description,
        "source": je.source.value,
        "reverses_entry_id": str(je.reverses_entry_id) if je.reverses_entry_id else None,
        "total_debit": format_money(je.total_debit),
        "total_credit": format_money(je.total_credit),
        "created_by": str(je.created_by) if je.created_by else None,
        "created_at": je.created_at.isoformat() if je.created_at else None,
        "line_count": len(je.lines),
    }
    if with_lines:
        data["lines"] = [
            {
                "id": str(line.id),
                "line_number": line.line_number,
                "account_id": str(line.account_id),
                "account_code": line.account.code if line.account else None,
                "account_name": line.account.name if line.account else None,
                "description": line.description,
                "debit": format_money(line.debit),
                "credit": format_money(line.credit),
            }
            for line in je.lines
        ]
    return data


# ---------------------------------------------------------------------------
# CHART OF ACCOUNTS
# ---------------------------------------------------------------------------

@router.get("/accounts")
async def list_accounts(
    cooperative_id: uuid.UUID,
    account_type: str | None = Query(None),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.view")),
):
    accounts = await ledger.accounts(db).list_accounts(
        cooperative_id, account_type=account_type, include_inactive=include_inactive
    )
    return {"items": [_account_dict(a) for a in accounts], "total": len(accounts)}


@router.get("/accounts/tree")
async def get_accounts_tree(
    cooperative_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.view")),
):
    """Return the chart of accounts as a nested tree."""
    roots = await ledger.accounts(db).get_hierarchy(cooperative_id)
    return {"items": [_node_dict(node) for node in roots]}


@router.get("/accounts/{account_id}")
async def get_account(
    cooperative_id: uuid.UUID,
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.view")),
):
    account = await ledger.accounts(db).get(cooperative_id, account_id)
    return _account_dict(account)


@router.post("/accounts", status_code=201)
async def create_account(
    cooperative_id: uuid.UUID,
    body: AccountCreate,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.create")),
):
    account = await ledger.accounts(db).create(
        cooperative_id,
        code=body.code,
        name=body.name,
        account_type=body.account_type,
        subtype=body.subtype,
        parent_id=body.parent_id,
        description=body.description,
        created_by=_user["user_id"],
    )
    return _account_dict(account)


@router.put("/accounts/{account_id}")
async def update_account(
    cooperative_id: uuid.UUID,
    account_id: uuid.UUID,
    body: AccountUpdate,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.update")),
):
    account = await ledger.accounts(db).update(
        cooperative_id,
        account_id,
        name=body.name,
        description=body.description,
        is_active=body.is_active,
    )
    return _account_dict(account)


@router.delete("/accounts/{account_id}")
async def delete_account(
    cooperative_id: uuid.UUID,
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.accounts.delete")),
):
    await ledger.accounts(db).delete(cooperative_id, account_id)
    return {"status": "deleted"}


@router.get("/accounts/{account_id}/balance")
async def get_account_balance(
    cooperative_id: uuid.UUID,
    account_id: uuid.UUID,
    as_of: date | None = Query(None),
    include_children: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.reports.view")),
):
    as_of = as_of or date.today()
    registry = ledger.accounts(db)
    account = await registry.get(cooperative_id, account_id)
    balance = await registry.get_balance(
        cooperative_id, account_id, as_of, include_children=include_children
    )
    return {
        "account_id": str(account.id),
        "code": account.code,
        "normal_balance": account.normal_balance.value,
        "as_of": as_of.isoformat(),
        "include_children": include_children,
        "balance": format_money(balance),
    }


# ---------------------------------------------------------------------------
# JOURNAL ENTRIES
# ---------------------------------------------------------------------------

@router.get("/journal-entries")
async def list_journal_entries(
    cooperative_id: uuid.UUID,
    fiscal_period_id: uuid.UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.journal_entries.view")),
):
    entries, total = await ledger.journal(db).list_entries(
        cooperative_id, fiscal_period_id=fiscal_period_id, page=page, page_size=page_size
    )
    return {
        "items": [_entry_dict(je, with_lines=False) for je in entries],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/journal-entries/{entry_id}")
async def get_journal_entry(
    cooperative_id: uuid.UUID,
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.journal_entries.view")),
):
    entry = await ledger.journal(db).get(cooperative_id, entry_id)
    return _entry_dict(entry)


@router.post("/journal-entries", status_code=201)
async def create_journal_entry(
    cooperative_id: uuid.UUID,
    body: JournalEntryCreate,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.journal_entries.create")),
):
    entry = await ledger.journal(db).create(
        cooperative_id,
        body.entry_date,
        [
            LineDraft(
                account_id=line.account_id,
                debit=line.debit,
                credit=line.credit,
                description=line.description,
            )
            for line in body.lines
        ],
        created_by=_user["user_id"],
        fiscal_period_id=body.fiscal_period_id,
        description=body.description,
    )
    return _entry_dict(entry)


@router.post("/journal-entries/{entry_id}/reverse", status_code=201)
async def reverse_journal_entry(
    cooperative_id: uuid.UUID,
    entry_id: uuid.UUID,
    body: JournalEntryReverse | None = None,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.journal_entries.reverse")),
):
    body = body or JournalEntryReverse()
    reversal = await ledger.journal(db).reverse(
        cooperative_id,
        entry_id,
        created_by=_user["user_id"],
        entry_date=body.entry_date,
        description=body.description,
    )
    return _entry_dict(reversal)
