"""Organization routes -- Cooperatives and their Fiscal Periods."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.middleware.auth import (
    get_cooperative_scope,
    require_cooperative_access,
    require_permission,
)
from coopledger.models.enums import PeriodStatus
from coopledger.models.org import Cooperative, FiscalPeriod
from coopledger.rbac import GLOBAL_SCOPE_ROLES
from coopledger.services.balances import format_money
from coopledger.services.cooperatives import CooperativeService
from coopledger.services.ledger import Ledger, get_ledger

router = APIRouter(prefix="/api/cooperatives", tags=["organization"])


# ---------------------------------------------------------------------------
# COOPERATIVES
# ---------------------------------------------------------------------------

class CooperativeCreate(BaseModel):
    code: str
    name: str
    currency: str = "IDR"


def _cooperative_dict(c: Cooperative) -> dict:
    return {
        "id": str(c.id),
        "code": c.code,
        "name": c.name,
        "currency": c.currency,
        "is_active": c.is_active,
    }


@router.get("")
async def list_cooperatives(
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("coop.cooperatives.view")),
):
    scope = get_cooperative_scope(_user)
    if scope is None and _user["role"] not in GLOBAL_SCOPE_ROLES:
        return {"items": [], "total": 0}

    cooperatives = await CooperativeService(db).list_active(only=scope)
    items = [_cooperative_dict(c) for c in cooperatives]
    return {"items": items, "total": len(items)}


@router.post("", status_code=201)
async def create_cooperative(
    body: CooperativeCreate,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("coop.cooperatives.create")),
):
    cooperative = await CooperativeService(db).create(body.code, body.name, body.currency)
    return _cooperative_dict(cooperative)


# ---------------------------------------------------------------------------
# FISCAL PERIODS
# ---------------------------------------------------------------------------

class FiscalPeriodCreate(BaseModel):
    start_date: date
    end_date: date
    name: str | None = None


class FiscalPeriodClose(BaseModel):
    generate_closing_entries: bool = False
    open_next: bool = False


def _period_dict(p: FiscalPeriod) -> dict:
    return {
        "id": str(p.id),
        "cooperative_id": str(p.cooperative_id),
        "name": p.name,
        "start_date": p.start_date.isoformat(),
        "end_date": p.end_date.isoformat(),
        "status": p.status.value,
        "closed_at": p.closed_at.isoformat() if p.closed_at else None,
        "closed_by": str(p.closed_by) if p.closed_by else None,
    }


@router.get("/{cooperative_id}/fiscal-periods")
async def list_fiscal_periods(
    cooperative_id: uuid.UUID,
    period_status: PeriodStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.view")),
):
    periods = await ledger.periods(db).list_periods(cooperative_id, period_status)
    return {"items": [_period_dict(p) for p in periods], "total": len(periods)}


@router.get("/{cooperative_id}/fiscal-periods/active")
async def get_active_fiscal_period(
    cooperative_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.view")),
):
    period = await ledger.periods(db).get_active(cooperative_id)
    return {"item": _period_dict(period) if period else None}


@router.get("/{cooperative_id}/fiscal-periods/{period_id}")
async def get_fiscal_period(
    cooperative_id: uuid.UUID,
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.view")),
):
    period = await ledger.periods(db).get(cooperative_id, period_id)
    return _period_dict(period)


@router.post("/{cooperative_id}/fiscal-periods", status_code=201)
async def create_fiscal_period(
    cooperative_id: uuid.UUID,
    body: FiscalPeriodCreate,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.create")),
):
    period = await ledger.periods(db).create(
        cooperative_id,
        body.start_date,
        body.end_date,
        name=body.name,
        created_by=_user["user_id"],
    )
    return _period_dict(period)


@router.get("/{cooperative_id}/fiscal-periods/{period_id}/closing-check")
async def check_fiscal_period_closing(
    cooperative_id: uuid.UUID,
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.view")),
):
    check = await ledger.periods(db).check_closing(cooperative_id, period_id)
    return {
        "fiscal_period": _period_dict(check.period),
        "ready": check.ready,
        "entry_count": check.entry_count,
        "total_debit": format_money(check.total_debit),
        "total_credit": format_money(check.total_credit),
        "unbalanced_entries": check.unbalanced_entries,
        "errors": check.errors,
        "warnings": check.warnings,
    }


@router.post("/{cooperative_id}/fiscal-periods/{period_id}/close")
async def close_fiscal_period(
    cooperative_id: uuid.UUID,
    period_id: uuid.UUID,
    body: FiscalPeriodClose | None = None,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.fiscal_periods.close")),
):
    body = body or FiscalPeriodClose()
    periods = ledger.periods(db)
    period = await periods.close(
        cooperative_id,
        period_id,
        _user["user_id"],
        generate_closing_entries=body.generate_closing_entries,
        open_next=body.open_next,
    )
    result = _period_dict(period)
    if body.open_next:
        next_period = await periods.get_active(cooperative_id)
        result["next_period"] = _period_dict(next_period) if next_period else None
    return result
