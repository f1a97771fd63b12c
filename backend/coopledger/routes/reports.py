"""Financial report routes."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.middleware.auth import require_cooperative_access
from coopledger.services.balances import format_money
from coopledger.services.ledger import Ledger, get_ledger

router = APIRouter(prefix="/api/cooperatives/{cooperative_id}/reports", tags=["reports"])


@router.get("/trial-balance")
async def trial_balance(
    cooperative_id: uuid.UUID,
    as_of: date | None = Query(None),
    fiscal_period_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
    _user: dict = Depends(require_cooperative_access("ledger.reports.view")),
):
    """Trial balance, optionally as of a date and/or limited to one fiscal period."""
    report = await ledger.reports(db).trial_balance(
        cooperative_id, as_of=as_of, fiscal_period_id=fiscal_period_id
    )

    items = [
        {
            "account_id": str(row.account.id),
            "code": row.account.code,
            "name": row.account.name,
            "account_type": row.account.account_type.value,
            "debit": format_money(row.debit),
            "credit": format_money(row.credit),
        }
        for row in report.rows
    ]
    return {
        "cooperative_id": str(cooperative_id),
        "as_of": as_of.isoformat() if as_of else None,
        "fiscal_period_id": str(fiscal_period_id) if fiscal_period_id else None,
        "items": items,
        "total_debit": format_money(report.total_debit),
        "total_credit": format_money(report.total_credit),
        "balanced": report.balanced,
    }
