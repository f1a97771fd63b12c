"""Cooperative (tenant) lookups shared by the ledger services."""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.errors import ConflictError, NotFoundError, ValidationError
from coopledger.models.org import Cooperative

logger = logging.getLogger(__name__)


async def require_cooperative(db: AsyncSession, cooperative_id: uuid.UUID) -> Cooperative:
    cooperative = await db.get(Cooperative, cooperative_id)
    if cooperative is None:
        raise NotFoundError("Cooperative not found", {"cooperative_id": str(cooperative_id)})
    return cooperative


class CooperativeService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, code: str, name: str, currency: str = "IDR") -> Cooperative:
        code = code.strip()
        if not code or not name.strip():
            raise ValidationError("Cooperative code and name are required")

        existing = await self.db.execute(select(Cooperative.id).where(Cooperative.code == code))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Cooperative code '{code}' already exists", {"code": code})

        cooperative = Cooperative(code=code, name=name.strip(), currency=currency)
        self.db.add(cooperative)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(f"Cooperative code '{code}' already exists", {"code": code}) from exc

        logger.info("Cooperative created: %s (%s)", cooperative.code, cooperative.id)
        return cooperative

    async def list_active(self, only: uuid.UUID | None = None) -> list[Cooperative]:
        stmt = select(Cooperative).where(Cooperative.is_active.is_(True)).order_by(Cooperative.code)
        if only is not None:
            stmt = stmt.where(Cooperative.id == only)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
