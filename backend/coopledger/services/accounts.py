"""Account Registry: the chart of accounts of each cooperative."""
from __future__ import annotations

import dataclasses
import datetime
import logging
import uuid
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.errors import (
    ConflictError,
    DuplicateAccountCodeError,
    NotFoundError,
    ValidationError,
)
from coopledger.models.enums import (
    SUBTYPES,
    AccountType,
    is_valid_subtype,
    normal_balance_for,
)
from coopledger.models.gl import Account, JournalLine
from coopledger.services.balances import BalanceCalculator
from coopledger.services.cooperatives import require_cooperative
from coopledger.services.events import AccountCreated, EventBus

logger = logging.getLogger(__name__)


def parse_account_type(value: AccountType | str) -> AccountType:
    if isinstance(value, AccountType):
        return value
    try:
        return AccountType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Unknown account type '{value}'",
            {"allowed": [t.value for t in AccountType]},
        ) from None


@dataclasses.dataclass
class AccountNode:
    """One account in the hierarchy, with its depth and code path."""

    account: Account
    level: int
    path: str
    children: list[AccountNode] = dataclasses.field(default_factory=list)


class AccountRegistry:
    def __init__(self, db: AsyncSession, events: EventBus, balances: BalanceCalculator) -> None:
        self.db = db
        self.events = events
        self.balances = balances

    async def create(
        self,
        cooperative_id: uuid.UUID,
        code: str,
        name: str,
        account_type: AccountType | str,
        subtype: str | None = None,
        parent_id: uuid.UUID | None = None,
        description: str | None = None,
        created_by: uuid.UUID | None = None,
    ) -> Account:
        account_type = parse_account_type(account_type)
        code = (code or "").strip()
        if not code:
            raise ValidationError("Account code is required")
        if not (name or "").strip():
            raise ValidationError("Account name is required")
        if subtype is not None and not is_valid_subtype(account_type, subtype):
            raise ValidationError(
                f"Subtype '{subtype}' is not valid for {account_type.value}",
                {"allowed": list(SUBTYPES[account_type])},
            )

        await require_cooperative(self.db, cooperative_id)

        existing = await self.db.execute(
            select(Account.id).where(
                Account.cooperative_id == cooperative_id,
                Account.code == code,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateAccountCodeError(
                f"Account code '{code}' already exists in this cooperative", {"code": code}
            )

        if parent_id is not None:
            parent = await self.db.get(Account, parent_id)
            if parent is None or parent.cooperative_id != cooperative_id:
                raise ValidationError(
                    "Parent account does not exist in this cooperative",
                    {"parent_id": str(parent_id)},
                )

        account = Account(
            cooperative_id=cooperative_id,
            code=code,
            name=name.strip(),
            account_type=account_type,
            subtype=subtype,
            normal_balance=normal_balance_for(account_type),
            parent_id=parent_id,
            description=description,
            created_by=created_by,
        )
        self.db.add(account)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateAccountCodeError(
                f"Account code '{code}' already exists in this cooperative", {"code": code}
            ) from exc

        logger.info(
            "Account created: %s %s (cooperative=%s)", account.code, account.id, cooperative_id
        )
        self.events.emit(AccountCreated(
            cooperative_id=cooperative_id,
            account_id=account.id,
            code=account.code,
            account_type=account_type.value,
            created_by=created_by,
        ))
        return account

    async def get(self, cooperative_id: uuid.UUID, account_id: uuid.UUID) -> Account:
        account = await self.db.get(Account, account_id)
        if account is None or account.cooperative_id != cooperative_id:
            raise NotFoundError("Account not found", {"account_id": str(account_id)})
        return account

    async def get_by_code(self, cooperative_id: uuid.UUID, code: str) -> Account | None:
        result = await self.db.execute(
            select(Account).where(Account.cooperative_id == cooperative_id, Account.code == code)
        )
        return result.scalar_one_or_none()

    async def list_accounts(
        self,
        cooperative_id: uuid.UUID,
        account_type: AccountType | str | None = None,
        include_inactive: bool = False,
    ) -> list[Account]:
        stmt = select(Account).where(Account.cooperative_id == cooperative_id)
        if account_type is not None:
            stmt = stmt.where(Account.account_type == parse_account_type(account_type))
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        result = await self.db.execute(stmt.order_by(Account.code))
        return list(result.scalars().all())

    async def get_hierarchy(self, cooperative_id: uuid.UUID) -> list[AccountNode]:
        """Chart of accounts as a forest: roots first, siblings ordered by code."""
        await require_cooperative(self.db, cooperative_id)
        accounts = await self.list_accounts(cooperative_id, include_inactive=True)

        by_parent: dict[uuid.UUID | None, list[Account]] = defaultdict(list)
        known = {a.id for a in accounts}
        for a in accounts:
            parent = a.parent_id if a.parent_id in known else None
            by_parent[parent].append(a)

        visited: set[uuid.UUID] = set()

        def build(account: Account, level: int, prefix: str) -> AccountNode:
            visited.add(account.id)
            path = f"{prefix} > {account.code}" if prefix else account.code
            node = AccountNode(account=account, level=level, path=path)
            for child in by_parent.get(account.id, []):
                if child.id in visited:
                    logger.warning("Account cycle detected at %s; skipping", child.id)
                    continue
                node.children.append(build(child, level + 1, path))
            return node

        return [build(root, 1, "") for root in by_parent.get(None, [])]

    async def update(
        self,
        cooperative_id: uuid.UUID,
        account_id: uuid.UUID,
        name: str | None = None,
        description: str | None = None,
        is_active: bool | None = None,
    ) -> Account:
        """Update descriptive fields.  Type and normal balance never change."""
        account = await self.get(cooperative_id, account_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("Account name cannot be blank")
            account.name = name.strip()
        if description is not None:
            account.description = description
        if is_active is not None:
            account.is_active = is_active
        await self.db.commit()
        logger.info("Account updated: %s (cooperative=%s)", account_id, cooperative_id)
        return account

    async def delete(self, cooperative_id: uuid.UUID, account_id: uuid.UUID) -> None:
        account = await self.get(cooperative_id, account_id)
        if account.is_system:
            raise ConflictError(
                f"Account {account.code} is a system account and cannot be deleted",
                {"account_id": str(account_id)},
            )

        posted = await self.db.execute(
            select(JournalLine.id).where(JournalLine.account_id == account_id).limit(1)
        )
        if posted.scalar_one_or_none() is not None:
            raise ConflictError(
                "Account is referenced by journal entries and cannot be deleted",
                {"account_id": str(account_id)},
            )

        child = await self.db.execute(
            select(Account.id).where(Account.parent_id == account_id).limit(1)
        )
        if child.scalar_one_or_none() is not None:
            raise ConflictError(
                "Account has child accounts and cannot be deleted",
                {"account_id": str(account_id)},
            )

        await self.db.delete(account)
        await self.db.commit()
        logger.info("Account deleted: %s (cooperative=%s)", account_id, cooperative_id)

    async def get_balance(
        self,
        cooperative_id: uuid.UUID,
        account_id: uuid.UUID,
        as_of: datetime.date,
        include_children: bool = False,
    ) -> Decimal:
        return await self.balances.get_balance(
            cooperative_id, account_id, as_of, include_children=include_children
        )
