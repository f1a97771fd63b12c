"""Per-cooperative serialization and transient-failure retry.

Posting, reversing, creating and closing periods for one cooperative run
one at a time inside this process (``CooperativeLocks``), and each of them
also locks the target fiscal-period row ``FOR UPDATE`` so that several
processes sharing one PostgreSQL database serialize the same way.
Cooperatives never wait on each other.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.errors import InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


class CooperativeLocks:
    """One ``asyncio.Lock`` per cooperative, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def for_cooperative(self, cooperative_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(cooperative_id)
        if lock is None:
            lock = self._locks[cooperative_id] = asyncio.Lock()
        return lock


def is_transient(exc: BaseException) -> bool:
    """True for lock timeouts, deadlocks and serialization failures."""
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code in TRANSIENT_SQLSTATES
    return False


async def run_with_retry(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
) -> T:
    """Run ``operation`` as one transaction, retrying once on a transient failure.

    Any exception rolls the session back.  Ledger errors and non-transient
    database errors propagate unchanged; a transient failure on the last
    attempt surfaces as ``InternalError``.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except DBAPIError as exc:
            await db.rollback()
            if not is_transient(exc):
                raise
            if attempt == attempts:
                logger.error("Transaction failed after %d attempts: %s", attempts, exc)
                raise InternalError(
                    "The ledger is busy, please retry the request",
                    {"attempts": attempts},
                ) from exc
            logger.warning("Transient database failure, retrying: %s", exc)
        except Exception:
            await db.rollback()
            raise
    raise AssertionError("unreachable")
