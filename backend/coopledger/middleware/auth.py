"""Authentication and authorization dependencies for the ledger API.

Provides:
- Password hashing (bcrypt)
- JWT creation / validation
- ``get_current_user()`` dependency
- ``require_permission()`` role-based permission checks
- ``require_cooperative_access()`` tenant scoping
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import settings
from coopledger.database import get_db
from coopledger.models.user import User
from coopledger.rbac import GLOBAL_SCOPE_ROLES, get_role_permissions

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plain-text password against a bcrypt hash."""
    return _pwd_context.verify(plain, hashed)


def hash_password(plain: str) -> str:
    """Return the bcrypt hash of a plain-text password."""
    return _pwd_context.hash(plain)


# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (username), *role*, and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})

    # UUIDs are not JSON-serialisable
    for key in ("user_id", "cooperative_id"):
        if to_encode.get(key) is not None and not isinstance(to_encode[key], str):
            to_encode[key] = str(to_encode[key])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def token_for_user(user: User) -> str:
    return create_access_token({
        "sub": user.username,
        "role": user.role,
        "user_id": user.id,
        "cooperative_id": user.cooperative_id,
    })


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "user_id": user.id,
        "username": user.username,
        "role": user.role,
        "display_name": user.display_name,
        "email": user.email,
        "cooperative_id": user.cooperative_id,
    }


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Decode the JWT and return a dict describing the authenticated user.

    Raises ``HTTPException(401)`` when the token is invalid or the user cannot
    be found, and ``HTTPException(403)`` for a deactivated user.

    The dict is also stored on ``request.state._audit_user`` so the
    read-access audit middleware can attribute the request.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        username: str | None = payload.get("sub")
        if username is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    result = await db.execute(select(User).where(User.username == username))
    user: User | None = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    user_dict = user_to_dict(user)
    request.state._audit_user = user_dict
    return user_dict


# ---------------------------------------------------------------------------
# Permission-checking dependency factory
# ---------------------------------------------------------------------------


def require_permission(*permissions: str):
    """Return a FastAPI dependency that ensures the authenticated user's role
    grants ALL of the specified permissions.

    Usage::

        @router.post("/accounts", status_code=201)
        async def create_account(
            body: AccountCreate,
            user: dict = Depends(require_permission("ledger.accounts.create")),
        ):
            ...
    """
    required = set(permissions)

    async def _check_permission(
        current_user: dict[str, Any] = Depends(get_current_user),
    ) -> dict[str, Any]:
        missing = required - get_role_permissions(current_user["role"])
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}.",
            )
        return current_user

    return _check_permission


# ---------------------------------------------------------------------------
# Data scoping: cooperative-level isolation
# ---------------------------------------------------------------------------


def get_cooperative_scope(user: dict[str, Any]) -> uuid.UUID | None:
    """Return the cooperative UUID the user is limited to, or ``None`` for
    global access (``system_admin`` and ``auditor``).
    """
    if user["role"] in GLOBAL_SCOPE_ROLES:
        return None
    return user.get("cooperative_id")


def require_cooperative_access(*permissions: str):
    """Like ``require_permission`` but also checks the ``cooperative_id``
    path parameter against the user's scope.

    A scoped user without a cooperative, or asking for someone else's,
    gets 403.
    """
    check_permission = require_permission(*permissions)

    async def _check_access(
        cooperative_id: uuid.UUID,
        current_user: dict[str, Any] = Depends(check_permission),
    ) -> dict[str, Any]:
        if current_user["role"] in GLOBAL_SCOPE_ROLES:
            return current_user
        if get_cooperative_scope(current_user) != cooperative_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have access to this cooperative.",
            )
        return current_user

    return _check_access
