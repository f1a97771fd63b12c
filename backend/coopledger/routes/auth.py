"""Authentication routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.middleware.auth import get_current_user, token_for_user, verify_password
from coopledger.models.user import User
from coopledger.rbac import GLOBAL_SCOPE_ROLES, get_role_permissions
from coopledger.services.audit_service import AuditEvent, AuditEventCategory
from coopledger.services.ledger import get_audit_writer

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _scope(role: str) -> str:
    return "global" if role in GLOBAL_SCOPE_ROLES else "cooperative"


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(User).where(User.username == body.username, User.is_active.is_(True))
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(body.password, user.password_hash):
        get_audit_writer().fire_and_forget(AuditEvent.create(
            "auth.failed",
            category=AuditEventCategory.SYSTEM,
            username=body.username,
            resource_type="auth",
            details={"reason": "invalid_credentials"},
            ip_address=_client_ip(request),
        ))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    get_audit_writer().fire_and_forget(AuditEvent.create(
        "auth.login",
        cooperative_id=str(user.cooperative_id) if user.cooperative_id else None,
        user_id=str(user.id),
        username=user.username,
        resource_type="user",
        resource_id=str(user.id),
        ip_address=_client_ip(request),
    ))

    return TokenResponse(
        access_token=token_for_user(user),
        user={
            "id": str(user.id),
            "username": user.username,
            "display_name": user.display_name,
            "email": user.email,
            "role": user.role,
            "cooperative_id": str(user.cooperative_id) if user.cooperative_id else None,
            "permissions": sorted(get_role_permissions(user.role)),
            "scope": _scope(user.role),
        },
    )


@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    return {
        "username": user["username"],
        "role": user["role"],
        "user_id": str(user["user_id"]),
        "cooperative_id": str(user["cooperative_id"]) if user["cooperative_id"] else None,
        "display_name": user.get("display_name", user["username"]),
        "email": user.get("email"),
        "permissions": sorted(get_role_permissions(user["role"])),
        "scope": _scope(user["role"]),
    }
