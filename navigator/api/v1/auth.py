import logging
from uuid import UUID

import jwt
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.core.dependencies import get_current_user
from navigator.core.exceptions import ConflictError, UnauthorizedError
from navigator.core.rate_limit import limiter
from navigator.core.security import create_access_token, create_refresh_token, decode_token, hash_password, verify_password
from navigator.db.postgres import get_db
from navigator.models.tenant import Tenant
from navigator.models.user import User
from navigator.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest, TokenResponse, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _issue_tokens(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.tenant_id),
        refresh_token=create_refresh_token(user.id, user.tenant_id),
    )


async def _active_user(db: AsyncSession, *conditions) -> User | None:
    result = await db.execute(select(User).where(User.is_active == True, *conditions))  # noqa: E712
    return result.scalar_one_or_none()


@router.post("/register", response_model=TokenResponse, status_code=201)
@limiter.limit("5/minute")
async def register(request: Request, body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create a navigator organisation together with its first admin."""
    if (await db.execute(select(User.id).where(User.email == body.email))).first():
        raise ConflictError("Email already registered")
    if (await db.execute(select(Tenant.id).where(Tenant.slug == body.tenant_slug))).first():
        raise ConflictError("Tenant slug already taken")

    tenant = Tenant(name=body.tenant_name, slug=body.tenant_slug)
    db.add(tenant)
    await db.flush()

    user = User(
        tenant_id=tenant.id,
        email=body.email,
        password_hash=hash_password(body.password),
        full_name=body.full_name,
        role="admin",
    )
    db.add(user)
    await db.flush()

    logger.info("Registered organisation %s (tenant %s)", tenant.slug, tenant.id, extra={"tenant_id": str(tenant.id)})
    return _issue_tokens(user)


@router.post("/login", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login(request: Request, body: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await _active_user(db, User.email == body.email)
    if not user or not verify_password(body.password, user.password_hash):
        logger.warning("Failed login attempt")
        raise UnauthorizedError("Invalid email or password")

    return _issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    try:
        payload = decode_token(body.refresh_token)
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired refresh token")

    if payload.get("type") != "refresh":
        raise UnauthorizedError("Invalid token type")

    # Deactivated staff lose access at the next refresh
    user = await _active_user(db, User.id == UUID(payload["sub"]))
    if not user:
        raise UnauthorizedError("User not found or inactive")

    return _issue_tokens(user)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user
