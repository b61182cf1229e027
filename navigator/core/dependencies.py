from collections.abc import Callable
from uuid import UUID

import jwt
from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.core.config import settings
from navigator.core.exceptions import ForbiddenError, UnauthorizedError
from navigator.db.postgres import get_db
from navigator.models.user import User

# Role hierarchy: higher index = more privileges
ROLE_HIERARCHY: dict[str, int] = {
    "taxpayer": 0,
    "navigator": 1,
    "admin": 2,
    "super_admin": 3,
}


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    authorization: str = Header(..., description="Bearer <token>"),
) -> User:
    if not authorization.startswith("Bearer "):
        raise UnauthorizedError("Invalid authorization header")

    token = authorization[7:]
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired token")

    if payload.get("type") != "access":
        raise UnauthorizedError("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")

    result = await db.execute(select(User).where(User.id == UUID(user_id), User.is_active == True))  # noqa: E712
    user = result.scalar_one_or_none()
    if not user:
        raise UnauthorizedError("User not found or inactive")

    return user


async def get_current_tenant_id(user: User = Depends(get_current_user)) -> UUID:
    return user.tenant_id


def is_staff(user: User) -> bool:
    """Navigators and above work on behalf of taxpayers across their tenant."""
    return ROLE_HIERARCHY.get(user.role, 0) >= ROLE_HIERARCHY["navigator"]


def check_owner_or_staff(owner_id: UUID, tenant_id: UUID, user: User) -> None:
    """Verify user may act on a row owned by `owner_id` in `tenant_id`.

    Rows from another tenant are reported as forbidden to everyone.
    Taxpayers may only touch their own rows.
    """
    if tenant_id != user.tenant_id:
        raise ForbiddenError("You do not have access to this resource")
    if owner_id != user.id and not is_staff(user):
        raise ForbiddenError("You do not have access to this resource")


def require_role(min_role: str) -> Callable:
    """Dependency factory: require user to have at least `min_role` privileges.

    Usage:
        @router.get("/queue/status", dependencies=[Depends(require_role("navigator"))])
    """
    min_level = ROLE_HIERARCHY.get(min_role, 0)

    async def _check(user: User = Depends(get_current_user)) -> User:
        user_level = ROLE_HIERARCHY.get(user.role, 0)
        if user_level < min_level:
            raise ForbiddenError(f"Requires at least '{min_role}' role")
        return user

    return _check
