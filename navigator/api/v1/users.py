"""User management API: list tenant users, create accounts for navigators and taxpayers, change roles."""

import secrets
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.core.dependencies import ROLE_HIERARCHY, get_current_tenant_id, get_current_user, require_role
from navigator.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from navigator.core.security import hash_password
from navigator.db.postgres import get_db
from navigator.models.user import User
from navigator.schemas.user import (
    CreateUserRequest,
    CreateUserResponse,
    UpdateUserRequest,
    UserListItem,
    UserListPaginated,
)

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/", response_model=UserListPaginated, dependencies=[Depends(require_role("admin"))])
async def list_users(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """List all users in the tenant. Requires admin role."""
    count_result = await db.execute(select(func.count()).select_from(User).where(User.tenant_id == tenant_id))
    total = count_result.scalar() or 0

    result = await db.execute(select(User).where(User.tenant_id == tenant_id).order_by(User.created_at.asc()))
    users = result.scalars().all()
    return UserListPaginated(items=[UserListItem.model_validate(u) for u in users], total=total)


@router.post("/", response_model=CreateUserResponse, status_code=201)
async def create_user(
    body: CreateUserRequest,
    current_user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    """Create a user with a temporary password. Requires admin role."""
    if ROLE_HIERARCHY[body.role] > ROLE_HIERARCHY.get(current_user.role, 0):
        raise ForbiddenError("Cannot grant a role above your own")

    existing = await db.execute(select(User).where(User.email == body.email))
    if existing.scalar_one_or_none():
        raise ConflictError("Email already registered")

    temp_password = secrets.token_urlsafe(16)
    user = User(
        tenant_id=current_user.tenant_id,
        email=body.email,
        password_hash=hash_password(temp_password),
        full_name=body.full_name,
        phone_number=body.phone_number,
        role=body.role,
    )
    db.add(user)
    await db.flush()

    return CreateUserResponse(id=user.id, email=user.email, role=user.role, temporary_password=temp_password)


@router.patch("/{user_id}", response_model=UserListItem)
async def update_user(
    user_id: uuid.UUID,
    body: UpdateUserRequest,
    current_user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    """Update profile fields, role or active flag. Requires admin role."""
    result = await db.execute(select(User).where(User.id == user_id, User.tenant_id == current_user.tenant_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")

    if body.role is not None:
        if current_user.id == user_id:
            raise BadRequestError("Cannot change your own role")
        if ROLE_HIERARCHY[body.role] > ROLE_HIERARCHY.get(current_user.role, 0):
            raise ForbiddenError("Cannot grant a role above your own")
        user.role = body.role

    if body.is_active is False and current_user.id == user_id:
        raise BadRequestError("Cannot deactivate yourself")

    for field in ("full_name", "phone_number", "is_active"):
        value = getattr(body, field)
        if value is not None:
            setattr(user, field, value)

    await db.flush()
    return user
