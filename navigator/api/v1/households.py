from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.core.dependencies import check_owner_or_staff, get_current_user, is_staff
from navigator.core.exceptions import BadRequestError, NotFoundError
from navigator.db.postgres import get_db
from navigator.models.household import Household
from navigator.models.user import User
from navigator.schemas.common import MessageResponse
from navigator.schemas.household import HouseholdCreate, HouseholdResponse, HouseholdUpdate

router = APIRouter(prefix="/households", tags=["households"])


async def resolve_owner_id(db: AsyncSession, user: User, requested: UUID | None) -> UUID:
    """Staff may create rows for another user of their tenant; taxpayers only for themselves."""
    if requested is None or requested == user.id:
        return user.id
    if not is_staff(user):
        raise BadRequestError("Only staff may create records for another user")
    owner = await db.execute(select(User.id).where(User.id == requested, User.tenant_id == user.tenant_id))
    if owner.scalar_one_or_none() is None:
        raise BadRequestError("Owner not found in this tenant")
    return requested


async def get_household_or_404(db: AsyncSession, household_id: int, user: User) -> Household:
    household = await db.get(Household, household_id)
    if not household:
        raise NotFoundError("Household not found")
    check_owner_or_staff(household.user_id, household.tenant_id, user)
    return household


@router.get("/")
async def list_households(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    filters = [Household.tenant_id == user.tenant_id]
    if not is_staff(user):
        filters.append(Household.user_id == user.id)

    total = (await db.execute(select(func.count(Household.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(Household).where(*filters).order_by(Household.created_at.desc()).offset(offset).limit(limit)
    )
    return {
        "items": [HouseholdResponse.model_validate(h) for h in result.scalars().all()],
        "total": total,
        "offset": offset,
        "limit": limit,
    }


@router.post("/", response_model=HouseholdResponse, status_code=201)
async def create_household(
    body: HouseholdCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    owner_id = await resolve_owner_id(db, user, body.user_id)
    household = Household(
        tenant_id=user.tenant_id,
        user_id=owner_id,
        name=body.name,
        county=body.county,
        household_size=body.household_size,
        monthly_income=body.monthly_income,
        members=[m.model_dump() for m in body.members] if body.members is not None else None,
        notes=body.notes,
    )
    db.add(household)
    await db.flush()
    await db.refresh(household)
    return household


@router.get("/{household_id}", response_model=HouseholdResponse)
async def get_household(
    household_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await get_household_or_404(db, household_id, user)


@router.put("/{household_id}", response_model=HouseholdResponse)
async def update_household(
    household_id: int,
    body: HouseholdUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    household = await get_household_or_404(db, household_id, user)
    data = body.model_dump(exclude_unset=True)
    if "members" in data and body.members is not None:
        data["members"] = [m.model_dump() for m in body.members]
    for key, value in data.items():
        setattr(household, key, value)
    await db.flush()
    await db.refresh(household)
    return household


@router.delete("/{household_id}", response_model=MessageResponse)
async def delete_household(
    household_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    household = await get_household_or_404(db, household_id, user)
    await db.delete(household)
    return MessageResponse(message="Household deleted")
