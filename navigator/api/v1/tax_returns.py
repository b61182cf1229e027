"""Federal (Form 1040) and Maryland (Form 502) return records.

Returns that are in flight or already filed are read-only here; status
changes go through the e-file endpoints.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.api.v1.households import get_household_or_404, resolve_owner_id
from navigator.core.dependencies import check_owner_or_staff, get_current_user, is_staff
from navigator.core.exceptions import ConflictError, NotFoundError
from navigator.db.postgres import get_db
from navigator.efile.types import EFileStatus, QueueStatus
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn
from navigator.models.user import User
from navigator.schemas.common import MessageResponse
from navigator.schemas.tax_return import (
    FederalReturnCreate,
    FederalReturnResponse,
    FederalReturnUpdate,
    MarylandReturnCreate,
    MarylandReturnResponse,
    MarylandReturnUpdate,
)

router = APIRouter(prefix="/tax-returns", tags=["tax-returns"])

LOCKED_QUEUE_STATUSES = {QueueStatus.QUEUED.value, QueueStatus.PROCESSING.value}
LOCKED_EFILE_STATUSES = {EFileStatus.TRANSMITTED.value, EFileStatus.ACCEPTED.value}


def _ensure_editable(tax_return: FederalTaxReturn | MarylandTaxReturn) -> None:
    if tax_return.queue_status in LOCKED_QUEUE_STATUSES or tax_return.efile_status in LOCKED_EFILE_STATUSES:
        raise ConflictError("Return is being filed and can no longer be changed")


async def get_federal_or_404(db: AsyncSession, return_id: int, user: User) -> FederalTaxReturn:
    tax_return = await db.get(FederalTaxReturn, return_id)
    if not tax_return:
        raise NotFoundError("Federal return not found")
    check_owner_or_staff(tax_return.user_id, tax_return.tenant_id, user)
    return tax_return


async def get_maryland_or_404(db: AsyncSession, return_id: int, user: User) -> MarylandTaxReturn:
    tax_return = await db.get(MarylandTaxReturn, return_id)
    if not tax_return:
        raise NotFoundError("Maryland return not found")
    check_owner_or_staff(tax_return.user_id, tax_return.tenant_id, user)
    return tax_return


async def _paginate(db: AsyncSession, model, user: User, offset: int, limit: int, tax_year: int | None) -> tuple:
    filters = [model.tenant_id == user.tenant_id]
    if not is_staff(user):
        filters.append(model.user_id == user.id)
    if tax_year is not None:
        filters.append(model.tax_year == tax_year)

    total = (await db.execute(select(func.count(model.id)).where(*filters))).scalar() or 0
    result = await db.execute(select(model).where(*filters).order_by(model.created_at.desc()).offset(offset).limit(limit))
    return result.scalars().all(), total


# ---------------------------------------------------------------------------
# Federal
# ---------------------------------------------------------------------------


@router.get("/federal")
async def list_federal_returns(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tax_year: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows, total = await _paginate(db, FederalTaxReturn, user, offset, limit, tax_year)
    return {
        "items": [FederalReturnResponse.model_validate(r) for r in rows],
        "total": total,
        "offset": offset,
        "limit": limit,
    }


@router.post("/federal", response_model=FederalReturnResponse, status_code=201)
async def create_federal_return(
    body: FederalReturnCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    owner_id = await resolve_owner_id(db, user, body.user_id)
    if body.household_id is not None:
        await get_household_or_404(db, body.household_id, user)

    tax_return = FederalTaxReturn(
        tenant_id=user.tenant_id,
        user_id=owner_id,
        **body.model_dump(exclude={"user_id"}),
    )
    db.add(tax_return)
    await db.flush()
    await db.refresh(tax_return)
    return tax_return


@router.get("/federal/{return_id}", response_model=FederalReturnResponse)
async def get_federal_return(
    return_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await get_federal_or_404(db, return_id, user)


@router.put("/federal/{return_id}", response_model=FederalReturnResponse)
async def update_federal_return(
    return_id: int,
    body: FederalReturnUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tax_return = await get_federal_or_404(db, return_id, user)
    _ensure_editable(tax_return)
    data = body.model_dump(exclude_unset=True)
    if data.get("household_id") is not None:
        await get_household_or_404(db, data["household_id"], user)

    for key, value in data.items():
        setattr(tax_return, key, value)
    # Any edit invalidates the previous validation and generated document
    tax_return.validation_status = "pending"
    tax_return.document_generated = False
    await db.flush()
    await db.refresh(tax_return)
    return tax_return


@router.delete("/federal/{return_id}", response_model=MessageResponse)
async def delete_federal_return(
    return_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tax_return = await get_federal_or_404(db, return_id, user)
    _ensure_editable(tax_return)
    await db.delete(tax_return)
    return MessageResponse(message="Federal return deleted")


# ---------------------------------------------------------------------------
# Maryland
# ---------------------------------------------------------------------------


@router.get("/maryland")
async def list_maryland_returns(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tax_year: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows, total = await _paginate(db, MarylandTaxReturn, user, offset, limit, tax_year)
    return {
        "items": [MarylandReturnResponse.model_validate(r) for r in rows],
        "total": total,
        "offset": offset,
        "limit": limit,
    }


@router.post("/maryland", response_model=MarylandReturnResponse, status_code=201)
async def create_maryland_return(
    body: MarylandReturnCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    owner_id = await resolve_owner_id(db, user, body.user_id)
    if body.federal_return_id is not None:
        await get_federal_or_404(db, body.federal_return_id, user)

    tax_return = MarylandTaxReturn(
        tenant_id=user.tenant_id,
        user_id=owner_id,
        **body.model_dump(exclude={"user_id"}),
    )
    db.add(tax_return)
    await db.flush()
    await db.refresh(tax_return)
    return tax_return


@router.get("/maryland/{return_id}", response_model=MarylandReturnResponse)
async def get_maryland_return(
    return_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return await get_maryland_or_404(db, return_id, user)


@router.put("/maryland/{return_id}", response_model=MarylandReturnResponse)
async def update_maryland_return(
    return_id: int,
    body: MarylandReturnUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tax_return = await get_maryland_or_404(db, return_id, user)
    _ensure_editable(tax_return)
    data = body.model_dump(exclude_unset=True)
    if data.get("federal_return_id") is not None:
        await get_federal_or_404(db, data["federal_return_id"], user)

    for key, value in data.items():
        setattr(tax_return, key, value)
    tax_return.validation_status = "pending"
    await db.flush()
    await db.refresh(tax_return)
    return tax_return


@router.delete("/maryland/{return_id}", response_model=MessageResponse)
async def delete_maryland_return(
    return_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tax_return = await get_maryland_or_404(db, return_id, user)
    _ensure_editable(tax_return)
    await db.delete(tax_return)
    return MessageResponse(message="Maryland return deleted")
