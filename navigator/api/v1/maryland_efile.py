from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.api.v1.tax_returns import get_maryland_or_404
from navigator.clients.maryland_ifile import MarylandIFileClient
from navigator.core.dependencies import get_current_user, require_role
from navigator.core.exceptions import BadRequestError, ForbiddenError
from navigator.db.postgres import get_db
from navigator.efile.maryland_queue import MarylandEFileQueue
from navigator.models.user import User
from navigator.schemas.efile import (
    CountyResponse,
    MarylandSubmitRequest,
    MarylandValidateRequest,
    MockAcknowledgmentRequest,
    SubmitResponse,
)

router = APIRouter(prefix="/maryland/efile", tags=["maryland-efile"])


def get_maryland_queue(db: AsyncSession = Depends(get_db)) -> MarylandEFileQueue:
    return MarylandEFileQueue(db)


@router.post("/submit/{return_id}", response_model=SubmitResponse)
async def submit_return(
    return_id: int,
    body: MarylandSubmitRequest | None = None,
    user: User = Depends(get_current_user),
    queue: MarylandEFileQueue = Depends(get_maryland_queue),
):
    await get_maryland_or_404(queue.db, return_id, user)
    options = body or MarylandSubmitRequest()
    result = await queue.submit_to_queue(
        return_id,
        priority=options.priority,
        requires_federal_acceptance=options.requires_federal_acceptance,
        validate_county_tax=options.validate_county_tax,
    )
    if not result.success:
        raise BadRequestError(result.message)
    return SubmitResponse(**asdict(result))


@router.get("/status/{return_id}")
async def submission_status(
    return_id: int,
    user: User = Depends(get_current_user),
    queue: MarylandEFileQueue = Depends(get_maryland_queue),
):
    await get_maryland_or_404(queue.db, return_id, user)
    return await queue.get_submission_status(return_id)


@router.get("/counties", response_model=list[CountyResponse])
async def counties():
    """All 24 Maryland local jurisdictions with their income tax rates."""
    return MarylandIFileClient.get_counties_with_rates()


@router.post("/validate/{return_id}")
async def validate_return(
    return_id: int,
    body: MarylandValidateRequest | None = None,
    user: User = Depends(get_current_user),
    queue: MarylandEFileQueue = Depends(get_maryland_queue),
):
    await get_maryland_or_404(queue.db, return_id, user)
    options = body or MarylandValidateRequest()
    return await queue.validate_return(
        return_id, county_tax=options.county_tax, credits=options.credits, residency=options.residency
    )


@router.get("/queue/stats", dependencies=[Depends(require_role("admin"))])
async def queue_stats(queue: MarylandEFileQueue = Depends(get_maryland_queue)):
    return await queue.get_queue_stats()


@router.post("/mock-ack/{return_id}")
async def mock_acknowledgment(
    return_id: int,
    body: MockAcknowledgmentRequest,
    user: User = Depends(require_role("navigator")),
    queue: MarylandEFileQueue = Depends(get_maryland_queue),
):
    """Simulate a Comptroller acknowledgment. Disabled against the production gateway."""
    if queue.client.environment == "production":
        raise ForbiddenError("Mock acknowledgments are not available in production")
    await get_maryland_or_404(queue.db, return_id, user)
    tax_return = await queue.record_acknowledgment(
        return_id, body.status, confirmation_number=body.confirmation_number, errors=body.errors
    )
    return {
        "return_id": tax_return.id,
        "queue_status": tax_return.queue_status,
        "efile_status": tax_return.efile_status,
        "confirmation_number": tax_return.confirmation_number,
    }
