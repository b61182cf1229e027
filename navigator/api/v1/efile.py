"""Federal e-file API: queue submissions, track acknowledgments, operate the queue."""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.api.v1.tax_returns import get_federal_or_404
from navigator.core.dependencies import get_current_user, require_role
from navigator.core.exceptions import BadRequestError, NotFoundError
from navigator.db.postgres import get_db
from navigator.efile.federal_queue import FederalEFileQueue
from navigator.efile.worker import get_queue_worker
from navigator.models.efile_log import EFileSubmissionLog
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn
from navigator.models.user import User
from navigator.schemas.common import MessageResponse
from navigator.schemas.efile import (
    BatchSubmitRequest,
    BatchSubmitResponse,
    RetryRequest,
    StatusOverrideRequest,
    SubmissionLogResponse,
    SubmitRequest,
    SubmitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/efile", tags=["efile"])


def get_federal_queue(db: AsyncSession = Depends(get_db)) -> FederalEFileQueue:
    return FederalEFileQueue(db)


def _submit_response(result) -> SubmitResponse:
    if not result.success:
        raise BadRequestError(result.message)
    return SubmitResponse(**asdict(result))


@router.post("/submit/batch", response_model=BatchSubmitResponse)
async def submit_batch(
    body: BatchSubmitRequest,
    user: User = Depends(require_role("navigator")),
    queue: FederalEFileQueue = Depends(get_federal_queue),
):
    """Queue several returns under one batch id. Requires navigator role."""
    ids = list(dict.fromkeys(body.return_ids))
    result = await queue.db.execute(
        select(FederalTaxReturn.id).where(FederalTaxReturn.id.in_(ids), FederalTaxReturn.tenant_id == user.tenant_id)
    )
    owned = {row[0] for row in result.all()}

    batch = await queue.submit_batch([i for i in ids if i in owned], priority=body.priority)
    batch.failed.extend({"return_id": i, "error": "Return not found"} for i in ids if i not in owned)
    batch.success = not batch.failed
    return BatchSubmitResponse(**asdict(batch))


@router.post("/submit/{return_id}", response_model=SubmitResponse)
async def submit_return(
    return_id: int,
    body: SubmitRequest | None = None,
    user: User = Depends(get_current_user),
    queue: FederalEFileQueue = Depends(get_federal_queue),
):
    await get_federal_or_404(queue.db, return_id, user)
    result = await queue.submit_to_queue(return_id, priority=body.priority if body else None)
    return _submit_response(result)


@router.get("/status/{return_id}")
async def submission_status(
    return_id: int,
    user: User = Depends(get_current_user),
    queue: FederalEFileQueue = Depends(get_federal_queue),
):
    await get_federal_or_404(queue.db, return_id, user)
    status = await queue.get_submission_status(return_id)
    status["history"] = [SubmissionLogResponse.model_validate(row) for row in status["history"]]
    return status


@router.get("/queue/status", dependencies=[Depends(require_role("navigator"))])
async def queue_status(queue: FederalEFileQueue = Depends(get_federal_queue)):
    return await queue.get_queue_status(worker_running=get_queue_worker().running)


@router.post("/retry/{return_id}", response_model=SubmitResponse)
async def retry_submission(
    return_id: int,
    body: RetryRequest | None = None,
    user: User = Depends(get_current_user),
    queue: FederalEFileQueue = Depends(get_federal_queue),
):
    await get_federal_or_404(queue.db, return_id, user)
    result = await queue.retry_submission(return_id, priority=body.priority if body else None)
    return _submit_response(result)


@router.get("/acknowledgment/{return_id}")
async def acknowledgment(
    return_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = await get_federal_or_404(db, return_id, user)
    return {
        "return_id": tax_return.id,
        "efile_status": tax_return.efile_status,
        "received": tax_return.acknowledgment_received_at is not None,
        "received_at": tax_return.acknowledgment_received_at,
        "dcn": tax_return.dcn,
        "accepted_at": tax_return.accepted_at,
        "rejected_at": tax_return.rejected_at,
        "rejection_code": tax_return.rejection_code,
        "rejection_reason": tax_return.rejection_reason,
        "rejection_details": tax_return.rejection_details,
        "acknowledgment_data": tax_return.acknowledgment_data,
    }


@router.post("/process-acknowledgments", dependencies=[Depends(require_role("navigator"))])
async def process_acknowledgments(queue: FederalEFileQueue = Depends(get_federal_queue)):
    """Poll the IRS for pending acknowledgments now instead of waiting for the scheduler."""
    result = await queue.process_acknowledgments()
    return asdict(result)


@router.get("/logs/{return_id}", response_model=list[SubmissionLogResponse])
async def return_logs(
    return_id: int,
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await get_federal_or_404(db, return_id, user)
    result = await db.execute(
        select(EFileSubmissionLog)
        .where(EFileSubmissionLog.return_type == "federal", EFileSubmissionLog.federal_return_id == return_id)
        .order_by(EFileSubmissionLog.created_at.desc(), EFileSubmissionLog.id.desc())
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/logs", response_model=list[SubmissionLogResponse])
async def all_logs(
    return_type: str | None = Query(None, pattern="^(federal|maryland)$"),
    action: str | None = Query(None, max_length=30),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(require_role("navigator")),
    db: AsyncSession = Depends(get_db),
):
    """Tenant-wide submission audit trail. Requires navigator role."""
    federal_ids = select(FederalTaxReturn.id).where(FederalTaxReturn.tenant_id == user.tenant_id)
    maryland_ids = select(MarylandTaxReturn.id).where(MarylandTaxReturn.tenant_id == user.tenant_id)
    stmt = select(EFileSubmissionLog).where(
        or_(
            EFileSubmissionLog.federal_return_id.in_(federal_ids),
            EFileSubmissionLog.maryland_return_id.in_(maryland_ids),
        )
    )
    if return_type:
        stmt = stmt.where(EFileSubmissionLog.return_type == return_type)
    if action:
        stmt = stmt.where(EFileSubmissionLog.action == action)
    stmt = stmt.order_by(EFileSubmissionLog.created_at.desc(), EFileSubmissionLog.id.desc()).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/document/{return_id}")
async def return_document(
    return_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = await get_federal_or_404(db, return_id, user)
    if not tax_return.document_generated or not tax_return.document_content:
        raise NotFoundError("Return document has not been generated yet")
    return {
        "return_id": tax_return.id,
        "document_hash": tax_return.document_hash,
        "generated_at": tax_return.document_generated_at,
        "content": tax_return.document_content,
    }


@router.post("/update-status/{return_id}", dependencies=[Depends(require_role("admin"))])
async def update_status(
    return_id: int,
    body: StatusOverrideRequest,
    user: User = Depends(get_current_user),
    queue: FederalEFileQueue = Depends(get_federal_queue),
) -> dict[str, Any]:
    """Manually override the e-file status. Requires admin role."""
    await get_federal_or_404(queue.db, return_id, user)
    tax_return = await queue.update_status(
        return_id,
        body.status,
        dcn=body.dcn,
        transmission_id=body.transmission_id,
        rejection_reason=body.rejection_reason,
    )
    logger.info("Federal return %d status overridden to %s by %s", return_id, body.status, user.email)
    return {"return_id": tax_return.id, "efile_status": tax_return.efile_status, "queue_status": tax_return.queue_status}


# ---------------------------------------------------------------------------
# Queue administration
# ---------------------------------------------------------------------------


@router.post("/admin/reset-circuit-breaker", dependencies=[Depends(require_role("admin"))])
async def reset_circuit_breaker(queue: FederalEFileQueue = Depends(get_federal_queue)):
    queue.client.reset_circuit_breaker()
    logger.info("MeF circuit breaker reset manually")
    return {"message": "Circuit breaker reset", "circuit_breaker": queue.client.get_circuit_breaker_status()}


@router.post("/admin/start-processing", response_model=MessageResponse, dependencies=[Depends(require_role("admin"))])
async def start_processing():
    if not get_queue_worker().start():
        return MessageResponse(message="Queue processing already running")
    return MessageResponse(message="Queue processing started")


@router.post("/admin/stop-processing", response_model=MessageResponse, dependencies=[Depends(require_role("admin"))])
async def stop_processing():
    if not await get_queue_worker().stop():
        return MessageResponse(message="Queue processing was not running")
    return MessageResponse(message="Queue processing stopped")
