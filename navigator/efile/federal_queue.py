"""Federal e-file queue (IRS MeF).

Rows live on FederalTaxReturn itself; a queue pass claims up to
FEDERAL_BATCH_SIZE due rows (highest priority first, then oldest), marks
them processing, and transmits them one by one. Failed transmissions are
retried on a fixed backoff schedule until the dead-letter threshold.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.clients.irs_mef import MefClient, MefTransportError, get_mef_client
from navigator.core.metrics import EFILE_QUEUE_DEPTH, EFILE_QUEUE_RUNS, EFILE_TRANSMISSIONS
from navigator.efile.documents import build_federal_document
from navigator.efile.types import (
    FEDERAL_ACK_BATCH_SIZE,
    FEDERAL_BATCH_SIZE,
    FEDERAL_DEAD_LETTER_THRESHOLD,
    FEDERAL_QUEUE_NAME,
    FEDERAL_RETRY_DELAYS_MINUTES,
    FEDERAL_SUBMIT_CHUNK_SIZE,
    PROCESSING_LEASE_MINUTES,
    AcknowledgmentRunResult,
    BatchSubmitResult,
    EFileStatus,
    ErrorType,
    GatewayError,
    LogAction,
    ProcessResult,
    QueueMetrics,
    QueueStatus,
    SubmissionPriority,
    SubmitResult,
    TransmissionResult,
    as_utc,
    utcnow,
)
from navigator.models.efile_log import EFileQueueMetadata, EFileSubmissionLog
from navigator.models.tax_return import FederalTaxReturn
from navigator.notifications.service import send_notification

logger = logging.getLogger(__name__)

MIN_TAX_YEAR = 2020
DEADLINE_WINDOW_DAYS = 7
OVERRIDE_STATUSES = {EFileStatus.TRANSMITTED.value, EFileStatus.ACCEPTED.value, EFileStatus.REJECTED.value}


def validate_federal_return(tax_return: FederalTaxReturn) -> list[str]:
    errors: list[str] = []
    if not tax_return.tax_year or tax_return.tax_year < MIN_TAX_YEAR:
        errors.append(f"Tax year must be {MIN_TAX_YEAR} or later")
    if not tax_return.filing_status:
        errors.append("Filing status is required")
    if not tax_return.form_1040_data:
        errors.append("Form 1040 data is required")
    return errors


def compute_priority(tax_return: FederalTaxReturn, requested: int | None = None, today: date | None = None) -> int:
    """Explicit priority wins; otherwise amended returns and returns close
    to the April 15 deadline move ahead of normal filings."""
    if requested is not None:
        return requested

    priority = SubmissionPriority.NORMAL.value
    if tax_return.is_amended_return:
        priority = SubmissionPriority.AMENDED.value

    today = today or utcnow().date()
    days_left = (date(tax_return.tax_year + 1, 4, 15) - today).days
    if 0 <= days_left <= DEADLINE_WINDOW_DAYS:
        priority = max(priority, SubmissionPriority.DEADLINE.value)
    return priority


def _clear_acknowledgment(tax_return: FederalTaxReturn) -> None:
    """Forget the previous transmission's IRS answer so the next one gets polled."""
    tax_return.acknowledgment_data = None
    tax_return.acknowledgment_received_at = None
    tax_return.accepted_at = None
    tax_return.dcn = None
    tax_return.rejected_at = None
    tax_return.rejection_code = None
    tax_return.rejection_reason = None
    tax_return.rejection_details = None


def retry_delay(attempts: int) -> timedelta:
    """Backoff after the `attempts`-th failed transmission (1-based)."""
    index = min(max(attempts - 1, 0), len(FEDERAL_RETRY_DELAYS_MINUTES) - 1)
    return timedelta(minutes=FEDERAL_RETRY_DELAYS_MINUTES[index])


class FederalEFileQueue:
    def __init__(self, db: AsyncSession, client: MefClient | None = None):
        self.db = db
        self.client = client or get_mef_client()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_to_queue(
        self,
        return_id: int,
        *,
        priority: int | None = None,
        batch_id: str | None = None,
    ) -> SubmitResult:
        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if not tax_return:
            return SubmitResult(success=False, message="Return not found")

        if tax_return.efile_status == EFileStatus.ACCEPTED.value:
            return SubmitResult(success=False, message="Return has already been accepted by the IRS")

        if tax_return.queue_status in (QueueStatus.QUEUED.value, QueueStatus.PROCESSING.value):
            position = await self.get_queue_position(tax_return)
            return SubmitResult(success=True, message="Return is already queued", queue_position=position)

        now = utcnow()
        errors = validate_federal_return(tax_return)
        tax_return.validated_at = now
        if errors:
            tax_return.validation_status = "invalid"
            tax_return.validation_errors = errors
            await self.db.flush()
            return SubmitResult(success=False, message="Validation failed: " + "; ".join(errors), errors=errors)
        tax_return.validation_status = "valid"
        tax_return.validation_errors = None

        if not tax_return.document_generated or not tax_return.document_content:
            self._generate_document(tax_return)

        tax_return.submission_priority = compute_priority(tax_return, priority)
        tax_return.efile_status = EFileStatus.READY.value
        tax_return.queue_status = QueueStatus.QUEUED.value
        tax_return.queued_at = now
        tax_return.next_retry_at = None
        tax_return.dead_lettered = False
        tax_return.dead_letter_reason = None
        tax_return.batch_id = batch_id
        _clear_acknowledgment(tax_return)
        await self.db.flush()

        position = await self.get_queue_position(tax_return)
        self._log(
            tax_return,
            LogAction.SUBMITTED,
            details={"priority": tax_return.submission_priority, "queue_position": position, "batch_id": batch_id},
        )
        await self.refresh_queue_metadata()

        logger.info(
            "Federal return %d queued at position %d (priority %d)", return_id, position, tax_return.submission_priority
        )
        return SubmitResult(success=True, message="Return queued for e-file", queue_position=position)

    async def submit_batch(self, return_ids: list[int], *, priority: int | None = None) -> BatchSubmitResult:
        batch_id = uuid.uuid4().hex
        result = BatchSubmitResult(success=True, batch_id=batch_id)

        for start in range(0, len(return_ids), FEDERAL_SUBMIT_CHUNK_SIZE):
            for return_id in return_ids[start : start + FEDERAL_SUBMIT_CHUNK_SIZE]:
                outcome = await self.submit_to_queue(return_id, priority=priority, batch_id=batch_id)
                if outcome.success:
                    result.submitted.append(return_id)
                else:
                    result.failed.append({"return_id": return_id, "error": outcome.message})

        result.success = not result.failed
        logger.info("Batch %s: %d queued, %d failed", batch_id, len(result.submitted), len(result.failed))
        return result

    async def retry_submission(self, return_id: int, priority: int | None = None) -> SubmitResult:
        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if not tax_return:
            return SubmitResult(success=False, message="Return not found")
        if tax_return.efile_status == EFileStatus.ACCEPTED.value:
            return SubmitResult(success=False, message="Accepted returns cannot be retried")

        previous_status = tax_return.queue_status
        tax_return.queue_status = QueueStatus.QUEUED.value
        tax_return.efile_status = EFileStatus.READY.value
        tax_return.submission_priority = priority or SubmissionPriority.URGENT.value
        tax_return.queued_at = tax_return.queued_at or utcnow()
        tax_return.next_retry_at = None
        tax_return.dead_lettered = False
        tax_return.dead_letter_reason = None
        _clear_acknowledgment(tax_return)
        await self.db.flush()

        self._log(
            tax_return,
            LogAction.MANUAL_RETRY,
            details={"previous_status": previous_status, "previous_attempts": tax_return.submission_attempts},
        )
        position = await self.get_queue_position(tax_return)
        return SubmitResult(success=True, message="Return requeued for submission", queue_position=position)

    async def update_status(
        self,
        return_id: int,
        status: str,
        *,
        dcn: str | None = None,
        transmission_id: str | None = None,
        rejection_reason: str | None = None,
    ) -> FederalTaxReturn | None:
        """Administrative override of the e-file status."""
        if status not in OVERRIDE_STATUSES:
            raise ValueError(f"Unsupported status override: {status}")

        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if not tax_return:
            return None

        now = utcnow()
        tax_return.efile_status = status
        if status == EFileStatus.TRANSMITTED.value:
            tax_return.queue_status = QueueStatus.COMPLETED.value
            tax_return.transmitted_at = tax_return.transmitted_at or now
            if transmission_id:
                tax_return.mef_transmission_id = transmission_id
        elif status == EFileStatus.ACCEPTED.value:
            tax_return.accepted_at = now
            tax_return.dcn = dcn or tax_return.dcn
        else:
            tax_return.rejected_at = now
            tax_return.rejection_reason = rejection_reason or tax_return.rejection_reason

        self._log(tax_return, LogAction.STATUS_OVERRIDE, details={"status": status, "dcn": dcn})
        await self.db.flush()
        return tax_return

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_queue(self) -> ProcessResult:
        """Run one queue pass. Commits after every return."""
        result = ProcessResult()

        if self.client.circuit_open:
            logger.warning("Federal queue pass skipped: MeF circuit breaker is open")
            result.skipped_reason = "circuit_breaker_open"
            EFILE_QUEUE_RUNS.labels(queue=FEDERAL_QUEUE_NAME, status="skipped").inc()
            return result

        now = utcnow()
        await self._reclaim_stale_claims(now)

        stmt = (
            select(FederalTaxReturn)
            .where(
                FederalTaxReturn.queue_status == QueueStatus.QUEUED.value,
                FederalTaxReturn.dead_lettered.is_(False),
                or_(FederalTaxReturn.next_retry_at.is_(None), FederalTaxReturn.next_retry_at <= now),
            )
            .order_by(FederalTaxReturn.submission_priority.desc(), FederalTaxReturn.queued_at.asc())
            .limit(FEDERAL_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        if not rows:
            EFILE_QUEUE_RUNS.labels(queue=FEDERAL_QUEUE_NAME, status="ok").inc()
            return result

        ids = [r.id for r in rows]
        for tax_return in rows:
            tax_return.queue_status = QueueStatus.PROCESSING.value
            tax_return.last_submission_at = now
        await self.db.commit()

        # Claimed rows not yet handled go back to queued however the loop ends,
        # including cancellation from QueueWorker.stop()
        unhandled = list(ids)
        try:
            for return_id in ids:
                result.processed += 1
                try:
                    outcome = await self._process_one(return_id)
                except Exception as e:
                    logger.exception("Unexpected error processing federal return %d", return_id)
                    await self.db.rollback()
                    await self._requeue_after_error(return_id, e)
                    unhandled.remove(return_id)
                    result.failed += 1
                    result.errors.append({"return_id": return_id, "error": str(e)})
                    continue

                if outcome == "circuit_open":
                    # Breaker tripped mid-pass; this row and the rest go back untouched
                    result.processed -= 1
                    break

                unhandled.remove(return_id)
                if outcome == "transmitted":
                    result.succeeded += 1
                elif outcome == "dead_lettered":
                    result.failed += 1
                    result.dead_lettered += 1
                else:
                    result.failed += 1
        finally:
            if unhandled:
                await self.db.rollback()
                await self._release(unhandled)
                logger.warning("Federal queue pass released %d unprocessed returns", len(unhandled))

        await self.refresh_queue_metadata()
        await self.db.commit()
        EFILE_QUEUE_RUNS.labels(queue=FEDERAL_QUEUE_NAME, status="ok").inc()
        logger.info(
            "Federal queue pass: processed=%d succeeded=%d failed=%d dead_lettered=%d",
            result.processed,
            result.succeeded,
            result.failed,
            result.dead_lettered,
        )
        return result

    async def _process_one(self, return_id: int) -> str:
        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if tax_return is None:
            return "missing"
        if not tax_return.document_content:
            self._generate_document(tax_return)

        try:
            transmission = await self.client.transmit_return(tax_return.id, tax_return.document_content)
        except MefTransportError as e:
            transmission = TransmissionResult(
                success=False,
                status_code="NETWORK_ERROR",
                message=str(e),
                errors=[GatewayError(code="NETWORK_ERROR", message=str(e))],
                error_type=ErrorType.NETWORK,
                is_mock=self.client.mock_mode,
            )

        if transmission.error_type == ErrorType.CIRCUIT_OPEN:
            return "circuit_open"

        if transmission.success:
            await self._mark_transmitted(tax_return, transmission)
            outcome = "transmitted"
        else:
            outcome = await self._handle_failure(tax_return, transmission)

        await self.db.commit()
        return outcome

    async def _mark_transmitted(self, tax_return: FederalTaxReturn, transmission: TransmissionResult) -> None:
        now = utcnow()
        tax_return.queue_status = QueueStatus.COMPLETED.value
        tax_return.efile_status = EFileStatus.TRANSMITTED.value
        tax_return.transmitted_at = now
        tax_return.mef_transmission_id = transmission.transmission_id
        tax_return.mef_submission_id = transmission.submission_id
        tax_return.submission_attempts = (tax_return.submission_attempts or 0) + 1
        tax_return.next_retry_at = None
        tax_return.last_error_type = None
        tax_return.last_error_message = None
        _clear_acknowledgment(tax_return)

        self._log(
            tax_return,
            LogAction.TRANSMITTED,
            transmission_id=transmission.transmission_id,
            submission_id=transmission.submission_id,
            response_code=transmission.status_code,
            is_mock=transmission.is_mock,
        )
        EFILE_TRANSMISSIONS.labels(queue=FEDERAL_QUEUE_NAME, outcome="success").inc()

        if tax_return.notify_on_status_change:
            await send_notification(
                self.db,
                tax_return.user_id,
                title="Tax return transmitted",
                message=f"Your {tax_return.tax_year} federal return was transmitted to the IRS.",
                type="success",
                metadata={"federal_return_id": tax_return.id, "submission_id": transmission.submission_id},
            )

    async def _handle_failure(self, tax_return: FederalTaxReturn, transmission: TransmissionResult) -> str:
        now = utcnow()
        attempts = (tax_return.submission_attempts or 0) + 1
        error_type = (transmission.error_type or ErrorType.UNKNOWN).value
        message = transmission.message or (transmission.errors[0].message if transmission.errors else "Transmission failed")

        tax_return.submission_attempts = attempts
        tax_return.last_error_type = error_type
        tax_return.last_error_message = message
        tax_return.last_error_at = now

        log_fields = {
            "response_code": transmission.status_code,
            "error_type": error_type,
            "error_message": message,
            "is_mock": transmission.is_mock,
            "details": {"attempts": attempts, "errors": [e.to_dict() for e in transmission.errors]},
        }

        if attempts >= FEDERAL_DEAD_LETTER_THRESHOLD:
            reason = f"Exceeded {FEDERAL_DEAD_LETTER_THRESHOLD} submission attempts. Last error: {message}"
            tax_return.queue_status = QueueStatus.FAILED.value
            tax_return.dead_lettered = True
            tax_return.dead_letter_reason = reason
            tax_return.efile_status = EFileStatus.REJECTED.value
            tax_return.next_retry_at = None
            self._log(tax_return, LogAction.DEAD_LETTERED, **log_fields)
            EFILE_TRANSMISSIONS.labels(queue=FEDERAL_QUEUE_NAME, outcome="dead_letter").inc()
            logger.error("Federal return %d dead-lettered after %d attempts: %s", tax_return.id, attempts, message)

            if tax_return.notify_on_status_change:
                await send_notification(
                    self.db,
                    tax_return.user_id,
                    title="E-file needs attention",
                    message="We could not transmit your federal return. A navigator will review it.",
                    type="error",
                    metadata={"federal_return_id": tax_return.id, "reason": reason},
                )
            return "dead_lettered"

        delay = retry_delay(attempts)
        tax_return.next_retry_at = now + delay
        tax_return.queue_status = QueueStatus.QUEUED.value
        tax_return.efile_status = EFileStatus.READY.value
        log_fields["details"]["retry_in_minutes"] = int(delay.total_seconds() // 60)
        self._log(tax_return, LogAction.RETRIED, **log_fields)
        EFILE_TRANSMISSIONS.labels(queue=FEDERAL_QUEUE_NAME, outcome="retry").inc()
        logger.warning(
            "Federal return %d failed (%s, attempt %d), retry in %s", tax_return.id, error_type, attempts, delay
        )
        return "retried"

    async def _requeue_after_error(self, return_id: int, error: Exception) -> None:
        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if tax_return is None:
            return
        tax_return.queue_status = QueueStatus.QUEUED.value
        tax_return.last_error_type = ErrorType.SYSTEM.value
        tax_return.last_error_message = str(error)
        tax_return.last_error_at = utcnow()
        await self.db.commit()

    async def _reclaim_stale_claims(self, now: datetime) -> int:
        """Requeue rows a dead pass left in processing past the lease."""
        cutoff = now - timedelta(minutes=PROCESSING_LEASE_MINUTES)
        stmt = (
            update(FederalTaxReturn)
            .where(
                FederalTaxReturn.queue_status == QueueStatus.PROCESSING.value,
                or_(FederalTaxReturn.last_submission_at.is_(None), FederalTaxReturn.last_submission_at < cutoff),
            )
            .values(queue_status=QueueStatus.QUEUED.value)
            .execution_options(synchronize_session="fetch")
        )
        reclaimed = (await self.db.execute(stmt)).rowcount or 0
        if reclaimed:
            await self.db.commit()
            logger.warning("Reclaimed %d federal returns stuck in processing", reclaimed)
        return reclaimed

    async def _release(self, return_ids: list[int]) -> None:
        for return_id in return_ids:
            tax_return = await self.db.get(FederalTaxReturn, return_id)
            if tax_return is not None and tax_return.queue_status == QueueStatus.PROCESSING.value:
                tax_return.queue_status = QueueStatus.QUEUED.value
        await self.db.commit()

    # ------------------------------------------------------------------
    # Acknowledgments
    # ------------------------------------------------------------------

    async def process_acknowledgments(self) -> AcknowledgmentRunResult:
        result = AcknowledgmentRunResult()
        stmt = (
            select(FederalTaxReturn)
            .where(
                FederalTaxReturn.efile_status == EFileStatus.TRANSMITTED.value,
                FederalTaxReturn.acknowledgment_received_at.is_(None),
                FederalTaxReturn.mef_transmission_id.is_not(None),
            )
            .order_by(FederalTaxReturn.transmitted_at.asc())
            .limit(FEDERAL_ACK_BATCH_SIZE)
        )
        rows = (await self.db.execute(stmt)).scalars().all()

        for tax_return in rows:
            result.checked += 1
            try:
                ack = await self.client.get_acknowledgment(tax_return.mef_transmission_id, tax_return.mef_submission_id)
            except MefTransportError as e:
                logger.warning("Acknowledgment poll failed for federal return %d: %s", tax_return.id, e)
                result.errors.append({"return_id": tax_return.id, "error": str(e)})
                continue

            now = utcnow()
            if ack.status == "accepted":
                tax_return.efile_status = EFileStatus.ACCEPTED.value
                tax_return.queue_status = QueueStatus.ACCEPTED.value
                tax_return.dcn = ack.dcn
                tax_return.accepted_at = ack.accepted_at or now
                tax_return.acknowledgment_data = ack.to_dict()
                tax_return.acknowledgment_received_at = now
                self._log(
                    tax_return, LogAction.ACCEPTED, response_code="ACCEPTED", is_mock=ack.is_mock, details={"dcn": ack.dcn}
                )
                result.accepted += 1
                if tax_return.notify_on_status_change:
                    await send_notification(
                        self.db,
                        tax_return.user_id,
                        title="Federal return accepted",
                        message=f"The IRS accepted your {tax_return.tax_year} return. DCN: {ack.dcn}",
                        type="success",
                        metadata={"federal_return_id": tax_return.id, "dcn": ack.dcn},
                    )
            elif ack.status == "rejected":
                tax_return.efile_status = EFileStatus.REJECTED.value
                tax_return.queue_status = QueueStatus.REJECTED.value
                tax_return.rejected_at = now
                tax_return.rejection_code = ack.rejection_code
                tax_return.rejection_reason = ack.rejection_reason
                tax_return.rejection_details = [e.to_dict() for e in ack.errors]
                tax_return.acknowledgment_data = ack.to_dict()
                tax_return.acknowledgment_received_at = now
                self._log(
                    tax_return,
                    LogAction.REJECTED,
                    response_code=ack.rejection_code,
                    error_type=ErrorType.BUSINESS_RULE.value,
                    error_message=ack.rejection_reason,
                    is_mock=ack.is_mock,
                )
                result.rejected += 1
                if tax_return.notify_on_status_change:
                    await send_notification(
                        self.db,
                        tax_return.user_id,
                        title="Federal return rejected",
                        message=f"The IRS rejected your return ({ack.rejection_code}): {ack.rejection_reason}",
                        type="error",
                        metadata={"federal_return_id": tax_return.id, "rejection_code": ack.rejection_code},
                    )
            else:
                self._log(tax_return, LogAction.ACK_PENDING, is_mock=ack.is_mock, details={"status": ack.status})
                result.pending += 1

            await self.db.commit()

        logger.info(
            "Acknowledgment pass: checked=%d accepted=%d rejected=%d pending=%d",
            result.checked,
            result.accepted,
            result.rejected,
            result.pending,
        )
        return result

    # ------------------------------------------------------------------
    # Status & metrics
    # ------------------------------------------------------------------

    async def get_queue_position(self, tax_return: FederalTaxReturn) -> int:
        """1-based position among queued rows (priority desc, then queued_at)."""
        stmt = select(func.count(FederalTaxReturn.id)).where(
            FederalTaxReturn.queue_status == QueueStatus.QUEUED.value,
            FederalTaxReturn.dead_lettered.is_(False),
            FederalTaxReturn.id != tax_return.id,
            or_(
                FederalTaxReturn.submission_priority > tax_return.submission_priority,
                and_(
                    FederalTaxReturn.submission_priority == tax_return.submission_priority,
                    FederalTaxReturn.queued_at < tax_return.queued_at,
                ),
            ),
        )
        ahead = (await self.db.execute(stmt)).scalar() or 0
        return ahead + 1

    async def get_queue_metrics(self) -> QueueMetrics:
        counts_stmt = select(FederalTaxReturn.queue_status, func.count(FederalTaxReturn.id)).group_by(
            FederalTaxReturn.queue_status
        )
        counts = {status: n for status, n in (await self.db.execute(counts_stmt)).all()}
        dead = (
            await self.db.execute(select(func.count(FederalTaxReturn.id)).where(FederalTaxReturn.dead_lettered.is_(True)))
        ).scalar() or 0

        metrics = QueueMetrics(
            queue_name=FEDERAL_QUEUE_NAME,
            pending=counts.get(QueueStatus.QUEUED.value, 0),
            processing=counts.get(QueueStatus.PROCESSING.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
            completed=counts.get(QueueStatus.COMPLETED.value, 0),
            dead_lettered=dead,
        )
        total = metrics.pending + metrics.processing + metrics.failed + metrics.completed
        metrics.success_rate = round(metrics.completed / total, 4) if total else 0.0

        timing_stmt = (
            select(FederalTaxReturn.queued_at, FederalTaxReturn.transmitted_at)
            .where(FederalTaxReturn.transmitted_at.is_not(None), FederalTaxReturn.queued_at.is_not(None))
            .order_by(FederalTaxReturn.transmitted_at.desc())
            .limit(100)
        )
        durations = [
            (as_utc(transmitted) - as_utc(queued)).total_seconds()
            for queued, transmitted in (await self.db.execute(timing_stmt)).all()
        ]
        if durations:
            metrics.avg_processing_seconds = round(sum(durations) / len(durations), 1)
        return metrics

    async def refresh_queue_metadata(self) -> QueueMetrics:
        metrics = await self.get_queue_metrics()
        await upsert_queue_metadata(self.db, metrics)
        return metrics

    async def get_queue_status(self, worker_running: bool = False) -> dict[str, Any]:
        metrics = await self.get_queue_metrics()
        return {
            "queue_name": metrics.queue_name,
            "pending": metrics.pending,
            "processing": metrics.processing,
            "failed": metrics.failed,
            "completed": metrics.completed,
            "dead_lettered": metrics.dead_lettered,
            "success_rate": metrics.success_rate,
            "avg_processing_seconds": metrics.avg_processing_seconds,
            "circuit_breaker": self.client.get_circuit_breaker_status(),
            "is_processing": worker_running,
            "mock_mode": self.client.mock_mode,
        }

    async def get_submission_status(self, return_id: int) -> dict[str, Any] | None:
        tax_return = await self.db.get(FederalTaxReturn, return_id)
        if not tax_return:
            return None

        logs_stmt = (
            select(EFileSubmissionLog)
            .where(EFileSubmissionLog.return_type == "federal", EFileSubmissionLog.federal_return_id == return_id)
            .order_by(EFileSubmissionLog.created_at.desc(), EFileSubmissionLog.id.desc())
            .limit(10)
        )
        history = (await self.db.execute(logs_stmt)).scalars().all()
        position = None
        if tax_return.queue_status == QueueStatus.QUEUED.value and not tax_return.dead_lettered:
            position = await self.get_queue_position(tax_return)

        return {
            "return_id": tax_return.id,
            "efile_status": tax_return.efile_status,
            "queue_status": tax_return.queue_status,
            "queue_position": position,
            "submission_priority": tax_return.submission_priority,
            "submission_attempts": tax_return.submission_attempts,
            "last_submission_at": tax_return.last_submission_at,
            "next_retry_at": tax_return.next_retry_at,
            "transmission_id": tax_return.mef_transmission_id,
            "submission_id": tax_return.mef_submission_id,
            "dcn": tax_return.dcn,
            "acknowledgment_data": tax_return.acknowledgment_data,
            "rejection_code": tax_return.rejection_code,
            "rejection_reason": tax_return.rejection_reason,
            "dead_lettered": tax_return.dead_lettered,
            "dead_letter_reason": tax_return.dead_letter_reason,
            "last_error_type": tax_return.last_error_type,
            "last_error_message": tax_return.last_error_message,
            "history": history,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_document(tax_return: FederalTaxReturn) -> None:
        content, digest = build_federal_document(tax_return)
        tax_return.document_content = content
        tax_return.document_hash = digest
        tax_return.document_generated = True
        tax_return.document_generated_at = utcnow()

    def _log(self, tax_return: FederalTaxReturn, action: LogAction, **fields: Any) -> None:
        fields.setdefault("is_mock", self.client.mock_mode)
        self.db.add(
            EFileSubmissionLog(
                return_type="federal",
                federal_return_id=tax_return.id,
                action=action.value,
                circuit_breaker_status=self.client.get_circuit_breaker_status()["state"],
                **fields,
            )
        )


async def upsert_queue_metadata(db: AsyncSession, metrics: QueueMetrics) -> EFileQueueMetadata:
    """Store the latest health snapshot for a queue."""
    row = (
        await db.execute(select(EFileQueueMetadata).where(EFileQueueMetadata.queue_name == metrics.queue_name))
    ).scalar_one_or_none()
    if row is None:
        row = EFileQueueMetadata(queue_name=metrics.queue_name)
        db.add(row)

    row.active_count = metrics.processing
    row.pending_count = metrics.pending
    row.failed_count = metrics.failed
    row.dead_lettered_count = metrics.dead_lettered
    row.success_rate = metrics.success_rate
    row.avg_processing_seconds = metrics.avg_processing_seconds
    row.last_health_check = utcnow()
    await db.flush()

    EFILE_QUEUE_DEPTH.labels(queue=metrics.queue_name).set(metrics.pending)
    return row
