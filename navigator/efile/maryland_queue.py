"""Maryland e-file queue (Comptroller iFile).

A Form 502 normally depends on the federal return: until the IRS accepts
it, the Maryland return is parked as pending_federal and promoted by
later queue passes. Between January 15 and April 15 the queue runs in
peak-season mode: faster polling, slightly lower priority for new
submissions and doubled retry delays.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.clients.maryland_ifile import MarylandIFileClient, get_ifile_client
from navigator.core.config import settings
from navigator.core.metrics import EFILE_QUEUE_RUNS, EFILE_TRANSMISSIONS
from navigator.efile.documents import build_maryland_payload
from navigator.efile.federal_queue import upsert_queue_metadata
from navigator.efile.types import (
    MARYLAND_BATCH_SIZE,
    MARYLAND_MAX_RETRIES,
    MARYLAND_PROMOTE_BATCH_SIZE,
    MARYLAND_QUEUE_NAME,
    MARYLAND_RETRIABLE_CODES,
    MARYLAND_RETRY_DELAYS_MINUTES,
    PROCESSING_LEASE_MINUTES,
    EFileStatus,
    IFileSubmissionResult,
    LogAction,
    MarylandProcessResult,
    QueueMetrics,
    QueueStatus,
    SubmitResult,
    as_utc,
    utcnow,
)
from navigator.models.efile_log import EFileSubmissionLog
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn
from navigator.notifications.service import send_notification

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 3
PENDING_FEDERAL_PRIORITY = 2
POVERTY_CREDIT_WARNING = 300
PROPERTY_CREDIT_WARNING = 1500


def is_peak_season(today: date | None = None) -> bool:
    """January 15 through April 15, inclusive."""
    today = today or utcnow().date()
    return date(today.year, 1, 15) <= today <= date(today.year, 4, 15)


def poll_interval_seconds(today: date | None = None) -> float:
    if is_peak_season(today):
        return settings.maryland_peak_poll_interval_seconds
    return settings.maryland_poll_interval_seconds


def retry_delay(previous_attempts: int, peak: bool = False) -> timedelta:
    index = min(previous_attempts, len(MARYLAND_RETRY_DELAYS_MINUTES) - 1)
    minutes = MARYLAND_RETRY_DELAYS_MINUTES[index]
    return timedelta(minutes=minutes * 2 if peak else minutes)


def is_retriable(result: IFileSubmissionResult) -> bool:
    return any(code in MARYLAND_RETRIABLE_CODES for code in result.error_codes)


def _reset_previous_outcome(tax_return: MarylandTaxReturn) -> None:
    """A resubmitted return starts with a fresh retry budget."""
    tax_return.attempts = 0
    tax_return.next_retry_at = None
    tax_return.last_error = None
    tax_return.submission_status = None
    tax_return.failed_at = None
    tax_return.failure_reason = None
    tax_return.rejected_at = None
    tax_return.rejection_reasons = None


class MarylandEFileQueue:
    def __init__(self, db: AsyncSession, client: MarylandIFileClient | None = None, today: date | None = None):
        self.db = db
        self.client = client or get_ifile_client()
        self._today = today

    @property
    def peak_season(self) -> bool:
        return is_peak_season(self._today)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_to_queue(
        self,
        return_id: int,
        *,
        priority: int | None = None,
        requires_federal_acceptance: bool = True,
        validate_county_tax: bool = True,
    ) -> SubmitResult:
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if not tax_return:
            return SubmitResult(success=False, message="Maryland tax return not found")

        if tax_return.queue_status == QueueStatus.ACCEPTED.value:
            return SubmitResult(success=False, message="Return has already been accepted by Maryland")

        resubmission = tax_return.queue_status in (QueueStatus.FAILED.value, QueueStatus.REJECTED.value)

        now = utcnow()
        if requires_federal_acceptance and not await self._federal_accepted(tax_return.federal_return_id):
            if resubmission:
                _reset_previous_outcome(tax_return)
            tax_return.queue_status = QueueStatus.PENDING_FEDERAL.value
            tax_return.queued_at = now
            tax_return.priority = priority or PENDING_FEDERAL_PRIORITY
            self._log(tax_return, LogAction.PENDING_FEDERAL, details={"federal_return_id": tax_return.federal_return_id})
            await self.db.flush()
            return SubmitResult(
                success=True,
                message="Maryland return queued pending federal acceptance",
                requires_federal_first=True,
            )

        if validate_county_tax:
            check = self.client.validate_county_tax(
                tax_return.county, float(tax_return.maryland_taxable_income or 0), float(tax_return.county_tax or 0)
            )
            if not check.valid:
                tax_return.validation_status = "invalid"
                tax_return.validation_errors = [check.message]
                tax_return.validated_at = now
                await self.db.flush()
                return SubmitResult(
                    success=False,
                    message=f"County tax validation failed: {check.message}",
                    errors=[check.message],
                )

        effective = priority or DEFAULT_PRIORITY
        if self.peak_season:
            effective = max(1, effective - 1)

        if resubmission:
            _reset_previous_outcome(tax_return)
        tax_return.queue_status = QueueStatus.QUEUED.value
        tax_return.priority = effective
        tax_return.queued_at = now
        tax_return.next_retry_at = None
        tax_return.validation_status = "valid"
        tax_return.validated_at = now
        tax_return.efile_status = EFileStatus.READY.value
        await self.db.flush()

        position = await self.get_queue_position(tax_return)
        self._log(
            tax_return,
            LogAction.QUEUED,
            details={"priority": effective, "queue_position": position, "peak_season": self.peak_season},
        )
        await self.refresh_queue_metadata()

        logger.info("Maryland return %d queued at position %d (priority %d)", return_id, position, effective)
        return SubmitResult(success=True, message="Maryland return queued for iFile", queue_position=position)

    async def _federal_accepted(self, federal_return_id: int | None) -> bool:
        if federal_return_id is None:
            return False
        federal = await self.db.get(FederalTaxReturn, federal_return_id)
        return federal is not None and federal.efile_status == EFileStatus.ACCEPTED.value

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_queue(self) -> MarylandProcessResult:
        """Run one queue pass, then promote returns whose federal filing cleared."""
        result = MarylandProcessResult()
        now = utcnow()
        await self._reclaim_stale_claims(now)

        stmt = (
            select(MarylandTaxReturn)
            .where(
                or_(
                    MarylandTaxReturn.queue_status == QueueStatus.QUEUED.value,
                    and_(
                        MarylandTaxReturn.queue_status == QueueStatus.RETRY.value,
                        MarylandTaxReturn.next_retry_at <= now,
                    ),
                )
            )
            .order_by(MarylandTaxReturn.priority.desc(), MarylandTaxReturn.queued_at.asc())
            .limit(MARYLAND_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        ids = [r.id for r in rows]
        for tax_return in rows:
            tax_return.queue_status = QueueStatus.PROCESSING.value
            tax_return.last_processed_at = now
        await self.db.commit()

        unhandled = list(ids)
        try:
            for return_id in ids:
                result.processed += 1
                try:
                    outcome = await self._process_one(return_id)
                except Exception as e:
                    logger.exception("Unexpected error processing Maryland return %d", return_id)
                    await self.db.rollback()
                    await self._mark_failed(return_id, str(e))
                    unhandled.remove(return_id)
                    result.failed += 1
                    result.errors.append({"return_id": return_id, "error": str(e)})
                    continue

                unhandled.remove(return_id)
                if outcome == "accepted":
                    result.succeeded += 1
                elif outcome == "retry":
                    result.retried += 1
                else:
                    result.failed += 1
        finally:
            # Interrupted pass (worker stop, task time limit): hand claimed rows back
            if unhandled:
                await self.db.rollback()
                await self._release(unhandled)
                logger.warning("Maryland queue pass released %d unprocessed returns", len(unhandled))

        result.promoted = await self.promote_pending_federal()
        await self.refresh_queue_metadata()
        await self.db.commit()

        EFILE_QUEUE_RUNS.labels(queue=MARYLAND_QUEUE_NAME, status="ok").inc()
        logger.info(
            "Maryland queue pass: processed=%d succeeded=%d failed=%d retried=%d promoted=%d",
            result.processed,
            result.succeeded,
            result.failed,
            result.retried,
            result.promoted,
        )
        return result

    async def _process_one(self, return_id: int) -> str:
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if tax_return is None:
            return "missing"

        submission = await self.client.submit_form502(build_maryland_payload(tax_return))
        now = utcnow()
        errors = [e.to_dict() for e in submission.errors]

        if submission.status == "accepted":
            tax_return.queue_status = QueueStatus.ACCEPTED.value
            tax_return.efile_status = EFileStatus.ACCEPTED.value
            tax_return.submission_status = "accepted"
            tax_return.confirmation_number = submission.confirmation_number
            tax_return.ifile_submission_id = submission.submission_id
            tax_return.submitted_at = now
            tax_return.accepted_at = now
            tax_return.last_error = None
            self._log(
                tax_return,
                LogAction.ACCEPTED,
                submission_id=submission.submission_id,
                response_code="ACCEPTED",
                details={"confirmation_number": submission.confirmation_number},
            )
            EFILE_TRANSMISSIONS.labels(queue=MARYLAND_QUEUE_NAME, outcome="success").inc()
            await self._notify(
                tax_return,
                "Maryland return accepted",
                f"Maryland accepted your {tax_return.tax_year} return. Confirmation: {submission.confirmation_number}",
                "success",
            )
            outcome = "accepted"

        elif is_retriable(submission):
            previous = tax_return.attempts or 0
            tax_return.last_error = "; ".join(f"{e.code}: {e.message}" for e in submission.errors)
            if previous < MARYLAND_MAX_RETRIES:
                delay = retry_delay(previous, self.peak_season)
                tax_return.queue_status = QueueStatus.RETRY.value
                tax_return.attempts = previous + 1
                tax_return.next_retry_at = now + delay
                self._log(
                    tax_return,
                    LogAction.RETRIED,
                    response_code=submission.error_codes[0],
                    error_type="system",
                    error_message=tax_return.last_error,
                    details={"attempts": previous + 1, "retry_in_minutes": int(delay.total_seconds() // 60)},
                )
                EFILE_TRANSMISSIONS.labels(queue=MARYLAND_QUEUE_NAME, outcome="retry").inc()
                outcome = "retry"
            else:
                tax_return.queue_status = QueueStatus.FAILED.value
                tax_return.efile_status = EFileStatus.FAILED.value
                tax_return.submission_status = "failed"
                tax_return.failed_at = now
                tax_return.failure_reason = "Max retries exceeded"
                self._log(
                    tax_return,
                    LogAction.FAILED,
                    response_code=submission.error_codes[0],
                    error_type="system",
                    error_message="Max retries exceeded",
                    details={"errors": errors},
                )
                EFILE_TRANSMISSIONS.labels(queue=MARYLAND_QUEUE_NAME, outcome="failed").inc()
                outcome = "failed"

        else:
            tax_return.queue_status = QueueStatus.REJECTED.value
            tax_return.efile_status = EFileStatus.REJECTED.value
            tax_return.submission_status = "rejected"
            tax_return.rejected_at = now
            tax_return.rejection_reasons = errors
            tax_return.last_error = "; ".join(f"{e.code}: {e.message}" for e in submission.errors)
            self._log(
                tax_return,
                LogAction.REJECTED,
                response_code=submission.error_codes[0] if submission.errors else None,
                error_type="business_rule",
                error_message=tax_return.last_error,
                details={"errors": errors},
            )
            EFILE_TRANSMISSIONS.labels(queue=MARYLAND_QUEUE_NAME, outcome="rejected").inc()
            await self._notify(
                tax_return,
                "Maryland return rejected",
                f"Maryland rejected your {tax_return.tax_year} return: {tax_return.last_error}",
                "error",
            )
            outcome = "rejected"

        await self.db.commit()
        return outcome

    async def _reclaim_stale_claims(self, now: datetime) -> int:
        cutoff = now - timedelta(minutes=PROCESSING_LEASE_MINUTES)
        stmt = (
            update(MarylandTaxReturn)
            .where(
                MarylandTaxReturn.queue_status == QueueStatus.PROCESSING.value,
                or_(MarylandTaxReturn.last_processed_at.is_(None), MarylandTaxReturn.last_processed_at < cutoff),
            )
            .values(queue_status=QueueStatus.QUEUED.value)
            .execution_options(synchronize_session="fetch")
        )
        reclaimed = (await self.db.execute(stmt)).rowcount or 0
        if reclaimed:
            await self.db.commit()
            logger.warning("Reclaimed %d Maryland returns stuck in processing", reclaimed)
        return reclaimed

    async def _release(self, return_ids: list[int]) -> None:
        for return_id in return_ids:
            tax_return = await self.db.get(MarylandTaxReturn, return_id)
            if tax_return is not None and tax_return.queue_status == QueueStatus.PROCESSING.value:
                tax_return.queue_status = QueueStatus.QUEUED.value
        await self.db.commit()

    async def _mark_failed(self, return_id: int, message: str) -> None:
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if tax_return is None:
            return
        tax_return.queue_status = QueueStatus.FAILED.value
        tax_return.last_error = message
        tax_return.failed_at = utcnow()
        await self.db.commit()

    async def promote_pending_federal(self) -> int:
        """Move parked returns whose federal return is now accepted back to queued."""
        stmt = (
            select(MarylandTaxReturn)
            .join(FederalTaxReturn, FederalTaxReturn.id == MarylandTaxReturn.federal_return_id)
            .where(
                MarylandTaxReturn.queue_status == QueueStatus.PENDING_FEDERAL.value,
                FederalTaxReturn.efile_status == EFileStatus.ACCEPTED.value,
            )
            .order_by(MarylandTaxReturn.queued_at.asc())
            .limit(MARYLAND_PROMOTE_BATCH_SIZE)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        now = utcnow()
        for tax_return in rows:
            tax_return.queue_status = QueueStatus.QUEUED.value
            tax_return.queued_at = now
            tax_return.efile_status = EFileStatus.READY.value
            self._log(tax_return, LogAction.QUEUED, details={"promoted_from": QueueStatus.PENDING_FEDERAL.value})
        if rows:
            logger.info("Promoted %d Maryland returns after federal acceptance", len(rows))
        await self.db.flush()
        return len(rows)

    # ------------------------------------------------------------------
    # Validation & acknowledgments
    # ------------------------------------------------------------------

    async def validate_return(
        self,
        return_id: int,
        *,
        county_tax: bool = True,
        credits: bool = True,
        residency: bool = True,
    ) -> dict[str, Any] | None:
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if not tax_return:
            return None

        errors: list[str] = []
        warnings: list[str] = []
        county_check = None

        if county_tax:
            county_check = self.client.validate_county_tax(
                tax_return.county, float(tax_return.maryland_taxable_income or 0), float(tax_return.county_tax or 0)
            )
            if not county_check.valid:
                errors.append(county_check.message)

        if credits:
            if (tax_return.poverty_level_credit or 0) > POVERTY_CREDIT_WARNING:
                warnings.append(f"Poverty level credit exceeds typical maximum of ${POVERTY_CREDIT_WARNING}")
            if (tax_return.property_tax_credit or 0) > PROPERTY_CREDIT_WARNING:
                warnings.append(f"Property tax credit exceeds typical maximum of ${PROPERTY_CREDIT_WARNING}")
            if (tax_return.maryland_eitc or 0) < 0:
                errors.append("Maryland EITC cannot be negative")

        if residency and not tax_return.maryland_resident:
            warnings.append("Non-resident filers may need Form 505 instead of Form 502")

        now = utcnow()
        tax_return.validation_status = "invalid" if errors else "valid"
        tax_return.validation_errors = errors or None
        tax_return.validation_warnings = warnings or None
        tax_return.validated_at = now
        await self.db.flush()

        return {
            "return_id": tax_return.id,
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "county_validation": {
                "county_code": county_check.county_code,
                "expected_tax": county_check.expected_tax,
                "calculated_tax": county_check.calculated_tax,
                "difference": county_check.difference,
            }
            if county_check
            else None,
            "validated_at": now,
        }

    async def record_acknowledgment(
        self,
        return_id: int,
        status: str,
        *,
        confirmation_number: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> MarylandTaxReturn | None:
        """Apply an iFile acknowledgment (used for mock acknowledgments outside production)."""
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if not tax_return:
            return None

        now = utcnow()
        tax_return.acknowledgment_data = {
            "status": status,
            "confirmation_number": confirmation_number,
            "errors": errors or [],
            "received_at": now.isoformat(),
        }
        if status == "accepted":
            tax_return.queue_status = QueueStatus.ACCEPTED.value
            tax_return.efile_status = EFileStatus.ACCEPTED.value
            tax_return.submission_status = "accepted"
            tax_return.accepted_at = now
            tax_return.confirmation_number = confirmation_number or tax_return.confirmation_number
            self._log(tax_return, LogAction.ACCEPTED, details=tax_return.acknowledgment_data)
        else:
            tax_return.queue_status = QueueStatus.REJECTED.value
            tax_return.efile_status = EFileStatus.REJECTED.value
            tax_return.submission_status = "rejected"
            tax_return.rejected_at = now
            tax_return.rejection_reasons = errors or []
            self._log(tax_return, LogAction.REJECTED, details=tax_return.acknowledgment_data)
        await self.db.flush()
        return tax_return

    # ------------------------------------------------------------------
    # Status & metrics
    # ------------------------------------------------------------------

    async def get_queue_position(self, tax_return: MarylandTaxReturn) -> int:
        stmt = select(func.count(MarylandTaxReturn.id)).where(
            MarylandTaxReturn.queue_status == QueueStatus.QUEUED.value,
            MarylandTaxReturn.id != tax_return.id,
            or_(
                MarylandTaxReturn.priority > tax_return.priority,
                and_(
                    MarylandTaxReturn.priority == tax_return.priority,
                    MarylandTaxReturn.queued_at < tax_return.queued_at,
                ),
            ),
        )
        ahead = (await self.db.execute(stmt)).scalar() or 0
        return ahead + 1

    async def get_queue_stats(self) -> dict[str, Any]:
        status_col = MarylandTaxReturn.queue_status
        counts_stmt = select(
            *[
                func.count(case((status_col == status.value, 1))).label(status.value)
                for status in (
                    QueueStatus.QUEUED,
                    QueueStatus.PROCESSING,
                    QueueStatus.PENDING_FEDERAL,
                    QueueStatus.RETRY,
                    QueueStatus.FAILED,
                    QueueStatus.ACCEPTED,
                    QueueStatus.REJECTED,
                )
            ]
        ).where(status_col.is_not(None))
        row = (await self.db.execute(counts_stmt)).one()

        timing_stmt = (
            select(MarylandTaxReturn.queued_at, MarylandTaxReturn.submitted_at)
            .where(MarylandTaxReturn.submitted_at.is_not(None), MarylandTaxReturn.queued_at.is_not(None))
            .order_by(MarylandTaxReturn.submitted_at.desc())
            .limit(100)
        )
        waits = [
            (as_utc(submitted) - as_utc(queued)).total_seconds()
            for queued, submitted in (await self.db.execute(timing_stmt)).all()
        ]

        stats = dict(row._mapping)
        stats["avg_wait_seconds"] = round(sum(waits) / len(waits), 1) if waits else 0.0
        stats["peak_season"] = self.peak_season
        stats["poll_interval_seconds"] = poll_interval_seconds(self._today)
        return stats

    async def refresh_queue_metadata(self) -> QueueMetrics:
        stats = await self.get_queue_stats()
        attempted = stats["accepted"] + stats["rejected"] + stats["failed"]
        metrics = QueueMetrics(
            queue_name=MARYLAND_QUEUE_NAME,
            pending=stats["queued"] + stats["retry"],
            processing=stats["processing"],
            failed=stats["failed"],
            completed=stats["accepted"],
            success_rate=round(stats["accepted"] / attempted, 4) if attempted else 0.0,
            avg_processing_seconds=stats["avg_wait_seconds"],
        )
        await upsert_queue_metadata(self.db, metrics)
        return metrics

    async def get_submission_status(self, return_id: int) -> dict[str, Any] | None:
        tax_return = await self.db.get(MarylandTaxReturn, return_id)
        if not tax_return:
            return None
        position = None
        if tax_return.queue_status == QueueStatus.QUEUED.value:
            position = await self.get_queue_position(tax_return)
        return {
            "return_id": tax_return.id,
            "federal_return_id": tax_return.federal_return_id,
            "queue_status": tax_return.queue_status,
            "efile_status": tax_return.efile_status,
            "queue_position": position,
            "priority": tax_return.priority,
            "attempts": tax_return.attempts,
            "next_retry_at": tax_return.next_retry_at,
            "confirmation_number": tax_return.confirmation_number,
            "submission_id": tax_return.ifile_submission_id,
            "validation_status": tax_return.validation_status,
            "validation_errors": tax_return.validation_errors,
            "rejection_reasons": tax_return.rejection_reasons,
            "failure_reason": tax_return.failure_reason,
            "last_error": tax_return.last_error,
            "submitted_at": tax_return.submitted_at,
            "accepted_at": tax_return.accepted_at,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(self, tax_return: MarylandTaxReturn, action: LogAction, **fields: Any) -> None:
        fields.setdefault("is_mock", self.client.environment == "mock")
        self.db.add(
            EFileSubmissionLog(
                return_type="maryland",
                maryland_return_id=tax_return.id,
                federal_return_id=tax_return.federal_return_id,
                action=action.value,
                **fields,
            )
        )

    async def _notify(self, tax_return: MarylandTaxReturn, title: str, message: str, type: str) -> None:
        await send_notification(
            self.db,
            tax_return.user_id,
            title=title,
            message=message,
            type=type,
            metadata={"maryland_return_id": tax_return.id},
        )
