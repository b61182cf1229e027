"""Tests for the Maryland e-file queue: federal dependency, county tax checks,
peak season, retries, validation and acknowledgments."""

import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from navigator.efile.maryland_queue import MarylandEFileQueue, is_peak_season, poll_interval_seconds, retry_delay
from navigator.efile.types import as_utc, utcnow
from navigator.models.efile_log import EFileSubmissionLog
from navigator.models.notification import Notification

OFF_SEASON = date(2025, 6, 1)
PEAK_SEASON = date(2025, 2, 1)


async def _logs(db, return_id: int) -> list[str]:
    result = await db.execute(
        select(EFileSubmissionLog.action)
        .where(EFileSubmissionLog.maryland_return_id == return_id)
        .order_by(EFileSubmissionLog.id)
    )
    return list(result.scalars().all())


# ============================================================================
# Season & backoff
# ============================================================================


class TestSeason:
    def test_peak_season_bounds(self):
        assert is_peak_season(date(2025, 1, 14)) is False
        assert is_peak_season(date(2025, 1, 15)) is True
        assert is_peak_season(date(2025, 4, 15)) is True
        assert is_peak_season(date(2025, 4, 16)) is False

    def test_poll_interval(self):
        assert poll_interval_seconds(PEAK_SEASON) == 15.0
        assert poll_interval_seconds(OFF_SEASON) == 30.0

    def test_retry_delays(self):
        assert retry_delay(0) == timedelta(minutes=2)
        assert retry_delay(1) == timedelta(minutes=10)
        assert retry_delay(4) == timedelta(minutes=720)
        assert retry_delay(9) == timedelta(minutes=720)
        assert retry_delay(0, peak=True) == timedelta(minutes=4)


# ============================================================================
# Submission
# ============================================================================


class TestSubmit:
    @pytest.mark.asyncio
    async def test_parks_until_federal_accepted(self, db, make_maryland_return, make_federal_return, ifile_client):
        federal = await make_federal_return(efile_status="transmitted")
        tax_return = await make_maryland_return(federal_return_id=federal.id)
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id)

        assert result.success is True
        assert result.requires_federal_first is True
        assert tax_return.queue_status == "pending_federal"
        assert tax_return.priority == 2
        assert await _logs(db, tax_return.id) == ["pending_federal"]

    @pytest.mark.asyncio
    async def test_queues_after_federal_acceptance(self, db, make_maryland_return, make_federal_return, ifile_client):
        federal = await make_federal_return(efile_status="accepted")
        tax_return = await make_maryland_return(federal_return_id=federal.id)
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id)

        assert result.success is True
        assert result.requires_federal_first is False
        assert result.queue_position == 1
        assert tax_return.queue_status == "queued"
        assert tax_return.efile_status == "ready"
        assert tax_return.priority == 3
        assert tax_return.validation_status == "valid"

    @pytest.mark.asyncio
    async def test_peak_season_lowers_priority(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return()
        low = await make_maryland_return()
        queue = MarylandEFileQueue(db, ifile_client(), today=PEAK_SEASON)

        await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False)
        await queue.submit_to_queue(low.id, priority=1, requires_federal_acceptance=False)

        assert tax_return.priority == 2
        assert low.priority == 1

    @pytest.mark.asyncio
    async def test_county_tax_mismatch(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(county_tax=1000)
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False)

        assert result.success is False
        assert result.message.startswith("County tax validation failed")
        assert tax_return.validation_status == "invalid"
        assert tax_return.queue_status is None

    @pytest.mark.asyncio
    async def test_county_tax_check_can_be_skipped(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(county_tax=1000)
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False, validate_county_tax=False)

        assert result.success is True
        assert tax_return.queue_status == "queued"

    @pytest.mark.asyncio
    async def test_missing_and_accepted_returns(self, db, make_maryland_return, ifile_client):
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)
        missing = await queue.submit_to_queue(9999)
        assert missing.message == "Maryland tax return not found"

        accepted = await make_maryland_return(queue_status="accepted")
        result = await queue.submit_to_queue(accepted.id)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_resubmitting_failed_return_starts_fresh(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(
            queue_status="failed",
            efile_status="failed",
            attempts=5,
            last_error="SYS001",
            failed_at=utcnow(),
            failure_reason="Max retries exceeded",
            rejected_at=utcnow(),
            rejection_reasons=[{"code": "CTY002", "message": "County code mismatch"}],
        )
        queue = MarylandEFileQueue(db, ifile_client(0.95), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False)

        assert result.success is True
        assert tax_return.queue_status == "queued"
        assert tax_return.attempts == 0
        assert tax_return.last_error is None
        assert tax_return.failed_at is None
        assert tax_return.failure_reason is None
        assert tax_return.rejected_at is None
        assert tax_return.rejection_reasons is None

        # A retriable error now earns a retry instead of an immediate failure
        await db.commit()
        processed = await queue.process_queue()
        await db.refresh(tax_return)

        assert processed.retried == 1
        assert tax_return.queue_status == "retry"
        assert tax_return.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_county_check_keeps_previous_outcome(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(
            queue_status="failed", attempts=5, failure_reason="Max retries exceeded", county_tax=1000
        )
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        result = await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False)

        assert result.success is False
        assert tax_return.queue_status == "failed"
        assert tax_return.attempts == 5
        assert tax_return.failure_reason == "Max retries exceeded"


# ============================================================================
# Processing
# ============================================================================


async def _queued(db, make_maryland_return, queue, **overrides):
    tax_return = await make_maryland_return(**overrides)
    await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False, validate_county_tax=False)
    await db.commit()
    return tax_return


class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_accepted(self, db, make_maryland_return, ifile_client, tenant_and_user):
        _, user = tenant_and_user
        queue = MarylandEFileQueue(db, ifile_client(0.5), today=OFF_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.processed == 1
        assert result.succeeded == 1
        assert tax_return.queue_status == "accepted"
        assert tax_return.efile_status == "accepted"
        assert tax_return.confirmation_number.startswith("MCF")
        assert tax_return.ifile_submission_id.startswith("MD-")
        assert tax_return.submitted_at is not None
        assert await _logs(db, tax_return.id) == ["queued", "accepted"]

        titles = (await db.execute(select(Notification.title).where(Notification.user_id == user.id))).scalars().all()
        assert titles == ["Maryland return accepted"]

    @pytest.mark.asyncio
    async def test_rejected(self, db, make_maryland_return, ifile_client):
        queue = MarylandEFileQueue(db, ifile_client(0.75), today=OFF_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.failed == 1
        assert tax_return.queue_status == "rejected"
        assert tax_return.efile_status == "rejected"
        assert tax_return.rejection_reasons[0]["code"] == "CTY002"
        assert tax_return.last_error.startswith("CTY002")

    @pytest.mark.asyncio
    async def test_local_requirement_failure_rejected_without_gateway(self, db, make_maryland_return, ifile_client):
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue, pension_income=50000)

        await queue.process_queue()
        await db.refresh(tax_return)

        assert tax_return.queue_status == "rejected"
        assert tax_return.rejection_reasons[0]["code"] == "BUS006"

    @pytest.mark.asyncio
    async def test_system_error_is_retried(self, db, make_maryland_return, ifile_client):
        queue = MarylandEFileQueue(db, ifile_client(0.95), today=OFF_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue)

        before = utcnow()
        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.retried == 1
        assert tax_return.queue_status == "retry"
        assert tax_return.attempts == 1
        retry_at = as_utc(tax_return.next_retry_at)
        assert before + timedelta(minutes=2) <= retry_at <= utcnow() + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_peak_season_doubles_retry_delay(self, db, make_maryland_return, ifile_client):
        queue = MarylandEFileQueue(db, ifile_client(0.95), today=PEAK_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue)

        before = utcnow()
        await queue.process_queue()
        await db.refresh(tax_return)

        assert as_utc(tax_return.next_retry_at) >= before + timedelta(minutes=4)

    @pytest.mark.asyncio
    async def test_due_retry_is_picked_up(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(
            queue_status="retry", attempts=2, queued_at=utcnow(), next_retry_at=utcnow() - timedelta(minutes=1)
        )
        queue = MarylandEFileQueue(db, ifile_client(0.5), today=OFF_SEASON)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.succeeded == 1
        assert tax_return.queue_status == "accepted"

    @pytest.mark.asyncio
    async def test_retry_not_due_is_left_alone(self, db, make_maryland_return, ifile_client):
        await make_maryland_return(
            queue_status="retry", attempts=1, queued_at=utcnow(), next_retry_at=utcnow() + timedelta(minutes=10)
        )
        result = await MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON).process_queue()
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_max_retries_exceeded(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(
            queue_status="retry", attempts=5, queued_at=utcnow(), next_retry_at=utcnow() - timedelta(minutes=1)
        )
        queue = MarylandEFileQueue(db, ifile_client(0.95), today=OFF_SEASON)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.failed == 1
        assert tax_return.queue_status == "failed"
        assert tax_return.efile_status == "failed"
        assert tax_return.failure_reason == "Max retries exceeded"
        assert tax_return.failed_at is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_row_failed(self, db, make_maryland_return, ifile_client):
        client = ifile_client()
        client.submit_form502 = AsyncMock(side_effect=RuntimeError("gateway exploded"))
        queue = MarylandEFileQueue(db, client, today=OFF_SEASON)
        tax_return = await _queued(db, make_maryland_return, queue)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.failed == 1
        assert result.errors == [{"return_id": tax_return.id, "error": "gateway exploded"}]
        assert tax_return.queue_status == "failed"
        assert tax_return.last_error == "gateway exploded"

    @pytest.mark.asyncio
    async def test_cancelled_pass_releases_claimed_rows(self, db, make_maryland_return, ifile_client):
        client = ifile_client()
        started = asyncio.Event()

        async def hang(payload):
            started.set()
            await asyncio.Event().wait()

        client.submit_form502 = hang
        queue = MarylandEFileQueue(db, client, today=OFF_SEASON)
        returns = [await _queued(db, make_maryland_return, queue) for _ in range(2)]

        task = asyncio.create_task(queue.process_queue())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for tax_return in returns:
            await db.refresh(tax_return)
        assert {r.queue_status for r in returns} == {"queued"}
        assert {r.attempts for r in returns} == {0}

        result = await MarylandEFileQueue(db, ifile_client(0.5, 0.5), today=OFF_SEASON).process_queue()
        assert result.processed == 2
        assert result.succeeded == 2

    @pytest.mark.asyncio
    async def test_stale_processing_row_is_reclaimed(self, db, make_maryland_return, ifile_client):
        stale = await make_maryland_return(
            queue_status="processing", queued_at=utcnow(), last_processed_at=utcnow() - timedelta(minutes=30)
        )
        in_flight = await make_maryland_return(
            queue_status="processing", queued_at=utcnow(), last_processed_at=utcnow()
        )

        result = await MarylandEFileQueue(db, ifile_client(0.5), today=OFF_SEASON).process_queue()
        await db.refresh(stale)
        await db.refresh(in_flight)

        assert result.processed == 1
        assert stale.queue_status == "accepted"
        assert in_flight.queue_status == "processing"

    @pytest.mark.asyncio
    async def test_promotes_returns_after_federal_acceptance(
        self, db, make_maryland_return, make_federal_return, ifile_client
    ):
        federal = await make_federal_return(efile_status="transmitted")
        tax_return = await make_maryland_return(federal_return_id=federal.id)
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        first = await queue.process_queue()
        assert first.promoted == 0

        federal.efile_status = "accepted"
        await db.commit()

        second = await queue.process_queue()
        await db.refresh(tax_return)

        assert second.processed == 0
        assert second.promoted == 1
        assert tax_return.queue_status == "queued"
        assert tax_return.efile_status == "ready"


# ============================================================================
# Validation, acknowledgments & stats
# ============================================================================


class TestValidateAndAcknowledge:
    @pytest.mark.asyncio
    async def test_validate_clean_return(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return()
        report = await MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON).validate_return(tax_return.id)

        assert report["valid"] is True
        assert report["errors"] == []
        assert report["warnings"] == []
        assert report["county_validation"]["county_code"] == "MO"
        assert tax_return.validation_status == "valid"

    @pytest.mark.asyncio
    async def test_validate_reports_errors_and_warnings(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(
            county_tax=900,
            maryland_eitc=-10,
            poverty_level_credit=400,
            property_tax_credit=2000,
            maryland_resident=False,
        )
        report = await MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON).validate_return(tax_return.id)

        assert report["valid"] is False
        assert len(report["errors"]) == 2
        assert "Maryland EITC cannot be negative" in report["errors"]
        assert len(report["warnings"]) == 3
        assert tax_return.validation_status == "invalid"
        assert tax_return.validation_warnings == report["warnings"]

    @pytest.mark.asyncio
    async def test_validate_with_checks_disabled(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return(county_tax=900, maryland_resident=False)
        report = await MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON).validate_return(
            tax_return.id, county_tax=False, residency=False
        )
        assert report["valid"] is True
        assert report["county_validation"] is None

    @pytest.mark.asyncio
    async def test_record_acknowledgment(self, db, make_maryland_return, ifile_client):
        accepted = await make_maryland_return(queue_status="queued")
        rejected = await make_maryland_return(queue_status="queued")
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)

        await queue.record_acknowledgment(accepted.id, "accepted", confirmation_number="MCF123")
        await queue.record_acknowledgment(rejected.id, "rejected", errors=[{"code": "VAL005", "message": "AGI"}])

        assert accepted.queue_status == "accepted"
        assert accepted.confirmation_number == "MCF123"
        assert accepted.acknowledgment_data["status"] == "accepted"
        assert rejected.efile_status == "rejected"
        assert rejected.rejection_reasons == [{"code": "VAL005", "message": "AGI"}]
        assert await queue.record_acknowledgment(9999, "accepted") is None

    @pytest.mark.asyncio
    async def test_queue_stats(self, db, make_maryland_return, ifile_client):
        await make_maryland_return(queue_status="queued", queued_at=utcnow())
        await make_maryland_return(queue_status="pending_federal", queued_at=utcnow())
        await make_maryland_return(
            queue_status="accepted", queued_at=utcnow() - timedelta(seconds=90), submitted_at=utcnow()
        )
        await make_maryland_return()  # never submitted

        stats = await MarylandEFileQueue(db, ifile_client(), today=PEAK_SEASON).get_queue_stats()

        assert stats["queued"] == 1
        assert stats["pending_federal"] == 1
        assert stats["accepted"] == 1
        assert stats["retry"] == 0
        assert stats["peak_season"] is True
        assert stats["poll_interval_seconds"] == 15.0
        assert 80 <= stats["avg_wait_seconds"] <= 100

    @pytest.mark.asyncio
    async def test_submission_status(self, db, make_maryland_return, ifile_client):
        tax_return = await make_maryland_return()
        queue = MarylandEFileQueue(db, ifile_client(), today=OFF_SEASON)
        await queue.submit_to_queue(tax_return.id, requires_federal_acceptance=False)

        status = await queue.get_submission_status(tax_return.id)

        assert status["queue_status"] == "queued"
        assert status["queue_position"] == 1
        assert await queue.get_submission_status(9999) is None
