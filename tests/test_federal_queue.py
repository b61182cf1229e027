"""Tests for the federal e-file queue: submission, processing passes, retries,
dead-lettering, acknowledgments and queue metrics."""

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from navigator.efile.federal_queue import FederalEFileQueue, compute_priority, retry_delay
from navigator.efile.types import Gateway, as_utc, utcnow
from navigator.models.efile_log import EFileQueueMetadata, EFileSubmissionLog
from navigator.models.notification import Notification
from navigator.models.tax_return import FederalTaxReturn


async def _logs(db, return_id: int) -> list[str]:
    result = await db.execute(
        select(EFileSubmissionLog.action)
        .where(EFileSubmissionLog.federal_return_id == return_id)
        .order_by(EFileSubmissionLog.id)
    )
    return list(result.scalars().all())


async def _notification_titles(db, user_id) -> list[str]:
    result = await db.execute(select(Notification.title).where(Notification.user_id == user_id))
    return list(result.scalars().all())


# ============================================================================
# Priority & backoff
# ============================================================================


class TestPriorityAndBackoff:
    def test_normal_priority(self):
        tax_return = FederalTaxReturn(tax_year=2024, is_amended_return=False)
        assert compute_priority(tax_return, today=date(2025, 2, 1)) == 2

    def test_amended_priority(self):
        tax_return = FederalTaxReturn(tax_year=2024, is_amended_return=True)
        assert compute_priority(tax_return, today=date(2025, 2, 1)) == 4

    def test_deadline_week_priority(self):
        tax_return = FederalTaxReturn(tax_year=2024, is_amended_return=False)
        assert compute_priority(tax_return, today=date(2025, 4, 10)) == 3
        assert compute_priority(tax_return, today=date(2025, 4, 16)) == 2

    def test_explicit_priority_wins(self):
        tax_return = FederalTaxReturn(tax_year=2024, is_amended_return=True)
        assert compute_priority(tax_return, requested=1, today=date(2025, 4, 10)) == 1

    def test_retry_schedule(self):
        assert retry_delay(1) == timedelta(minutes=1)
        assert retry_delay(2) == timedelta(minutes=5)
        assert retry_delay(3) == timedelta(minutes=15)
        assert retry_delay(4) == timedelta(minutes=60)
        assert retry_delay(5) == timedelta(minutes=360)
        assert retry_delay(9) == timedelta(minutes=360)


# ============================================================================
# Submission
# ============================================================================


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_valid_return(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client())

        result = await queue.submit_to_queue(tax_return.id)
        await db.commit()

        assert result.success is True
        assert result.message == "Return queued for e-file"
        assert result.queue_position == 1
        assert tax_return.queue_status == "queued"
        assert tax_return.efile_status == "ready"
        assert tax_return.validation_status == "valid"
        assert tax_return.submission_priority == 2
        assert tax_return.document_generated is True
        assert len(tax_return.document_hash) == 64
        assert "<TaxYr>2024</TaxYr>" in tax_return.document_content
        assert await _logs(db, tax_return.id) == ["submitted"]

        metadata = (await db.execute(select(EFileQueueMetadata))).scalar_one()
        assert metadata.queue_name == "federal_primary"
        assert metadata.pending_count == 1

    @pytest.mark.asyncio
    async def test_submit_invalid_return(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return(tax_year=2019, filing_status=None, form_1040_data=None)
        queue = FederalEFileQueue(db, mef_client())

        result = await queue.submit_to_queue(tax_return.id)

        assert result.success is False
        assert result.message.startswith("Validation failed")
        assert len(result.errors) == 3
        assert tax_return.validation_status == "invalid"
        assert tax_return.queue_status is None

    @pytest.mark.asyncio
    async def test_submit_missing_return(self, db, mef_client):
        result = await FederalEFileQueue(db, mef_client()).submit_to_queue(9999)
        assert result.success is False
        assert result.message == "Return not found"

    @pytest.mark.asyncio
    async def test_submit_already_queued_reports_position(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client())
        await queue.submit_to_queue(tax_return.id)

        result = await queue.submit_to_queue(tax_return.id)

        assert result.success is True
        assert result.message == "Return is already queued"
        assert result.queue_position == 1
        assert await _logs(db, tax_return.id) == ["submitted"]

    @pytest.mark.asyncio
    async def test_submit_accepted_return_refused(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return(efile_status="accepted")
        result = await FederalEFileQueue(db, mef_client()).submit_to_queue(tax_return.id)
        assert result.success is False
        assert "already been accepted" in result.message

    @pytest.mark.asyncio
    async def test_queue_position_follows_priority(self, db, make_federal_return, mef_client):
        normal = await make_federal_return()
        urgent = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client())

        await queue.submit_to_queue(normal.id)
        result = await queue.submit_to_queue(urgent.id, priority=5)

        assert result.queue_position == 1
        assert await queue.get_queue_position(normal) == 2

    @pytest.mark.asyncio
    async def test_submit_batch(self, db, make_federal_return, mef_client):
        first = await make_federal_return()
        second = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client())

        batch = await queue.submit_batch([first.id, second.id, 9999])

        assert batch.success is False
        assert batch.submitted == [first.id, second.id]
        assert batch.failed == [{"return_id": 9999, "error": "Return not found"}]
        assert first.batch_id == second.batch_id == batch.batch_id


# ============================================================================
# Processing
# ============================================================================


class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_successful_transmission(self, db, make_federal_return, mef_client, tenant_and_user):
        _, user = tenant_and_user
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client(0.1))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.processed == 1
        assert result.succeeded == 1
        assert tax_return.queue_status == "completed"
        assert tax_return.efile_status == "transmitted"
        assert tax_return.mef_transmission_id == "MOCK_TRANS_abcdefghij"
        assert tax_return.mef_submission_id == "MOCK_SUB_abcdefghij"
        assert tax_return.submission_attempts == 1
        assert tax_return.transmitted_at is not None
        assert await _logs(db, tax_return.id) == ["submitted", "transmitted"]
        assert await _notification_titles(db, user.id) == ["Tax return transmitted"]

    @pytest.mark.asyncio
    async def test_no_notification_when_opted_out(self, db, make_federal_return, mef_client, tenant_and_user):
        _, user = tenant_and_user
        tax_return = await make_federal_return(notify_on_status_change=False)
        queue = FederalEFileQueue(db, mef_client(0.1))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        await queue.process_queue()

        assert await _notification_titles(db, user.id) == []

    @pytest.mark.asyncio
    async def test_empty_queue(self, db, mef_client):
        result = await FederalEFileQueue(db, mef_client()).process_queue()
        assert result.processed == 0
        assert result.skipped_reason is None

    @pytest.mark.asyncio
    async def test_business_rule_failure_is_retried(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client(0.75))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        before = utcnow()
        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.failed == 1
        assert tax_return.queue_status == "queued"
        assert tax_return.efile_status == "ready"
        assert tax_return.submission_attempts == 1
        assert tax_return.last_error_type == "business_rule"
        assert tax_return.last_error_message == "Business rule validation failed"
        retry_at = as_utc(tax_return.next_retry_at)
        assert before + timedelta(seconds=59) <= retry_at <= utcnow() + timedelta(minutes=1)

        log = (
            await db.execute(select(EFileSubmissionLog).where(EFileSubmissionLog.action == "retried"))
        ).scalar_one()
        assert log.response_code == "BR001"
        assert log.details["retry_in_minutes"] == 1
        assert log.details["errors"][0]["code"] == "BR001"

        # Not due yet: the next pass leaves it alone
        second = await queue.process_queue()
        assert second.processed == 0

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client(0.87))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        await queue.process_queue()
        await db.refresh(tax_return)

        assert tax_return.queue_status == "queued"
        assert tax_return.last_error_type == "network"
        assert tax_return.last_error_message == "Network timeout (simulated)"

    @pytest.mark.asyncio
    async def test_dead_letter_after_ten_attempts(self, db, make_federal_return, mef_client, tenant_and_user):
        _, user = tenant_and_user
        tax_return = await make_federal_return(submission_attempts=9)
        queue = FederalEFileQueue(db, mef_client(0.75))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.dead_lettered == 1
        assert tax_return.submission_attempts == 10
        assert tax_return.dead_lettered is True
        assert tax_return.queue_status == "failed"
        assert tax_return.efile_status == "rejected"
        assert tax_return.next_retry_at is None
        assert tax_return.dead_letter_reason.startswith("Exceeded 10 submission attempts")
        assert "dead_lettered" in await _logs(db, tax_return.id)
        assert await _notification_titles(db, user.id) == ["E-file needs attention"]

    @pytest.mark.asyncio
    async def test_open_circuit_skips_pass(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        client = mef_client(threshold=1)
        queue = FederalEFileQueue(db, client)
        await queue.submit_to_queue(tax_return.id)
        await db.commit()
        client.circuit_breaker.record_failure(Gateway.IRS_MEF)

        result = await queue.process_queue()
        await db.refresh(tax_return)

        assert result.skipped_reason == "circuit_breaker_open"
        assert result.processed == 0
        assert tax_return.queue_status == "queued"

    @pytest.mark.asyncio
    async def test_circuit_tripping_mid_pass_releases_remaining_rows(self, db, make_federal_return, mef_client):
        first = await make_federal_return()
        second = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client(0.95, threshold=1))
        await queue.submit_to_queue(first.id)
        await queue.submit_to_queue(second.id)
        await db.commit()

        result = await queue.process_queue()
        await db.refresh(first)
        await db.refresh(second)

        assert result.processed == 1
        assert result.failed == 1
        assert {first.queue_status, second.queue_status} == {"queued"}
        assert first.submission_attempts + second.submission_attempts == 1

    @pytest.mark.asyncio
    async def test_cancelled_pass_releases_claimed_rows(self, db, make_federal_return, mef_client):
        returns = [await make_federal_return() for _ in range(3)]
        client = mef_client()
        started = asyncio.Event()

        async def hang(return_id, document):
            started.set()
            await asyncio.Event().wait()

        client.transmit_return = hang
        queue = FederalEFileQueue(db, client)
        for tax_return in returns:
            await queue.submit_to_queue(tax_return.id)
        await db.commit()

        task = asyncio.create_task(queue.process_queue())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for tax_return in returns:
            await db.refresh(tax_return)
        assert {r.queue_status for r in returns} == {"queued"}

        result = await FederalEFileQueue(db, mef_client(0.1, 0.1, 0.1)).process_queue()
        assert result.processed == 3
        assert result.succeeded == 3

    @pytest.mark.asyncio
    async def test_stale_processing_row_is_reclaimed(self, db, make_federal_return, mef_client):
        stale = await make_federal_return(
            queue_status="processing", queued_at=utcnow(), last_submission_at=utcnow() - timedelta(minutes=30)
        )
        in_flight = await make_federal_return(
            queue_status="processing", queued_at=utcnow(), last_submission_at=utcnow()
        )

        result = await FederalEFileQueue(db, mef_client(0.1)).process_queue()
        await db.refresh(stale)
        await db.refresh(in_flight)

        assert result.processed == 1
        assert stale.queue_status == "completed"
        assert stale.efile_status == "transmitted"
        assert in_flight.queue_status == "processing"

    @pytest.mark.asyncio
    async def test_higher_priority_transmitted_first(self, db, make_federal_return, mef_client):
        normal = await make_federal_return()
        urgent = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client(0.1, 0.75))
        await queue.submit_to_queue(normal.id)
        await queue.submit_to_queue(urgent.id, priority=5)
        await db.commit()

        await queue.process_queue()
        await db.refresh(normal)
        await db.refresh(urgent)

        assert urgent.efile_status == "transmitted"
        assert normal.efile_status == "ready"


# ============================================================================
# Acknowledgments
# ============================================================================


async def _transmitted(make_federal_return, **overrides) -> FederalTaxReturn:
    fields = {
        "efile_status": "transmitted",
        "queue_status": "completed",
        "mef_transmission_id": "T-1",
        "mef_submission_id": "S-1",
        "transmitted_at": utcnow(),
    }
    fields.update(overrides)
    return await make_federal_return(**fields)


class TestAcknowledgments:
    @pytest.mark.asyncio
    async def test_accepted(self, db, make_federal_return, mef_client, tenant_and_user):
        _, user = tenant_and_user
        tax_return = await _transmitted(make_federal_return)

        result = await FederalEFileQueue(db, mef_client(0.5)).process_acknowledgments()
        await db.refresh(tax_return)

        assert result.checked == 1
        assert result.accepted == 1
        assert tax_return.efile_status == "accepted"
        assert tax_return.queue_status == "accepted"
        assert tax_return.dcn.endswith("ABCDEFGHIJ")
        assert tax_return.acknowledgment_received_at is not None
        assert tax_return.acknowledgment_data["status"] == "accepted"
        assert await _logs(db, tax_return.id) == ["accepted"]
        assert await _notification_titles(db, user.id) == ["Federal return accepted"]

    @pytest.mark.asyncio
    async def test_rejected(self, db, make_federal_return, mef_client):
        tax_return = await _transmitted(make_federal_return)

        result = await FederalEFileQueue(db, mef_client(0.8)).process_acknowledgments()
        await db.refresh(tax_return)

        assert result.rejected == 1
        assert tax_return.efile_status == "rejected"
        assert tax_return.rejection_code == "IND-180"
        assert tax_return.rejection_details[0]["code"] == "IND-180"

    @pytest.mark.asyncio
    async def test_pending_is_polled_again(self, db, make_federal_return, mef_client):
        tax_return = await _transmitted(make_federal_return)
        queue = FederalEFileQueue(db, mef_client(0.97, 0.5))

        first = await queue.process_acknowledgments()
        await db.refresh(tax_return)
        assert first.pending == 1
        assert tax_return.acknowledgment_received_at is None

        second = await queue.process_acknowledgments()
        assert second.accepted == 1

    @pytest.mark.asyncio
    async def test_corrected_return_is_polled_after_resubmission(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        # transmit, reject (IND-180), transmit again, accept
        queue = FederalEFileQueue(db, mef_client(0.1, 0.75, 0.1, 0.5))
        await queue.submit_to_queue(tax_return.id)
        await db.commit()
        await queue.process_queue()
        assert (await queue.process_acknowledgments()).rejected == 1

        resubmitted = await queue.submit_to_queue(tax_return.id)
        await db.commit()
        assert resubmitted.success is True
        await db.refresh(tax_return)
        assert tax_return.acknowledgment_received_at is None
        assert tax_return.rejection_code is None

        await queue.process_queue()
        second = await queue.process_acknowledgments()
        await db.refresh(tax_return)

        assert second.checked == 1
        assert second.accepted == 1
        assert tax_return.efile_status == "accepted"
        assert tax_return.dcn.endswith("ABCDEFGHIJ")
        assert tax_return.rejected_at is None
        assert tax_return.rejection_details is None

    @pytest.mark.asyncio
    async def test_manual_retry_clears_previous_rejection(self, db, make_federal_return, mef_client):
        tax_return = await _transmitted(make_federal_return)
        queue = FederalEFileQueue(db, mef_client(0.8))
        await queue.process_acknowledgments()

        await queue.retry_submission(tax_return.id)
        await db.commit()
        await db.refresh(tax_return)

        assert tax_return.queue_status == "queued"
        assert tax_return.acknowledgment_received_at is None
        assert tax_return.acknowledgment_data is None
        assert tax_return.rejection_code is None

    @pytest.mark.asyncio
    async def test_already_acknowledged_rows_are_skipped(self, db, make_federal_return, mef_client):
        await _transmitted(make_federal_return, acknowledgment_received_at=utcnow())
        result = await FederalEFileQueue(db, mef_client()).process_acknowledgments()
        assert result.checked == 0


# ============================================================================
# Manual operations
# ============================================================================


class TestManualOperations:
    @pytest.mark.asyncio
    async def test_retry_dead_lettered_return(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return(
            queue_status="failed",
            efile_status="rejected",
            dead_lettered=True,
            dead_letter_reason="Exceeded 10 submission attempts",
            submission_attempts=10,
        )
        queue = FederalEFileQueue(db, mef_client())

        result = await queue.retry_submission(tax_return.id)

        assert result.success is True
        assert result.queue_position == 1
        assert tax_return.queue_status == "queued"
        assert tax_return.efile_status == "ready"
        assert tax_return.submission_priority == 5
        assert tax_return.dead_lettered is False
        assert tax_return.submission_attempts == 10
        assert await _logs(db, tax_return.id) == ["manual_retry"]

    @pytest.mark.asyncio
    async def test_retry_accepted_return_refused(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return(efile_status="accepted")
        result = await FederalEFileQueue(db, mef_client()).retry_submission(tax_return.id)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_status_override_accepted(self, db, make_federal_return, mef_client):
        tax_return = await _transmitted(make_federal_return)
        updated = await FederalEFileQueue(db, mef_client()).update_status(tax_return.id, "accepted", dcn="2025XYZ")

        assert updated.efile_status == "accepted"
        assert updated.dcn == "2025XYZ"
        assert updated.accepted_at is not None
        assert await _logs(db, tax_return.id) == ["status_override"]

    @pytest.mark.asyncio
    async def test_status_override_transmitted_completes_queue_row(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return(queue_status="failed")
        updated = await FederalEFileQueue(db, mef_client()).update_status(
            tax_return.id, "transmitted", transmission_id="T-manual"
        )
        assert updated.queue_status == "completed"
        assert updated.mef_transmission_id == "T-manual"

    @pytest.mark.asyncio
    async def test_status_override_rejects_unknown_status(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        with pytest.raises(ValueError):
            await FederalEFileQueue(db, mef_client()).update_status(tax_return.id, "draft")

    @pytest.mark.asyncio
    async def test_status_override_missing_return(self, db, mef_client):
        assert await FederalEFileQueue(db, mef_client()).update_status(9999, "accepted") is None


# ============================================================================
# Metrics & status
# ============================================================================


class TestMetrics:
    @pytest.mark.asyncio
    async def test_queue_metrics(self, db, make_federal_return, mef_client):
        await make_federal_return(queue_status="queued", queued_at=utcnow())
        await make_federal_return(queue_status="queued", queued_at=utcnow())
        await make_federal_return(
            queue_status="completed",
            queued_at=utcnow() - timedelta(minutes=2),
            transmitted_at=utcnow(),
        )
        await make_federal_return(queue_status="failed", dead_lettered=True)
        queue = FederalEFileQueue(db, mef_client())

        metrics = await queue.get_queue_metrics()

        assert metrics.pending == 2
        assert metrics.completed == 1
        assert metrics.failed == 1
        assert metrics.dead_lettered == 1
        assert metrics.success_rate == 0.25
        assert 100 <= metrics.avg_processing_seconds <= 140

        await queue.refresh_queue_metadata()
        row = (await db.execute(select(EFileQueueMetadata))).scalar_one()
        assert row.pending_count == 2
        assert row.dead_lettered_count == 1
        assert row.last_health_check is not None

    @pytest.mark.asyncio
    async def test_queue_status(self, db, mef_client):
        status = await FederalEFileQueue(db, mef_client()).get_queue_status(worker_running=True)
        assert status["queue_name"] == "federal_primary"
        assert status["is_processing"] is True
        assert status["mock_mode"] is True
        assert status["circuit_breaker"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_submission_status(self, db, make_federal_return, mef_client):
        tax_return = await make_federal_return()
        queue = FederalEFileQueue(db, mef_client())
        await queue.submit_to_queue(tax_return.id)
        await db.commit()

        status = await queue.get_submission_status(tax_return.id)

        assert status["queue_status"] == "queued"
        assert status["queue_position"] == 1
        assert [log.action for log in status["history"]] == ["submitted"]
        assert await queue.get_submission_status(9999) is None
