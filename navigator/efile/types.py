"""Core types and DTOs shared by the e-file queues and gateway clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Gateway(str, Enum):
    """Tax agency gateways a return can be transmitted to."""

    IRS_MEF = "irs_mef"
    MARYLAND_IFILE = "maryland_ifile"


class QueueStatus(str, Enum):
    """Row-level state of a return inside a queue."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"  # Federal: transmitted, awaiting acknowledgment
    FAILED = "failed"
    RETRY = "retry"  # Maryland: waiting for next_retry_at
    PENDING_FEDERAL = "pending_federal"  # Maryland: parked until federal is accepted
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class EFileStatus(str, Enum):
    """Filing lifecycle state shown to the taxpayer."""

    DRAFT = "draft"
    READY = "ready"
    TRANSMITTED = "transmitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


class SubmissionPriority(int, Enum):
    """Queue priority (higher = processed sooner)."""

    URGENT = 5  # Manual retry / urgent
    AMENDED = 4  # Amended return
    DEADLINE = 3  # Within a week of the filing deadline
    NORMAL = 2
    LOW = 1  # Test / low priority


class ErrorType(str, Enum):
    """Classification of a failed transmission attempt."""

    NETWORK = "network"
    SERVER = "server"
    BUSINESS_RULE = "business_rule"
    SCHEMA = "schema"
    CIRCUIT_OPEN = "circuit_open"
    VALIDATION = "validation"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class LogAction(str, Enum):
    """Actions recorded in the submission log."""

    SUBMITTED = "submitted"
    QUEUED = "queued"
    PENDING_FEDERAL = "pending_federal"
    PROCESSING = "processing"
    TRANSMITTED = "transmitted"
    RETRIED = "retried"
    MANUAL_RETRY = "manual_retry"
    DEAD_LETTERED = "dead_lettered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    ACK_PENDING = "acknowledgment_pending"
    STATUS_OVERRIDE = "status_override"


# ---------------------------------------------------------------------------
# Queue constants
# ---------------------------------------------------------------------------

FEDERAL_QUEUE_NAME = "federal_primary"
FEDERAL_RETRY_DELAYS_MINUTES = (1, 5, 15, 60, 360)
FEDERAL_BATCH_SIZE = 10
FEDERAL_DEAD_LETTER_THRESHOLD = 10
FEDERAL_ACK_BATCH_SIZE = 20
FEDERAL_SUBMIT_CHUNK_SIZE = 5

MARYLAND_QUEUE_NAME = "maryland_primary"
MARYLAND_RETRY_DELAYS_MINUTES = (2, 10, 30, 120, 720)
MARYLAND_MAX_RETRIES = 5
MARYLAND_BATCH_SIZE = 5
MARYLAND_PROMOTE_BATCH_SIZE = 10
MARYLAND_RETRIABLE_CODES = frozenset({"SYS001", "SYS002", "AUTH003"})

# A row left in processing longer than this belongs to a pass that died
PROCESSING_LEASE_MINUTES = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Gateway DTOs
# ---------------------------------------------------------------------------


@dataclass
class GatewayError:
    """A single error or warning reported by an agency gateway."""

    code: str
    message: str
    severity: str = "error"  # error / warning
    field: str | None = None  # Form field or XPath the error refers to

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "severity": self.severity, "field": self.field}


@dataclass
class TransmissionResult:
    """Outcome of transmitting one federal return to MeF."""

    success: bool
    transmission_id: str | None = None
    submission_id: str | None = None
    status_code: str = ""
    message: str = ""
    errors: list[GatewayError] = field(default_factory=list)
    error_type: ErrorType | None = None
    is_mock: bool = False
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AcknowledgmentResult:
    """IRS acknowledgment for a transmitted submission."""

    status: str  # accepted / rejected / pending
    submission_id: str | None = None
    dcn: str | None = None
    accepted_at: datetime | None = None
    rejection_code: str | None = None
    rejection_reason: str | None = None
    errors: list[GatewayError] = field(default_factory=list)
    is_mock: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "submission_id": self.submission_id,
            "dcn": self.dcn,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "rejection_code": self.rejection_code,
            "rejection_reason": self.rejection_reason,
            "errors": [e.to_dict() for e in self.errors],
            "is_mock": self.is_mock,
        }


@dataclass
class IFileSubmissionResult:
    """Outcome of a Form 502 submission to Maryland iFile."""

    status: str  # accepted / rejected / error / pending
    submission_id: str | None = None
    confirmation_number: str | None = None
    errors: list[GatewayError] = field(default_factory=list)
    warnings: list[GatewayError] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def error_codes(self) -> list[str]:
        return [e.code for e in self.errors]


@dataclass
class CountyTaxValidation:
    valid: bool
    county_code: str | None = None
    expected_tax: float = 0.0
    calculated_tax: float = 0.0
    difference: float = 0.0
    message: str = ""


# ---------------------------------------------------------------------------
# Queue results
# ---------------------------------------------------------------------------


@dataclass
class SubmitResult:
    success: bool
    message: str
    queue_position: int | None = None
    requires_federal_first: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class BatchSubmitResult:
    success: bool
    batch_id: str
    submitted: list[int] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)  # [{"return_id", "error"}]


@dataclass
class ProcessResult:
    """Summary of one federal queue pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped_reason: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class MarylandProcessResult:
    """Summary of one Maryland queue pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    promoted: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AcknowledgmentRunResult:
    checked: int = 0
    accepted: int = 0
    rejected: int = 0
    pending: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class QueueMetrics:
    queue_name: str
    pending: int = 0
    processing: int = 0
    failed: int = 0
    dead_lettered: int = 0
    completed: int = 0
    success_rate: float = 0.0
    avg_processing_seconds: float = 0.0
