import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from navigator.db.base import Base, JSONType

Money = Numeric(12, 2, asdecimal=False)


class FederalTaxReturn(Base):
    """Form 1040 return plus its e-file queue and IRS acknowledgment state."""

    __tablename__ = "federal_tax_returns"
    __table_args__ = (Index("ix_federal_queue_pick", "queue_status", "submission_priority", "queued_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    household_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("households.id", ondelete="SET NULL"), nullable=True
    )

    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    filing_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    form_1040_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    adjusted_gross_income: Mapped[float] = mapped_column(Money, default=0)
    taxable_income: Mapped[float] = mapped_column(Money, default=0)
    total_tax: Mapped[float] = mapped_column(Money, default=0)
    refund_amount: Mapped[float] = mapped_column(Money, default=0)
    amount_owed: Mapped[float] = mapped_column(Money, default=0)
    federal_withholding: Mapped[float] = mapped_column(Money, default=0)

    # Validation
    validation_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending / valid / invalid
    validation_errors: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Transmission document
    document_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    document_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    document_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    document_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Queue
    queue_status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    submission_priority: Mapped[int] = mapped_column(Integer, default=2)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submission_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_submission_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_amended_return: Mapped[bool] = mapped_column(Boolean, default=False)
    dead_lettered: Mapped[bool] = mapped_column(Boolean, default=False)
    dead_letter_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Transmission
    efile_status: Mapped[str] = mapped_column(String(20), default="draft")
    transmitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    mef_transmission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mef_submission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Acknowledgment
    acknowledgment_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    acknowledgment_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dcn: Mapped[str | None] = mapped_column(String(40), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_details: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    notify_on_status_change: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class MarylandTaxReturn(Base):
    """Form 502 return plus its iFile queue state."""

    __tablename__ = "maryland_tax_returns"
    __table_args__ = (Index("ix_maryland_queue_pick", "queue_status", "priority", "queued_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    federal_return_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("federal_tax_returns.id", ondelete="SET NULL"), nullable=True, index=True
    )

    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    filing_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    county: Mapped[str | None] = mapped_column(String(50), nullable=True)
    maryland_resident: Mapped[bool] = mapped_column(Boolean, default=True)
    state_of_residence: Mapped[str] = mapped_column(String(2), default="MD")
    maryland_taxable_income: Mapped[float] = mapped_column(Money, default=0)
    county_tax: Mapped[float] = mapped_column(Money, default=0)
    pension_income: Mapped[float] = mapped_column(Money, default=0)
    maryland_eitc: Mapped[float] = mapped_column(Money, default=0)
    poverty_level_credit: Mapped[float] = mapped_column(Money, default=0)
    property_tax_credit: Mapped[float] = mapped_column(Money, default=0)
    preparer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    preparer_ptin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    preparer_ein: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Validation
    validation_status: Mapped[str] = mapped_column(String(20), default="pending")
    validation_errors: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    validation_warnings: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Queue
    queue_status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=3)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Result
    efile_status: Mapped[str] = mapped_column(String(20), default="draft")
    submission_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    confirmation_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    ifile_submission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reasons: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    acknowledgment_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
