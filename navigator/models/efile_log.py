from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from navigator.db.base import Base, JSONType


class EFileSubmissionLog(Base):
    """Audit row written for every queue action on a return."""

    __tablename__ = "efile_submission_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_type: Mapped[str] = mapped_column(String(20), nullable=False)  # federal / maryland
    federal_return_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    maryland_return_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    transmission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    submission_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    response_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_mock: Mapped[bool] = mapped_column(Boolean, default=True)
    circuit_breaker_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )


class EFileQueueMetadata(Base):
    """Rolling health snapshot, one row per named queue."""

    __tablename__ = "efile_queue_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    active_count: Mapped[int] = mapped_column(Integer, default=0)
    pending_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    dead_lettered_count: Mapped[int] = mapped_column(Integer, default=0)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0)
    avg_processing_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    last_health_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
