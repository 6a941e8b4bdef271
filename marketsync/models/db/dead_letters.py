from __future__ import annotations
"""SQLAlchemy model for dead-letter (quarantined) jobs."""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any
from sqlalchemy import Integer, String, Text, Enum, Boolean, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .jobs import Job
    from marketsync.services.error_classifier import ErrorRecord
from marketsync.database import Base, UTCDateTime
from .enums import ErrorKind, ErrorSeverity


class DeadLetterEntry(Base):
    __tablename__ = "dead_letter_entries"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    original_job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)

    # Final error, flattened for filtering
    error_kind: Mapped[ErrorKind] = mapped_column(Enum(ErrorKind), nullable=False, index=True)
    error_severity: Mapped[ErrorSeverity] = mapped_column(Enum(ErrorSeverity), nullable=False)
    error_retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_retry_after_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    failure_reason: Mapped[str] = mapped_column(String(64), nullable=False)
    quarantined_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    # Retry bookkeeping (only mutable columns)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retried_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_retry_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    @classmethod
    def from_job(cls, job: "Job", record: "ErrorRecord", quarantined_at: datetime, failure_reason: str) -> "DeadLetterEntry":
        return cls(
            id=str(uuid.uuid4()),
            original_job_id=job.id,
            batch_id=job.batch_id,
            platform=job.platform,
            payload=job.payload,
            error_kind=record.kind,
            error_severity=record.severity,
            error_retryable=record.retryable,
            error_retry_after_seconds=record.suggested_retry_after_seconds,
            error_message=record.raw_message,
            total_attempts=job.attempts,
            failure_reason=failure_reason,
            quarantined_at=quarantined_at,
            retry_count=0,
        )
