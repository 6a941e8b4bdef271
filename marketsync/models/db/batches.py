from __future__ import annotations
"""SQLAlchemy model for sync batches (one submission, many jobs)."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .jobs import Job
from marketsync.database import Base, UTCDateTime


class Batch(Base):
    __tablename__ = "batches"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    platform: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Grows when a dead-letter retry re-enqueues into this batch
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="batch")
