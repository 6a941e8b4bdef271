"""Read-only queue statistics."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from marketsync.models.db.batches import Batch
from marketsync.models.db.dead_letters import DeadLetterEntry
from marketsync.models.db.enums import JobStatus
from marketsync.models.db.jobs import Job
from marketsync.services.job_queue import BatchStatus, JobQueue
from marketsync.utils.time import Clock, utc_now


@dataclass
class QueueStats:
    pending: int
    in_progress: int
    completed: int
    dead_lettered: int
    cancelled: int
    total: int
    delayed: int
    expired_leases: int
    dead_letter_entries: int
    batches: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QueueStatsService:
    def __init__(self, session_factory: sessionmaker, job_queue: JobQueue, *, clock: Clock = utc_now) -> None:
        self._session_factory = session_factory
        self._job_queue = job_queue
        self._clock = clock

    def get_queue_stats(self) -> QueueStats:
        now = self._clock()
        with self._session_factory() as session:
            counts = {
                status: int(count)
                for status, count in session.execute(
                    select(Job.status, func.count()).group_by(Job.status)
                ).all()
            }
            delayed = session.scalar(
                select(func.count()).select_from(Job).where(
                    Job.status.in_([JobStatus.PENDING, JobStatus.FAILED_RETRYABLE]),
                    Job.scheduled_at > now,
                )
            ) or 0
            expired = session.scalar(
                select(func.count()).select_from(Job).where(
                    Job.status == JobStatus.IN_PROGRESS,
                    Job.lease_expires_at < now,
                )
            ) or 0
            dead_letter_entries = session.scalar(select(func.count()).select_from(DeadLetterEntry)) or 0
            batches = session.scalar(select(func.count()).select_from(Batch)) or 0

        return QueueStats(
            pending=counts.get(JobStatus.PENDING, 0) + counts.get(JobStatus.FAILED_RETRYABLE, 0),
            in_progress=counts.get(JobStatus.IN_PROGRESS, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            dead_lettered=counts.get(JobStatus.DEAD_LETTERED, 0),
            cancelled=counts.get(JobStatus.CANCELLED, 0),
            total=sum(counts.values()),
            delayed=int(delayed),
            expired_leases=int(expired),
            dead_letter_entries=int(dead_letter_entries),
            batches=int(batches),
            timestamp=now,
        )

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        return self._job_queue.get_batch_status(batch_id)


__all__ = ["QueueStats", "QueueStatsService"]
