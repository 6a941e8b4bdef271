"""Durable job queue & batch tracker.

Jobs live in the ``jobs`` table; every state change is a conditional UPDATE
guarded on the expected status (and lease owner), so several workers, in
one process or many, can share the table without a global lock.

Lifecycle:
    pending -> in_progress                (claim)
    in_progress -> completed              (complete_job)
    in_progress -> pending                (fail_job, retryable & attempts left;
                                           defer_job; lease reclaim)
    in_progress -> dead_lettered          (fail_job, otherwise)
    pending -> cancelled                  (cancel_batch)
"""
from __future__ import annotations

import math
import uuid
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from marketsync.config import QUEUE_SETTINGS
from marketsync.models.db.batches import Batch
from marketsync.models.db.dead_letters import DeadLetterEntry
from marketsync.models.db.enums import BatchState, JobStatus
from marketsync.models.db.jobs import Job
from marketsync.services.error_classifier import ErrorRecord, classify
from marketsync.utils.audit import AuditSink, LoggingAuditSink
from marketsync.utils.backoff import compute_backoff_seconds
from marketsync.utils.logger import get_logger
from marketsync.utils.time import Clock, utc_now

logger = get_logger(__name__)

MAX_CLAIM_ROUNDS = 3


class JobNotFoundError(LookupError):
    pass


class BatchNotFoundError(LookupError):
    pass


class LeaseLostError(Exception):
    """The caller no longer owns the job (lease reclaimed, or job not in progress)."""

    def __init__(self, job_id: str, worker_id: Optional[str] = None) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Job {job_id} is not in progress for worker {worker_id or '<any>'}")


@dataclass
class FailureOutcome:
    job_id: str
    status: JobStatus
    attempts: int
    error: ErrorRecord
    scheduled_at: Optional[datetime] = None
    dead_letter_entry_id: Optional[str] = None

    @property
    def dead_lettered(self) -> bool:
        return self.status == JobStatus.DEAD_LETTERED


@dataclass
class BatchStatus:
    batch_id: str
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    progress_percent: int = 0
    estimated_remaining_seconds: int = 0
    state: BatchState = BatchState.QUEUED
    is_complete: bool = False
    success_rate: float = 0.0
    failure_rate: float = 0.0
    error_summary: dict[str, int] = field(default_factory=dict)
    platform: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def _derive_state(total: int, pending: int, in_progress: int, completed: int, failed: int, cancelled: int) -> BatchState:
    if total == 0:
        return BatchState.QUEUED
    if pending + in_progress > 0:
        if in_progress == 0 and completed + failed + cancelled == 0:
            return BatchState.QUEUED
        return BatchState.PROCESSING
    if completed == 0 and failed == 0:
        return BatchState.CANCELLED
    if failed == 0 and cancelled == 0:
        return BatchState.COMPLETED
    if completed == 0 and cancelled == 0:
        return BatchState.FAILED
    return BatchState.MIXED


class JobQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Clock = utc_now,
        classifier: Callable[[Any], ErrorRecord] = classify,
        backoff: Callable[[int], float] = compute_backoff_seconds,
        audit: Optional[AuditSink] = None,
        lease_seconds: Optional[float] = None,
        default_max_attempts: Optional[int] = None,
        max_attempts_limit: Optional[int] = None,
        per_job_estimate_seconds: Optional[float] = None,
        reclaim_on_claim: Optional[bool] = None,
        claim_candidates: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._classify = classifier
        self._backoff = backoff
        self._audit: AuditSink = audit if audit is not None else LoggingAuditSink()
        self.lease_seconds = float(lease_seconds if lease_seconds is not None else QUEUE_SETTINGS["lease_seconds"])
        self.default_max_attempts = int(default_max_attempts if default_max_attempts is not None else QUEUE_SETTINGS["default_max_attempts"])
        self.max_attempts_limit = int(max_attempts_limit if max_attempts_limit is not None else QUEUE_SETTINGS["max_attempts_limit"])
        self.per_job_estimate_seconds = float(
            per_job_estimate_seconds if per_job_estimate_seconds is not None else QUEUE_SETTINGS["per_job_duration_estimate_seconds"]
        )
        self.reclaim_on_claim = bool(reclaim_on_claim if reclaim_on_claim is not None else QUEUE_SETTINGS["reclaim_on_claim"])
        self.claim_candidates = int(claim_candidates if claim_candidates is not None else QUEUE_SETTINGS["claim_candidates"])

    def _session(self) -> Session:
        return self._session_factory()

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #
    def enqueue_batch(self, platform: str, items: Iterable[Any], max_attempts_per_job: Optional[int] = None) -> str:
        platform_name = (platform or "").strip().lower()
        if not platform_name:
            raise ValueError("platform must not be blank")
        payloads = list(items)
        if not payloads:
            raise ValueError("items must not be empty")
        max_attempts = int(max_attempts_per_job if max_attempts_per_job is not None else self.default_max_attempts)
        if not 1 <= max_attempts <= self.max_attempts_limit:
            raise ValueError(f"max_attempts must be within [1, {self.max_attempts_limit}]")

        now = self._clock()
        batch_id = str(uuid.uuid4())
        with self._session() as session:
            session.add(Batch(id=batch_id, platform=platform_name, total_jobs=len(payloads), created_at=now))
            session.add_all([
                Job(
                    id=str(uuid.uuid4()),
                    batch_id=batch_id,
                    platform=platform_name,
                    payload=payload,
                    status=JobStatus.PENDING,
                    attempts=0,
                    max_attempts=max_attempts,
                    scheduled_at=now,
                    created_at=now,
                    updated_at=now,
                )
                for payload in payloads
            ])
            session.commit()

        logger.info("Batch enqueued", batch_id=batch_id, platform=platform_name, total_jobs=len(payloads))
        self._audit.emit({
            "event": "batch_enqueued",
            "batch_id": batch_id,
            "platform": platform_name,
            "total_jobs": len(payloads),
            "max_attempts": max_attempts,
        })
        return batch_id

    def enqueue_retry(
        self,
        session: Session,
        batch_id: str,
        platform: str,
        payload: Any,
        max_attempts: Optional[int] = None,
        retried_from_entry_id: Optional[str] = None,
    ) -> str:
        """Add one fresh job (attempts 0) to an existing batch.

        Runs inside the caller's session; nothing is committed here.
        """
        platform_name = (platform or "").strip().lower()
        if not platform_name:
            raise ValueError("platform must not be blank")
        attempts_limit = int(max_attempts if max_attempts is not None else self.default_max_attempts)
        if not 1 <= attempts_limit <= self.max_attempts_limit:
            raise ValueError(f"max_attempts must be within [1, {self.max_attempts_limit}]")

        res = session.execute(
            update(Batch)
            .where(Batch.id == batch_id)
            .values(total_jobs=Batch.total_jobs + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise BatchNotFoundError(batch_id)
        now = self._clock()
        job_id = str(uuid.uuid4())
        session.add(Job(
            id=job_id,
            batch_id=batch_id,
            platform=platform_name,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=attempts_limit,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
            retried_from_entry_id=retried_from_entry_id,
        ))
        logger.debug("Retry job staged", batch_id=batch_id, job_id=job_id, retried_from_entry_id=retried_from_entry_id)
        return job_id

    # ------------------------------------------------------------------ #
    # Worker operations
    # ------------------------------------------------------------------ #
    def claim(self, worker_id: str, lease_duration: Optional[float] = None) -> Optional[Job]:
        """Atomically take the oldest eligible pending job, or return None."""
        if self.reclaim_on_claim:
            self.reclaim_expired_leases()
        now = self._clock()
        expires_at = now + timedelta(seconds=lease_duration if lease_duration is not None else self.lease_seconds)

        with self._session() as session:
            for _ in range(MAX_CLAIM_ROUNDS):
                candidates = session.scalars(
                    select(Job.id)
                    .where(Job.status == JobStatus.PENDING, Job.scheduled_at <= now)
                    .order_by(Job.scheduled_at, Job.created_at, Job.id)
                    .limit(self.claim_candidates)
                ).all()
                if not candidates:
                    return None
                for job_id in candidates:
                    result = session.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                        .values(
                            status=JobStatus.IN_PROGRESS,
                            lease_owner=worker_id,
                            lease_expires_at=expires_at,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        session.commit()
                        job = session.get(Job, job_id, populate_existing=True)
                        logger.debug("Job claimed", job_id=job_id, worker_id=worker_id, lease_expires_at=expires_at.isoformat())
                        return job
                    session.rollback()
        return None

    def complete_job(self, job_id: str, worker_id: Optional[str] = None, result: Any = None) -> None:
        now = self._clock()
        conditions = [Job.id == job_id, Job.status == JobStatus.IN_PROGRESS]
        if worker_id is not None:
            conditions.append(Job.lease_owner == worker_id)
        with self._session() as session:
            res = session.execute(
                update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.COMPLETED,
                    lease_owner=None,
                    lease_expires_at=None,
                    completed_at=now,
                    updated_at=now,
                    result=result,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                session.rollback()
                self._raise_not_owned(session, job_id, worker_id)
            session.commit()
        logger.info("Job completed", job_id=job_id, worker_id=worker_id)

    def fail_job(self, job_id: str, raw_error: Any, worker_id: Optional[str] = None) -> FailureOutcome:
        """Record a failed attempt: reschedule with backoff or dead-letter.

        Rescheduling happens only for retryable errors while ``attempts + 1 <
        max_attempts``; the dead-letter entry is written in the same
        transaction as the status change.
        """
        record = self._classify(raw_error)
        now = self._clock()
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.IN_PROGRESS or (worker_id is not None and job.lease_owner != worker_id):
                raise LeaseLostError(job_id, worker_id)

            attempts = job.attempts + 1
            retry = record.retryable and attempts < job.max_attempts
            values: dict[str, Any] = dict(
                attempts=attempts,
                lease_owner=None,
                lease_expires_at=None,
                last_error=record.to_dict(),
                updated_at=now,
            )
            scheduled_at: Optional[datetime] = None
            if retry:
                scheduled_at = now + timedelta(seconds=self._backoff(attempts))
                values.update(status=JobStatus.PENDING, scheduled_at=scheduled_at)
            else:
                values.update(status=JobStatus.DEAD_LETTERED)

            res = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.IN_PROGRESS,
                    Job.lease_owner == job.lease_owner,
                    Job.attempts == job.attempts,
                )
                .values(**values)
            )
            if res.rowcount != 1:
                session.rollback()
                raise LeaseLostError(job_id, worker_id)

            entry_id: Optional[str] = None
            if not retry:
                reason = "non_retryable_error" if not record.retryable else "max_attempts_exhausted"
                entry = DeadLetterEntry.from_job(job, record, now, reason)
                session.add(entry)
                entry_id = entry.id
            session.commit()
            batch_id = job.batch_id
            platform = job.platform

        outcome = FailureOutcome(
            job_id=job_id,
            status=JobStatus.PENDING if retry else JobStatus.DEAD_LETTERED,
            attempts=attempts,
            error=record,
            scheduled_at=scheduled_at,
            dead_letter_entry_id=entry_id,
        )
        if retry:
            logger.info(
                "Job rescheduled",
                job_id=job_id,
                attempts=attempts,
                error_kind=record.kind.value,
                scheduled_at=scheduled_at.isoformat() if scheduled_at else None,
            )
        else:
            logger.warning(
                "Job dead-lettered",
                job_id=job_id,
                batch_id=batch_id,
                platform=platform,
                attempts=attempts,
                error_kind=record.kind.value,
                error_severity=record.severity.value,
                entry_id=entry_id,
            )
            self._audit.emit({
                "event": "job_dead_lettered",
                "job_id": job_id,
                "batch_id": batch_id,
                "platform": platform,
                "attempts": attempts,
                "error_kind": record.kind.value,
                "entry_id": entry_id,
            })
        return outcome

    def defer_job(self, job_id: str, delay_seconds: float, worker_id: Optional[str] = None, reason: str = "temporarily_unavailable") -> datetime:
        """Put a claimed job back to pending without charging an attempt."""
        now = self._clock()
        scheduled_at = now + timedelta(seconds=max(float(delay_seconds), 0.0))
        conditions = [Job.id == job_id, Job.status == JobStatus.IN_PROGRESS]
        if worker_id is not None:
            conditions.append(Job.lease_owner == worker_id)
        with self._session() as session:
            res = session.execute(
                update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.PENDING,
                    lease_owner=None,
                    lease_expires_at=None,
                    scheduled_at=scheduled_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                session.rollback()
                self._raise_not_owned(session, job_id, worker_id)
            session.commit()
        logger.info("Job deferred", job_id=job_id, reason=reason, scheduled_at=scheduled_at.isoformat())
        return scheduled_at

    def reclaim_expired_leases(self) -> int:
        """Return jobs whose lease expired to pending (attempts unchanged)."""
        now = self._clock()
        reclaimed = 0
        with self._session() as session:
            expired = session.execute(
                select(Job.id, Job.lease_owner, Job.attempts, Job.lease_expires_at)
                .where(Job.status == JobStatus.IN_PROGRESS, Job.lease_expires_at < now)
            ).all()
            for row in expired:
                res = session.execute(
                    update(Job)
                    .where(Job.id == row.id, Job.status == JobStatus.IN_PROGRESS, Job.lease_expires_at < now)
                    .values(status=JobStatus.PENDING, lease_owner=None, lease_expires_at=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    reclaimed += 1
                    logger.warning(
                        "Reclaimed job with expired lease",
                        job_id=row.id,
                        lease_owner=row.lease_owner,
                        attempts=row.attempts,
                        lease_expired_at=row.lease_expires_at.isoformat() if row.lease_expires_at else None,
                    )
            session.commit()
        return reclaimed

    # ------------------------------------------------------------------ #
    # Batch operations
    # ------------------------------------------------------------------ #
    def cancel_batch(self, batch_id: str) -> int:
        now = self._clock()
        with self._session() as session:
            res = session.execute(
                update(Job)
                .where(Job.batch_id == batch_id, Job.status == JobStatus.PENDING)
                .values(status=JobStatus.CANCELLED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            cancelled = int(res.rowcount or 0)
        logger.info("Batch cancelled", batch_id=batch_id, cancelled_jobs=cancelled)
        self._audit.emit({"event": "batch_cancelled", "batch_id": batch_id, "cancelled_jobs": cancelled})
        return cancelled

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._session() as session:
            return session.get(Batch, batch_id)

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        with self._session() as session:
            batch = session.get(Batch, batch_id)
            if batch is None:
                return BatchStatus(batch_id=batch_id)
            counts: dict[JobStatus, int] = {
                status: int(count)
                for status, count in session.execute(
                    select(Job.status, func.count()).where(Job.batch_id == batch_id).group_by(Job.status)
                ).all()
            }
            dead_errors = session.scalars(
                select(Job.last_error).where(Job.batch_id == batch_id, Job.status == JobStatus.DEAD_LETTERED)
            ).all()

        total = int(batch.total_jobs)
        pending = counts.get(JobStatus.PENDING, 0) + counts.get(JobStatus.FAILED_RETRYABLE, 0)
        in_progress = counts.get(JobStatus.IN_PROGRESS, 0)
        completed = counts.get(JobStatus.COMPLETED, 0)
        failed = counts.get(JobStatus.DEAD_LETTERED, 0)
        cancelled = counts.get(JobStatus.CANCELLED, 0)
        remaining = pending + in_progress
        summary = Counter((err or {}).get("kind", "unknown") for err in dead_errors)

        return BatchStatus(
            batch_id=batch_id,
            total=total,
            pending=pending,
            in_progress=in_progress,
            completed=completed,
            failed=failed,
            cancelled=cancelled,
            progress_percent=int(round((completed + failed) / total * 100)) if total else 0,
            estimated_remaining_seconds=int(math.ceil(remaining * self.per_job_estimate_seconds)),
            state=_derive_state(total, pending, in_progress, completed, failed, cancelled),
            is_complete=total > 0 and remaining == 0,
            success_rate=round(completed / total * 100, 2) if total else 0.0,
            failure_rate=round(failed / total * 100, 2) if total else 0.0,
            error_summary=dict(summary),
            platform=batch.platform,
            created_at=batch.created_at,
        )

    def list_batch_jobs(self, batch_id: str) -> list[Job]:
        with self._session() as session:
            return list(session.scalars(
                select(Job).where(Job.batch_id == batch_id).order_by(Job.created_at, Job.id)
            ).all())

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    # ------------------------------------------------------------------ #
    def _raise_not_owned(self, session: Session, job_id: str, worker_id: Optional[str]) -> None:
        if session.get(Job, job_id) is None:
            raise JobNotFoundError(job_id)
        raise LeaseLostError(job_id, worker_id)


__all__ = [
    "JobQueue",
    "BatchStatus",
    "FailureOutcome",
    "JobNotFoundError",
    "BatchNotFoundError",
    "LeaseLostError",
]
