"""Dead-letter store: quarantine inspection, recovery and cleanup.

Entries are written by ``JobQueue.fail_job`` in the same transaction that
marks the job dead-lettered. Recovery never deletes the entry; it enqueues a
fresh job (attempts 0) into the original batch and records the retry on the
entry. Only ``cleanup_old_jobs`` removes rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from marketsync.config import DEAD_LETTER_SETTINGS
from marketsync.models.db.dead_letters import DeadLetterEntry
from marketsync.models.db.enums import ErrorKind
from marketsync.models.db.jobs import Job
from marketsync.services.job_queue import JobQueue
from marketsync.utils.audit import AuditSink, LoggingAuditSink
from marketsync.utils.logger import get_logger
from marketsync.utils.time import Clock, utc_now

logger = get_logger(__name__)


class DeadLetterEntryNotFoundError(LookupError):
    pass


class InvalidCleanupWindowError(ValueError):
    pass


@dataclass
class BulkRetryCriteria:
    platform: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    batch_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class BulkRetryResult:
    matched: int = 0
    retried: int = 0
    job_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


@dataclass
class DeadLetterStats:
    total: int
    by_platform: dict[str, int]
    by_error_kind: dict[str, int]
    retried_entries: int
    total_retries: int
    recent: list[DeadLetterEntry]


class DeadLetterStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        job_queue: JobQueue,
        *,
        clock: Clock = utc_now,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._session_factory = session_factory
        self._job_queue = job_queue
        self._clock = clock
        self._audit: AuditSink = audit if audit is not None else LoggingAuditSink()
        self.bulk_default_limit = int(DEAD_LETTER_SETTINGS["bulk_retry_default_limit"])
        self.bulk_max_limit = int(DEAD_LETTER_SETTINGS["bulk_retry_max_limit"])
        self.cleanup_min_days = int(DEAD_LETTER_SETTINGS["cleanup_min_days"])
        self.cleanup_max_days = int(DEAD_LETTER_SETTINGS["cleanup_max_days"])
        self.recent_entries = int(DEAD_LETTER_SETTINGS["recent_entries"])

    def _filtered(self, stmt, *, platform: Optional[str], error_kind: Optional[ErrorKind], batch_id: Optional[str]):
        if platform:
            stmt = stmt.where(DeadLetterEntry.platform == platform.strip().lower())
        if error_kind is not None:
            stmt = stmt.where(DeadLetterEntry.error_kind == ErrorKind(error_kind))
        if batch_id:
            stmt = stmt.where(DeadLetterEntry.batch_id == batch_id)
        return stmt

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def list_entries(
        self,
        platform: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        batch_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[DeadLetterEntry]:
        stmt = self._filtered(select(DeadLetterEntry), platform=platform, error_kind=error_kind, batch_id=batch_id)
        stmt = stmt.order_by(DeadLetterEntry.quarantined_at.desc()).limit(max(1, int(limit)))
        with self._session_factory() as session:
            return list(session.scalars(stmt).all())

    def get_entry(self, entry_id: str) -> DeadLetterEntry:
        with self._session_factory() as session:
            entry = session.get(DeadLetterEntry, entry_id)
        if entry is None:
            raise DeadLetterEntryNotFoundError(entry_id)
        return entry

    def get_stats(self) -> DeadLetterStats:
        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(DeadLetterEntry)) or 0
            by_platform = {
                platform: int(count)
                for platform, count in session.execute(
                    select(DeadLetterEntry.platform, func.count()).group_by(DeadLetterEntry.platform)
                ).all()
            }
            by_kind = {
                kind.value: int(count)
                for kind, count in session.execute(
                    select(DeadLetterEntry.error_kind, func.count()).group_by(DeadLetterEntry.error_kind)
                ).all()
            }
            retried_entries = session.scalar(
                select(func.count()).select_from(DeadLetterEntry).where(DeadLetterEntry.retry_count > 0)
            ) or 0
            total_retries = session.scalar(select(func.coalesce(func.sum(DeadLetterEntry.retry_count), 0))) or 0
            recent = list(session.scalars(
                select(DeadLetterEntry).order_by(DeadLetterEntry.quarantined_at.desc()).limit(self.recent_entries)
            ).all())
        return DeadLetterStats(
            total=int(total),
            by_platform=by_platform,
            by_error_kind=by_kind,
            retried_entries=int(retried_entries),
            total_retries=int(total_retries),
            recent=recent,
        )

    # ------------------------------------------------------------------ #
    # Recovery
    # ------------------------------------------------------------------ #
    def _requeue(self, session: Session, entry: DeadLetterEntry, now: datetime) -> str:
        original = session.get(Job, entry.original_job_id)
        job_id = self._job_queue.enqueue_retry(
            session,
            entry.batch_id,
            entry.platform,
            entry.payload,
            max_attempts=original.max_attempts if original is not None else None,
            retried_from_entry_id=entry.id,
        )
        entry.retry_count = (entry.retry_count or 0) + 1
        entry.last_retried_at = now
        entry.last_retry_job_id = job_id
        return job_id

    def retry_entry(self, entry_id: str) -> str:
        now = self._clock()
        with self._session_factory() as session:
            entry = session.get(DeadLetterEntry, entry_id)
            if entry is None:
                raise DeadLetterEntryNotFoundError(entry_id)
            job_id = self._requeue(session, entry, now)
            session.commit()
        logger.info("Dead-letter entry re-enqueued", entry_id=entry_id, job_id=job_id)
        self._audit.emit({"event": "dead_letter_retried", "entry_id": entry_id, "job_id": job_id})
        return job_id

    def bulk_retry(self, criteria: Optional[BulkRetryCriteria] = None) -> BulkRetryResult:
        """Re-enqueue matching entries, oldest first, one transaction per entry."""
        criteria = criteria or BulkRetryCriteria()
        limit = self.bulk_default_limit if criteria.limit is None else int(criteria.limit)
        if limit < 1:
            raise ValueError("limit must be >= 1")
        limit = min(limit, self.bulk_max_limit)

        stmt = self._filtered(
            select(DeadLetterEntry.id),
            platform=criteria.platform,
            error_kind=criteria.error_kind,
            batch_id=criteria.batch_id,
        ).order_by(DeadLetterEntry.quarantined_at, DeadLetterEntry.id).limit(limit)
        with self._session_factory() as session:
            entry_ids = list(session.scalars(stmt).all())

        result = BulkRetryResult(matched=len(entry_ids))
        for entry_id in entry_ids:
            now = self._clock()
            with self._session_factory() as session:
                try:
                    entry = session.get(DeadLetterEntry, entry_id)
                    if entry is None:
                        raise DeadLetterEntryNotFoundError(entry_id)
                    job_id = self._requeue(session, entry, now)
                    session.commit()
                except (SQLAlchemyError, LookupError, ValueError) as e:
                    session.rollback()
                    logger.error("Dead-letter retry failed", entry_id=entry_id, error=str(e))
                    result.errors.append({"entry_id": entry_id, "error": str(e) or type(e).__name__})
                    continue
            result.retried += 1
            result.job_ids.append(job_id)

        logger.info("Dead-letter bulk retry finished", matched=result.matched, retried=result.retried, failed=result.failed)
        self._audit.emit({
            "event": "dead_letter_bulk_retry",
            "platform": criteria.platform,
            "error_kind": ErrorKind(criteria.error_kind).value if criteria.error_kind is not None else None,
            "batch_id": criteria.batch_id,
            "matched": result.matched,
            "retried": result.retried,
            "failed": result.failed,
        })
        return result

    # ------------------------------------------------------------------ #
    # Cleanup
    # ------------------------------------------------------------------ #
    def cleanup_old_jobs(self, older_than_days: Any) -> int:
        """Delete entries quarantined more than ``older_than_days`` ago."""
        if isinstance(older_than_days, bool) or not isinstance(older_than_days, int):
            raise InvalidCleanupWindowError("older_than_days must be an integer")
        if not self.cleanup_min_days <= older_than_days <= self.cleanup_max_days:
            raise InvalidCleanupWindowError(
                f"older_than_days must be within [{self.cleanup_min_days}, {self.cleanup_max_days}]"
            )
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._session_factory() as session:
            res = session.execute(
                delete(DeadLetterEntry)
                .where(DeadLetterEntry.quarantined_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            deleted = int(res.rowcount or 0)
        logger.info("Dead-letter cleanup", older_than_days=older_than_days, deleted=deleted)
        self._audit.emit({
            "event": "dead_letter_cleanup",
            "older_than_days": older_than_days,
            "cutoff": cutoff.isoformat(),
            "deleted": deleted,
        })
        return deleted


__all__ = [
    "DeadLetterStore",
    "DeadLetterStats",
    "BulkRetryCriteria",
    "BulkRetryResult",
    "DeadLetterEntryNotFoundError",
    "InvalidCleanupWindowError",
]
