"""Operational facade used by the HTTP layer.

Bundles the job queue, dead-letter store, statistics and circuit breaker
behind the operations exposed to callers. Components are constructed
explicitly (``build_sync_service``) so tests can inject a session factory,
clock and audit sink.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy.orm import sessionmaker

from marketsync.config import SUPPORTED_PLATFORMS
from marketsync.integrations.base import UnsupportedPlatformError
from marketsync.models.db.dead_letters import DeadLetterEntry
from marketsync.models.db.enums import ErrorKind
from marketsync.models.db.jobs import Job
from marketsync.services.dead_letter import (
    BulkRetryCriteria,
    BulkRetryResult,
    DeadLetterStats,
    DeadLetterStore,
)
from marketsync.services.job_queue import BatchNotFoundError, BatchStatus, JobNotFoundError, JobQueue
from marketsync.services.queue_stats import QueueStats, QueueStatsService
from marketsync.utils.audit import AuditSink, LoggingAuditSink
from marketsync.utils.circuit_breaker import CircuitBreaker
from marketsync.utils.circuit_store import CircuitStateStore, create_circuit_store
from marketsync.utils.time import Clock, utc_now


class SyncService:
    def __init__(
        self,
        job_queue: JobQueue,
        dead_letters: DeadLetterStore,
        stats: QueueStatsService,
        breaker: CircuitBreaker,
        *,
        supported_platforms: Optional[list[str]] = None,
    ) -> None:
        self.job_queue = job_queue
        self.dead_letters = dead_letters
        self.stats = stats
        self.breaker = breaker
        self.supported_platforms = [p.lower() for p in (supported_platforms if supported_platforms is not None else SUPPORTED_PLATFORMS)]

    # ---------------------------- batches ---------------------------- #
    def submit_batch(self, platform: str, items: Iterable[Any], max_attempts: Optional[int] = None) -> dict[str, Any]:
        platform_name = (platform or "").strip().lower()
        if platform_name and platform_name not in self.supported_platforms:
            raise UnsupportedPlatformError(platform_name, self.supported_platforms)
        payloads = list(items)
        batch_id = self.job_queue.enqueue_batch(platform_name, payloads, max_attempts)
        return {"batch_id": batch_id, "platform": platform_name, "total_jobs": len(payloads)}

    def _require_batch(self, batch_id: str) -> None:
        if self.job_queue.get_batch(batch_id) is None:
            raise BatchNotFoundError(batch_id)

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        self._require_batch(batch_id)
        return self.stats.get_batch_status(batch_id)

    def cancel_batch(self, batch_id: str) -> int:
        self._require_batch(batch_id)
        return self.job_queue.cancel_batch(batch_id)

    def list_batch_jobs(self, batch_id: str) -> list[Job]:
        self._require_batch(batch_id)
        return self.job_queue.list_batch_jobs(batch_id)

    def get_job(self, job_id: str) -> Job:
        job = self.job_queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ----------------------------- health ---------------------------- #
    def get_queue_stats(self) -> QueueStats:
        return self.stats.get_queue_stats()

    def get_circuit_states(self) -> dict[str, dict[str, object]]:
        return self.breaker.snapshot()

    # -------------------------- dead letter -------------------------- #
    def get_dead_letter_stats(self) -> DeadLetterStats:
        return self.dead_letters.get_stats()

    def list_dead_letters(
        self,
        platform: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        batch_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[DeadLetterEntry]:
        return self.dead_letters.list_entries(platform=platform, error_kind=error_kind, batch_id=batch_id, limit=limit)

    def bulk_retry_dead_letters(self, criteria: Optional[BulkRetryCriteria] = None) -> BulkRetryResult:
        return self.dead_letters.bulk_retry(criteria)

    def retry_dead_letter(self, entry_id: str) -> str:
        return self.dead_letters.retry_entry(entry_id)

    def cleanup_dead_letters(self, older_than_days: int) -> int:
        return self.dead_letters.cleanup_old_jobs(older_than_days)


def build_sync_service(
    session_factory: sessionmaker,
    *,
    clock: Clock = utc_now,
    audit: Optional[AuditSink] = None,
    circuit_store: Optional[CircuitStateStore] = None,
    supported_platforms: Optional[list[str]] = None,
    **queue_options: Any,
) -> SyncService:
    sink = audit if audit is not None else LoggingAuditSink()
    job_queue = JobQueue(session_factory, clock=clock, audit=sink, **queue_options)
    dead_letters = DeadLetterStore(session_factory, job_queue, clock=clock, audit=sink)
    stats = QueueStatsService(session_factory, job_queue, clock=clock)
    breaker = CircuitBreaker(circuit_store if circuit_store is not None else create_circuit_store(), clock=clock, audit=sink)
    return SyncService(job_queue, dead_letters, stats, breaker, supported_platforms=supported_platforms)


__all__ = ["SyncService", "build_sync_service"]
