import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'marketsync' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from marketsync.main import app  # type: ignore
from marketsync.database import Base  # type: ignore
from marketsync.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: all model modules must be imported before Base.metadata.create_all(),
otherwise relationship targets might not exist yet.
"""
from marketsync.models.db import Batch, Job, DeadLetterEntry  # noqa: F401
from marketsync.models.db.enums import JobStatus
from marketsync.services.dead_letter import DeadLetterStore
from marketsync.services.job_queue import JobQueue
from marketsync.services.queue_stats import QueueStatsService
from marketsync.services.sync_service import SyncService
from marketsync.utils.backoff import compute_backoff_seconds
from marketsync.utils.circuit_breaker import CircuitBreaker
from marketsync.utils.circuit_store import InMemoryCircuitStore


class FakeClock:
    """Controllable UTC clock; ``advance`` moves time forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class MemoryAuditSink:
    def __init__(self):
        self.events: list[dict] = []

    def emit(self, event: dict) -> None:
        self.events.append(dict(event))

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e.get("event") == event_type]


def fixed_backoff(attempt: int) -> float:
    """Job reschedule delay without jitter (2s, 4s, 8s ...)."""
    return compute_backoff_seconds(attempt, base=2, factor=2, max_seconds=300, jitter_pct=0.0)


# File-based SQLite per test: worker threads and the test thread need separate connections
@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'marketsync_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def audit():
    return MemoryAuditSink()


@pytest.fixture()
def job_queue(session_factory, clock, audit):
    return JobQueue(
        session_factory,
        clock=clock,
        audit=audit,
        backoff=fixed_backoff,
        lease_seconds=300,
        default_max_attempts=3,
        per_job_estimate_seconds=30,
        reclaim_on_claim=False,
    )


@pytest.fixture()
def dead_letters(session_factory, job_queue, clock, audit):
    return DeadLetterStore(session_factory, job_queue, clock=clock, audit=audit)


@pytest.fixture()
def queue_stats(session_factory, job_queue, clock):
    return QueueStatsService(session_factory, job_queue, clock=clock)


@pytest.fixture()
def breaker(clock, audit):
    return CircuitBreaker(
        InMemoryCircuitStore(),
        clock=clock,
        audit=audit,
        failure_threshold=2,
        recovery_timeout_seconds=30,
        per_key={},
    )


@pytest.fixture()
def sync_service(job_queue, dead_letters, queue_stats, breaker):
    return SyncService(job_queue, dead_letters, queue_stats, breaker, supported_platforms=["shopee", "tiktok"])


@pytest.fixture()
def client(sync_service, session_factory):
    def _get_db():
        with session_factory() as db:
            yield db

    app.dependency_overrides[deps.get_sync_service] = lambda: sync_service
    app.dependency_overrides[deps.get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---------- Helpers ----------

@pytest.fixture()
def dead_letter_job(job_queue):
    """Enqueue a single-item batch and drive it to the dead-letter store."""
    def _create(platform: str = "shopee", payload=None, error=None, worker_id: str = "w-dl"):
        batch_id = job_queue.enqueue_batch(platform, [payload if payload is not None else {"sku": "X"}], 1)
        job = job_queue.claim(worker_id)
        assert job is not None and job.batch_id == batch_id
        outcome = job_queue.fail_job(job.id, error or {"code": "VALIDATION_ERROR", "message": "bad sku"}, worker_id)
        assert outcome.status == JobStatus.DEAD_LETTERED
        return batch_id, job.id, outcome.dead_letter_entry_id
    return _create


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture()
def captured_logs():
    """Records emitted under the 'marketsync' logger (it does not propagate to root)."""
    handler = _ListHandler()
    target = logging.getLogger("marketsync")
    previous_level = target.level
    target.addHandler(handler)
    target.setLevel(logging.DEBUG)
    try:
        yield handler.records
    finally:
        target.removeHandler(handler)
        target.setLevel(previous_level)
