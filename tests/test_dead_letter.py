import pytest
from sqlalchemy import delete

from marketsync.models.db.batches import Batch
from marketsync.models.db.enums import ErrorKind, JobStatus
from marketsync.services.dead_letter import (
    BulkRetryCriteria,
    DeadLetterEntryNotFoundError,
    InvalidCleanupWindowError,
)

NETWORK = {"code": "ECONNRESET", "message": "connection reset by peer"}


def test_retry_requeues_into_the_original_batch(job_queue, dead_letters, dead_letter_job, audit):
    batch_id, job_id, entry_id = dead_letter_job(payload={"sku": "A", "price": -1})

    new_job_id = dead_letters.retry_entry(entry_id)
    assert new_job_id != job_id

    new_job = job_queue.get_job(new_job_id)
    assert new_job.batch_id == batch_id
    assert new_job.status == JobStatus.PENDING
    assert new_job.attempts == 0
    assert new_job.max_attempts == 1
    assert new_job.payload == {"sku": "A", "price": -1}
    assert new_job.retried_from_entry_id == entry_id

    # The quarantined job and its entry are kept
    assert job_queue.get_job(job_id).status == JobStatus.DEAD_LETTERED
    entry = dead_letters.get_entry(entry_id)
    assert entry.retry_count == 1
    assert entry.last_retry_job_id == new_job_id

    status = job_queue.get_batch_status(batch_id)
    assert status.total == 2
    assert (status.failed, status.pending) == (1, 1)
    assert status.pending + status.in_progress + status.completed + status.failed + status.cancelled == status.total
    assert audit.of_type("dead_letter_retried")[0]["job_id"] == new_job_id


def test_retried_job_can_complete(job_queue, dead_letters, dead_letter_job):
    batch_id, _, entry_id = dead_letter_job()
    new_job_id = dead_letters.retry_entry(entry_id)
    job = job_queue.claim("w2")
    assert job.id == new_job_id
    job_queue.complete_job(job.id, "w2")
    status = job_queue.get_batch_status(batch_id)
    assert (status.completed, status.failed) == (1, 1)
    assert status.is_complete


def test_rate_limited_job_round_trip(job_queue, dead_letters, clock):
    batch_id = job_queue.enqueue_batch("shopee", [{"sku": "A"}])
    throttled = {"status_code": 429, "message": "too many requests"}
    for _ in range(3):
        job = job_queue.claim("w1")
        assert job is not None
        outcome = job_queue.fail_job(job.id, throttled, "w1")
        clock.advance(60)
    assert outcome.status == JobStatus.DEAD_LETTERED
    assert job_queue.get_job(job.id).attempts == 3

    entry = dead_letters.list_entries(platform="shopee")[0]
    assert entry.error_kind == ErrorKind.RATE_LIMITED
    assert entry.failure_reason == "max_attempts_exhausted"

    result = dead_letters.bulk_retry(BulkRetryCriteria(platform="shopee"))
    assert (result.matched, result.retried, result.failed) == (1, 1, 0)
    new_job = job_queue.get_job(result.job_ids[0])
    assert new_job.attempts == 0
    assert new_job.status == JobStatus.PENDING
    assert new_job.batch_id == batch_id

    kept = dead_letters.get_entry(entry.id)
    assert kept.retry_count == 1
    assert kept.last_retry_job_id == new_job.id
    assert dead_letters.get_stats().total == 1


def test_retry_unknown_entry(dead_letters):
    with pytest.raises(DeadLetterEntryNotFoundError):
        dead_letters.retry_entry("missing")
    with pytest.raises(DeadLetterEntryNotFoundError):
        dead_letters.get_entry("missing")


def test_list_entries_filters(dead_letters, dead_letter_job, clock):
    dead_letter_job("shopee")
    clock.advance(1)
    dead_letter_job("tiktok", error=NETWORK)
    clock.advance(1)
    batch_id, _, _ = dead_letter_job("shopee", error=NETWORK)

    assert len(dead_letters.list_entries()) == 3
    assert {e.platform for e in dead_letters.list_entries(platform="TikTok")} == {"tiktok"}
    network = dead_letters.list_entries(error_kind=ErrorKind.NETWORK)
    assert len(network) == 2
    assert all(e.failure_reason == "max_attempts_exhausted" for e in network)
    assert [e.batch_id for e in dead_letters.list_entries(batch_id=batch_id)] == [batch_id]
    newest_first = dead_letters.list_entries(limit=2)
    assert [e.batch_id for e in newest_first][0] == batch_id
    assert len(newest_first) == 2


def test_bulk_retry_oldest_first_with_filters(dead_letters, dead_letter_job, clock):
    oldest = dead_letter_job("shopee")[2]
    clock.advance(1)
    middle = dead_letter_job("shopee")[2]
    clock.advance(1)
    dead_letter_job("tiktok")
    clock.advance(1)
    newest = dead_letter_job("shopee")[2]

    result = dead_letters.bulk_retry(BulkRetryCriteria(platform="shopee", limit=2))
    assert (result.matched, result.retried, result.failed) == (2, 2, 0)
    assert len(result.job_ids) == 2
    assert dead_letters.get_entry(oldest).retry_count == 1
    assert dead_letters.get_entry(middle).retry_count == 1
    assert dead_letters.get_entry(newest).retry_count == 0


def test_bulk_retry_limit_is_capped(dead_letters, dead_letter_job):
    for _ in range(3):
        dead_letter_job()
    dead_letters.bulk_max_limit = 2
    result = dead_letters.bulk_retry(BulkRetryCriteria(limit=50))
    assert result.matched == 2


def test_bulk_retry_rejects_non_positive_limit(dead_letters):
    with pytest.raises(ValueError):
        dead_letters.bulk_retry(BulkRetryCriteria(limit=0))


def test_bulk_retry_reports_per_entry_errors(dead_letters, dead_letter_job, session_factory, clock):
    orphan_batch, _, orphan_entry = dead_letter_job()
    clock.advance(1)
    ok_entry = dead_letter_job()[2]
    with session_factory() as session:
        session.execute(delete(Batch).where(Batch.id == orphan_batch))
        session.commit()

    result = dead_letters.bulk_retry()
    assert (result.matched, result.retried, result.failed) == (2, 1, 1)
    assert result.errors[0]["entry_id"] == orphan_entry
    assert dead_letters.get_entry(orphan_entry).retry_count == 0
    assert dead_letters.get_entry(ok_entry).retry_count == 1


def test_cleanup_removes_only_entries_older_than_window(dead_letters, dead_letter_job, clock, audit):
    old_entry = dead_letter_job()[2]
    clock.advance(days=2)
    recent_entry = dead_letter_job()[2]
    clock.advance(days=29)  # old entry is now 31 days old, recent one 29

    assert dead_letters.cleanup_old_jobs(30) == 1
    with pytest.raises(DeadLetterEntryNotFoundError):
        dead_letters.get_entry(old_entry)
    assert dead_letters.get_entry(recent_entry) is not None
    assert audit.of_type("dead_letter_cleanup")[0]["deleted"] == 1


@pytest.mark.parametrize("days", [0, -1, 366, 400, "30", 30.5, True, None])
def test_cleanup_rejects_invalid_window(dead_letters, dead_letter_job, days):
    dead_letter_job()
    with pytest.raises(InvalidCleanupWindowError):
        dead_letters.cleanup_old_jobs(days)
    assert dead_letters.get_stats().total == 1


@pytest.mark.parametrize("days", [1, 365])
def test_cleanup_accepts_window_bounds(dead_letters, days):
    assert dead_letters.cleanup_old_jobs(days) == 0


def test_stats(dead_letters, dead_letter_job, clock):
    first = dead_letter_job("shopee")[2]
    clock.advance(1)
    dead_letter_job("shopee", error=NETWORK)
    clock.advance(1)
    last = dead_letter_job("tiktok")[2]
    dead_letters.retry_entry(first)
    dead_letters.retry_entry(first)

    stats = dead_letters.get_stats()
    assert stats.total == 3
    assert stats.by_platform == {"shopee": 2, "tiktok": 1}
    assert stats.by_error_kind == {"validation": 2, "network": 1}
    assert stats.retried_entries == 1
    assert stats.total_retries == 2
    assert stats.recent[0].id == last


def test_empty_stats(dead_letters):
    stats = dead_letters.get_stats()
    assert stats.total == 0
    assert stats.by_platform == {}
    assert stats.total_retries == 0
    assert stats.recent == []
