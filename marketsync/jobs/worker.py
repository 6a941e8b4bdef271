"""Background worker pool for sync jobs.

N asyncio worker coroutines run on one event loop inside a daemon thread.
Each worker claims a job, pushes its payload through

    RetryExecutor( CircuitBreaker( wait_for(adapter.perform_request) ) )

and records the outcome on the queue. Store calls run in ``asyncio.to_thread``
and backoff waits are ``asyncio.sleep``, so one job never blocks the others.
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Optional

from marketsync.config import QUEUE_SETTINGS
from marketsync.integrations.platforms import PlatformAdapterRegistry
from marketsync.models.db.jobs import Job
from marketsync.services.job_queue import JobQueue, LeaseLostError
from marketsync.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from marketsync.utils.logger import get_logger, log_performance
from marketsync.utils.observability import elapsed_ms
from marketsync.utils.retry import RetryExecutor, RetryOptions

logger = get_logger(__name__)


class SyncWorkerPool:
    def __init__(
        self,
        job_queue: JobQueue,
        breaker: CircuitBreaker,
        adapters: PlatformAdapterRegistry,
        *,
        retry_executor: Optional[RetryExecutor] = None,
        retry_options: Optional[RetryOptions] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        attempt_timeout: Optional[float] = None,
        worker_prefix: str = "worker",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.job_queue = job_queue
        self.breaker = breaker
        self.adapters = adapters
        self.retry_executor = retry_executor or RetryExecutor()
        self.retry_options = retry_options or RetryOptions.from_config()
        self.concurrency = int(concurrency if concurrency is not None else QUEUE_SETTINGS["worker_concurrency"])
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.poll_interval = float(poll_interval if poll_interval is not None else QUEUE_SETTINGS["poll_interval_seconds"])
        self.attempt_timeout = float(attempt_timeout if attempt_timeout is not None else QUEUE_SETTINGS["attempt_timeout_seconds"])
        self.worker_prefix = worker_prefix
        self._sleep = sleep
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.outcomes: Counter[str] = Counter()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="sync-worker-pool", daemon=True)
        self._thread.start()
        logger.info("Sync worker pool started", concurrency=self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        logger.info("Sync worker pool stop requested")
        if self._thread is not None:
            self._thread.join(timeout=timeout if timeout is not None else self.poll_interval + self.attempt_timeout)

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "concurrency": self.concurrency,
            "outcomes": dict(self.outcomes),
        }

    def _run_loop(self) -> None:
        asyncio.run(self._main())

    async def _main(self) -> None:
        workers = [
            asyncio.create_task(self._worker(f"{self.worker_prefix}-{i}"))
            for i in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            await self.adapters.close()

    async def _worker(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once(worker_id)
            except Exception as e:
                logger.error("Worker loop error", worker_id=worker_id, error=str(e), exc_info=True)
                processed = False
            if not processed:
                await self._sleep(self.poll_interval)

    # ------------------------------------------------------------------ #
    # Processing
    # ------------------------------------------------------------------ #
    async def run_once(self, worker_id: str) -> bool:
        """Claim and process one job; False when nothing was eligible."""
        job = await asyncio.to_thread(self.job_queue.claim, worker_id)
        if job is None:
            return False
        await self.process_job(job, worker_id)
        return True

    async def process_job(self, job: Job, worker_id: str) -> str:
        start = time.perf_counter()
        try:
            outcome = await self._attempt(job, worker_id)
        except LeaseLostError:
            logger.warning("Lease lost before outcome was recorded", job_id=job.id, worker_id=worker_id)
            outcome = "lease_lost"
        self.outcomes[outcome] += 1
        log_performance(
            "sync_job",
            elapsed_ms(start),
            {"job_id": job.id, "platform": job.platform, "outcome": outcome, "worker_id": worker_id},
        )
        return outcome

    async def _attempt(self, job: Job, worker_id: str) -> str:
        async def call_platform() -> Any:
            adapter = self.adapters.get(job.platform)
            return await asyncio.wait_for(adapter.perform_request(job.platform, job.payload), timeout=self.attempt_timeout)

        async def guarded() -> Any:
            return await self.breaker.execute(job.platform, call_platform)

        try:
            result = await self.retry_executor.execute(guarded, self.retry_options, job_id=job.id, platform=job.platform)
        except CircuitOpenError as e:
            await asyncio.to_thread(self.job_queue.defer_job, job.id, e.retry_after_seconds, worker_id, "circuit_open")
            return "deferred"
        except Exception as exc:
            failure = await asyncio.to_thread(self.job_queue.fail_job, job.id, exc, worker_id)
            return failure.status.value
        await asyncio.to_thread(self.job_queue.complete_job, job.id, worker_id, result)
        return "completed"


__all__ = ["SyncWorkerPool"]
