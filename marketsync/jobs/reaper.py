"""Background lease reaper.

Periodically returns jobs whose lease expired (crashed or stalled workers)
to pending. The interval must stay below the lease duration so an orphaned
job waits at most ``lease + interval`` before it is claimable again.
"""
from __future__ import annotations

import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from marketsync.config import QUEUE_SETTINGS
from marketsync.services.job_queue import JobQueue
from marketsync.utils.logger import get_logger

logger = get_logger(__name__)


class LeaseReaper:
    def __init__(self, job_queue: JobQueue, *, interval_seconds: Optional[float] = None):
        self.job_queue = job_queue
        self.interval_seconds = float(interval_seconds if interval_seconds is not None else QUEUE_SETTINGS["reaper_interval_seconds"])
        if self.interval_seconds <= 0 or self.interval_seconds >= job_queue.lease_seconds:
            raise ValueError("reaper interval must be positive and shorter than the lease duration")
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.total_reclaimed = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="lease-reaper", daemon=True)
        self._thread.start()
        logger.info("Lease reaper started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info("Lease reaper stopped", total_reclaimed=self.total_reclaimed)

    def run_once(self) -> int:
        reclaimed = self.job_queue.reclaim_expired_leases()
        self.total_reclaimed += reclaimed
        if reclaimed:
            logger.warning("Lease reaper reclaimed jobs", reclaimed=reclaimed)
        return reclaimed

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except SQLAlchemyError as e:
                logger.error("Lease reaper pass failed", error=str(e), exc_info=True)


__all__ = ["LeaseReaper"]
