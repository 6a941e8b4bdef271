"""
Mock marketplace adapter.
Simulates latency and occasional platform failures so the queue can be run
end to end without marketplace credentials.
"""
import asyncio
import random
import uuid
from typing import Any, Dict, Optional

from marketsync.config import MOCK_FAILURE_RATE, INTEGRATIONS_RANDOM_SEED
from marketsync.utils.logger import get_logger
from .base import PlatformAdapter, PlatformRequestError

logger = get_logger(__name__)

# (status_code, error_code, message, retry_after)
SIMULATED_FAILURES: list[tuple[int, str, str, Optional[float]]] = [
    (429, "RATE_LIMITED", "Too many requests", 60.0),
    (503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable", None),
    (504, "TIMEOUT", "Upstream request timed out", None),
    (500, "SYSTEM_ERROR", "Internal server error", None),
]


class MockMarketplaceAdapter(PlatformAdapter):
    """Accepts any payload; a ``simulate_error`` key in a dict payload forces a failure.

    ``simulate_error`` may be an error code ("VALIDATION_ERROR") or an HTTP
    status (409).
    """

    def __init__(
        self,
        *,
        failure_rate: Optional[float] = None,
        latency_range: tuple[float, float] = (0.05, 0.3),
        seed: Optional[int] = None,
    ) -> None:
        self.failure_rate = MOCK_FAILURE_RATE if failure_rate is None else failure_rate
        self.latency_range = latency_range
        self._rng = random.Random(seed if seed is not None else INTEGRATIONS_RANDOM_SEED)
        self.calls = 0

    async def perform_request(self, platform: str, payload: Any) -> Dict[str, Any]:
        self.calls += 1
        low, high = self.latency_range
        if high > 0:
            await asyncio.sleep(self._rng.uniform(low, high))

        forced = payload.get("simulate_error") if isinstance(payload, dict) else None
        if forced is not None:
            if isinstance(forced, int):
                raise PlatformRequestError(f"Simulated HTTP {forced}", status_code=forced, platform=platform)
            raise PlatformRequestError(f"Simulated {forced}", error_code=str(forced), platform=platform)

        if self._rng.random() < self.failure_rate:
            status, code, message, retry_after = self._rng.choice(SIMULATED_FAILURES)
            logger.info("Simulated platform failure", platform=platform, status_code=status, error_code=code)
            raise PlatformRequestError(message, status_code=status, error_code=code, retry_after=retry_after, platform=platform)

        external_id = f"{platform}-{uuid.UUID(int=self._rng.getrandbits(128)).hex[:12]}"
        return {"platform": platform, "external_id": external_id, "status": "synced"}
