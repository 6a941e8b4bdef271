"""Async retry executor with exponential backoff.

Wraps a single platform call. Only errors the classifier marks retryable are
retried. ``CircuitOpenError`` is never retried: when the circuit rejects the
first call it propagates as-is (the caller defers the job), and when it opens
after a real failure that failure is re-raised instead.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from marketsync.config import RETRY_POLICY
from marketsync.services.error_classifier import ErrorRecord, classify
from marketsync.utils.backoff import compute_backoff_seconds
from marketsync.utils.circuit_breaker import CircuitOpenError
from marketsync.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    @classmethod
    def from_config(cls) -> "RetryOptions":
        return cls(
            max_attempts=int(RETRY_POLICY["max_attempts"]),
            base_delay=float(RETRY_POLICY["base_delay_seconds"]),
            max_delay=float(RETRY_POLICY["max_delay_seconds"]),
            jitter=float(RETRY_POLICY["jitter_pct"]),
        )


class RetryExecutor:
    def __init__(
        self,
        *,
        classifier: Callable[[Any], ErrorRecord] = classify,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._classify = classifier
        self._sleep = sleep
        self._rng = rng

    def delay_for(self, attempt: int, options: RetryOptions) -> float:
        """Delay after failed ``attempt`` (1-based): base * 2^(attempt-1), capped, jittered."""
        return compute_backoff_seconds(
            attempt,
            base=options.base_delay,
            factor=2,
            max_seconds=options.max_delay,
            jitter_pct=options.jitter,
            rng=self._rng,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
        **log_context: Any,
    ) -> T:
        opts = options or RetryOptions.from_config()
        attempt = 1
        last_exc: Optional[BaseException] = None
        while True:
            try:
                return await operation()
            except CircuitOpenError as e:
                # A circuit that opened mid-loop must not hide the failure that opened it
                if last_exc is not None:
                    raise last_exc from e
                raise
            except Exception as exc:
                last_exc = exc
                record = self._classify(exc)
                if not record.retryable or attempt >= opts.max_attempts:
                    raise
                delay = self.delay_for(attempt, opts)
                logger.info(
                    "Retrying after retryable error",
                    attempt=attempt,
                    max_attempts=opts.max_attempts,
                    delay_seconds=round(delay, 3),
                    error_kind=record.kind.value,
                    **log_context,
                )
                await self._sleep(delay)
                attempt += 1


__all__ = ["RetryExecutor", "RetryOptions"]
