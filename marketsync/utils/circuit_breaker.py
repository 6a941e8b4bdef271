"""Circuit breaker for platform integrations.

One breaker instance guards every dependency key (usually a platform name).
State lives in a ``CircuitStateStore`` so it can be shared across processes;
each transition is applied under a per-key lock and persisted with a version
compare-and-set.

closed     -> open       after ``failure_threshold`` retryable failures
open       -> half_open  on the first call once ``recovery_timeout`` elapsed
half_open  -> closed     when the single trial call succeeds
half_open  -> open       when the trial fails with a retryable error

Non-retryable failures (validation, permission, conflict) never count: they
say nothing about the health of the dependency.
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from marketsync.config import CIRCUIT_BREAKER
from marketsync.models.db.enums import CircuitStateName
from marketsync.services.error_classifier import ErrorRecord, classify
from marketsync.utils.audit import AuditSink, LoggingAuditSink
from marketsync.utils.circuit_store import CircuitState, CircuitStateStore, InMemoryCircuitStore
from marketsync.utils.logger import get_logger
from marketsync.utils.time import Clock, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

MAX_CAS_ATTEMPTS = 50


class CircuitOpenError(Exception):
    """Raised instead of calling a dependency whose circuit is open."""

    error_code = "CIRCUIT_OPEN"

    def __init__(self, key: str, retry_after_seconds: float, reason: str = "circuit_open") -> None:
        self.key = key
        self.retry_after_seconds = max(float(retry_after_seconds), 0.0)
        self.retry_after = self.retry_after_seconds
        self.reason = reason
        super().__init__(f"Circuit {reason} for '{key}', retry in {self.retry_after_seconds:.1f}s")


class CircuitStateConflictError(RuntimeError):
    pass


@dataclass(frozen=True)
class CircuitConfig:
    failure_threshold: int
    recovery_timeout_seconds: float


@dataclass(frozen=True)
class _Permit:
    key: str
    trial: bool


class CircuitBreaker:
    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        *,
        clock: Clock = utc_now,
        classifier: Callable[[Any], ErrorRecord] = classify,
        audit: Optional[AuditSink] = None,
        failure_threshold: Optional[int] = None,
        recovery_timeout_seconds: Optional[float] = None,
        per_key: Optional[dict[str, dict[str, Any]]] = None,
    ) -> None:
        self._store: CircuitStateStore = store if store is not None else InMemoryCircuitStore()
        self._clock = clock
        self._classify = classifier
        self._audit: AuditSink = audit if audit is not None else LoggingAuditSink()
        self._default = CircuitConfig(
            failure_threshold=int(failure_threshold if failure_threshold is not None else CIRCUIT_BREAKER["failure_threshold"]),  # type: ignore[arg-type]
            recovery_timeout_seconds=float(
                recovery_timeout_seconds if recovery_timeout_seconds is not None else CIRCUIT_BREAKER["recovery_timeout_seconds"]  # type: ignore[arg-type]
            ),
        )
        self._per_key: dict[str, dict[str, Any]] = dict(per_key if per_key is not None else CIRCUIT_BREAKER.get("per_key", {}))  # type: ignore[arg-type]
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> CircuitStateStore:
        return self._store

    def config_for(self, key: str) -> CircuitConfig:
        override = self._per_key.get(key) or {}
        return CircuitConfig(
            failure_threshold=int(override.get("failure_threshold", self._default.failure_threshold)),
            recovery_timeout_seconds=float(override.get("recovery_timeout_seconds", self._default.recovery_timeout_seconds)),
        )

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    # ------------------------------------------------------------------ #
    # State transitions
    # ------------------------------------------------------------------ #
    def _transition(self, key: str, mutate: Callable[[CircuitState], T]) -> T:
        with self._lock_for(key):
            for _ in range(MAX_CAS_ATTEMPTS):
                current = self._store.get(key)
                updated = current.copy()
                outcome = mutate(updated)
                if updated == current:
                    return outcome
                if self._store.compare_and_set(current.version, updated):
                    if updated.state != current.state:
                        self._on_state_change(key, current, updated)
                    return outcome
        raise CircuitStateConflictError(f"Could not persist circuit state for '{key}'")

    def _on_state_change(self, key: str, before: CircuitState, after: CircuitState) -> None:
        fields = dict(
            key=key,
            from_state=before.state.value,
            to_state=after.state.value,
            failure_count=after.failure_count,
        )
        if after.state == CircuitStateName.OPEN:
            logger.warning("Circuit opened", **fields)
        else:
            logger.info("Circuit state changed", **fields)
        self._audit.emit({
            "event": "circuit_state_changed",
            "timestamp": self._clock().isoformat(),
            **fields,
        })

    def _open(self, state: CircuitState) -> None:
        now = self._clock()
        state.state = CircuitStateName.OPEN
        state.opened_at = now
        state.trial_in_flight = False
        state.success_count_in_half_open = 0

    def _acquire(self, key: str) -> _Permit:
        cfg = self.config_for(key)
        recovery = timedelta(seconds=cfg.recovery_timeout_seconds)

        def mutate(state: CircuitState) -> _Permit | CircuitOpenError:
            now = self._clock()
            if state.state == CircuitStateName.CLOSED:
                return _Permit(key, trial=False)
            if state.state == CircuitStateName.OPEN:
                opened_at = state.opened_at or now
                if now - opened_at >= recovery:
                    state.state = CircuitStateName.HALF_OPEN
                    state.trial_in_flight = True
                    # While half_open, opened_at marks the trial start
                    state.opened_at = now
                    state.success_count_in_half_open = 0
                    return _Permit(key, trial=True)
                remaining = (opened_at + recovery - now).total_seconds()
                return CircuitOpenError(key, remaining)
            # HALF_OPEN: one trial at a time; a trial whose owner vanished
            # for a whole recovery window is taken over.
            stale = state.opened_at is not None and now - state.opened_at >= recovery
            if state.trial_in_flight and not stale:
                return CircuitOpenError(key, cfg.recovery_timeout_seconds, reason="half_open_trial_in_flight")
            state.trial_in_flight = True
            state.opened_at = now
            return _Permit(key, trial=True)

        outcome = self._transition(key, mutate)
        if isinstance(outcome, CircuitOpenError):
            logger.debug("Circuit rejected call", key=key, reason=outcome.reason, retry_after_seconds=outcome.retry_after_seconds)
            raise outcome
        return outcome

    def _record_success(self, permit: _Permit) -> None:
        def mutate(state: CircuitState) -> None:
            if state.state == CircuitStateName.HALF_OPEN and permit.trial:
                state.success_count_in_half_open += 1
                state.state = CircuitStateName.CLOSED
                state.failure_count = 0
                state.success_count_in_half_open = 0
                state.trial_in_flight = False
                state.opened_at = None
            elif state.state == CircuitStateName.CLOSED:
                state.failure_count = 0

        self._transition(permit.key, mutate)

    def _record_failure(self, permit: _Permit, record: ErrorRecord) -> None:
        threshold = self.config_for(permit.key).failure_threshold

        def mutate(state: CircuitState) -> None:
            if not record.retryable:
                if state.state == CircuitStateName.HALF_OPEN and permit.trial:
                    state.trial_in_flight = False
                return
            state.last_failure_at = self._clock()
            if state.state == CircuitStateName.CLOSED:
                state.failure_count += 1
                if state.failure_count >= threshold:
                    self._open(state)
            elif state.state == CircuitStateName.HALF_OPEN and permit.trial:
                self._open(state)

        self._transition(permit.key, mutate)

    def _release(self, permit: _Permit) -> None:
        if not permit.trial:
            return

        def mutate(state: CircuitState) -> None:
            if state.state == CircuitStateName.HALF_OPEN:
                state.trial_in_flight = False

        self._transition(permit.key, mutate)

    async def _acquire_async(self, key: str) -> _Permit:
        pending = asyncio.ensure_future(asyncio.to_thread(self._acquire, key))
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The store call still finishes; a trial it granted must be handed back
            pending.add_done_callback(self._release_abandoned)
            raise

    def _release_abandoned(self, pending: "asyncio.Future[_Permit]") -> None:
        if pending.cancelled() or pending.exception() is not None:
            return
        asyncio.get_running_loop().run_in_executor(None, self._release, pending.result())

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker for ``key``.

        Raises ``CircuitOpenError`` without invoking ``operation`` when the
        circuit rejects the call; otherwise re-raises whatever it raised.
        Store reads and writes run on a worker thread so a remote store never
        stalls the event loop.
        """
        permit = await self._acquire_async(key)
        try:
            result = await operation()
        except asyncio.CancelledError:
            await asyncio.to_thread(self._release, permit)
            raise
        except Exception as exc:
            await asyncio.to_thread(self._record_failure, permit, self._classify(exc))
            raise
        await asyncio.to_thread(self._record_success, permit)
        return result

    def get_state(self, key: str) -> CircuitState:
        return self._store.get(key)

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {key: self._store.get(key).to_dict() for key in self._store.keys()}


__all__ = [
    "CircuitBreaker",
    "CircuitConfig",
    "CircuitOpenError",
    "CircuitStateConflictError",
]
