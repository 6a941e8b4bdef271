"""Circuit state storage (process-local or Redis-shared).

Every stored state carries a ``version``; writers must present the version
they read (``compare_and_set``) so concurrent breakers in several processes
never overwrite each other's transitions.

Redis layout:
  - String  <prefix><key>       JSON encoded ``CircuitState``
  - Set     <prefix>__keys__    every key ever written (for snapshots)
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Protocol

import redis

from marketsync.config import CIRCUIT_BREAKER
from marketsync.models.db.enums import CircuitStateName
from marketsync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CircuitState:
    key: str
    state: CircuitStateName = CircuitStateName.CLOSED
    failure_count: int = 0
    success_count_in_half_open: int = 0
    opened_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    trial_in_flight: bool = False
    version: int = 0

    def copy(self) -> "CircuitState":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count_in_half_open": self.success_count_in_half_open,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "trial_in_flight": self.trial_in_flight,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CircuitState":
        def _dt(value: Any) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            key=data["key"],
            state=CircuitStateName(data.get("state", CircuitStateName.CLOSED.value)),
            failure_count=int(data.get("failure_count", 0)),
            success_count_in_half_open=int(data.get("success_count_in_half_open", 0)),
            opened_at=_dt(data.get("opened_at")),
            last_failure_at=_dt(data.get("last_failure_at")),
            trial_in_flight=bool(data.get("trial_in_flight", False)),
            version=int(data.get("version", 0)),
        )


class CircuitStateStore(Protocol):
    backend: str

    def get(self, key: str) -> CircuitState: ...

    def compare_and_set(self, expected_version: int, new_state: CircuitState) -> bool: ...

    def keys(self) -> list[str]: ...


class InMemoryCircuitStore:
    """Process-local store guarded by a lock."""

    backend = "memory"

    def __init__(self) -> None:
        self._states: dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CircuitState:
        with self._lock:
            current = self._states.get(key)
            return current.copy() if current else CircuitState(key=key)

    def compare_and_set(self, expected_version: int, new_state: CircuitState) -> bool:
        with self._lock:
            current = self._states.get(new_state.key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            stored = new_state.copy()
            stored.version = expected_version + 1
            self._states[new_state.key] = stored
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._states)


class RedisCircuitStore:
    """Shared store using WATCH/MULTI optimistic transactions."""

    backend = "redis"

    def __init__(self, client: "redis.Redis", key_prefix: Optional[str] = None) -> None:
        self._client = client
        self._prefix = key_prefix or str(CIRCUIT_BREAKER.get("redis_key_prefix", "marketsync:circuit:"))
        self._index_key = f"{self._prefix}__keys__"

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _decode(raw: Any) -> Optional[dict[str, Any]]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    def get(self, key: str) -> CircuitState:
        data = self._decode(self._client.get(self._redis_key(key)))
        return CircuitState.from_dict(data) if data else CircuitState(key=key)

    def compare_and_set(self, expected_version: int, new_state: CircuitState) -> bool:
        redis_key = self._redis_key(new_state.key)
        stored = new_state.copy()
        stored.version = expected_version + 1
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(redis_key)
                data = self._decode(pipe.get(redis_key))
                current_version = int(data.get("version", 0)) if data else 0
                if current_version != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(redis_key, json.dumps(stored.to_dict()))
                pipe.sadd(self._index_key, new_state.key)
                pipe.execute()
                return True
            except redis.WatchError:
                logger.debug("Circuit state changed concurrently", key=new_state.key)
                return False

    def keys(self) -> list[str]:
        members = self._client.smembers(self._index_key) or set()
        return sorted(m.decode("utf-8") if isinstance(m, bytes) else str(m) for m in members)

    def health_check(self) -> bool:
        try:
            return bool(self._client.ping())
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis circuit store health check failed", error=str(e))
            return False


def create_circuit_store() -> CircuitStateStore:
    """Create the configured store, falling back to memory when Redis is unreachable."""
    if not CIRCUIT_BREAKER.get("use_redis", False):
        logger.info("Using in-memory circuit store")
        return InMemoryCircuitStore()

    url = str(CIRCUIT_BREAKER.get("redis_url", "redis://localhost:6379/0"))
    timeout = float(CIRCUIT_BREAKER.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
    try:
        client = redis.from_url(url, socket_connect_timeout=timeout)
        store = RedisCircuitStore(client)
        if store.health_check():
            logger.info("Using Redis circuit store", url=url)
            return store
        logger.warning("Redis not reachable, using in-memory circuit store", url=url)
    except (redis.RedisError, ValueError) as e:
        logger.warning("Error initializing Redis circuit store, falling back to memory", error=str(e))
    return InMemoryCircuitStore()


__all__ = [
    "CircuitState",
    "CircuitStateStore",
    "InMemoryCircuitStore",
    "RedisCircuitStore",
    "create_circuit_store",
]
