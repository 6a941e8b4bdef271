import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import redis

from marketsync.models.db.enums import CircuitStateName
from marketsync.utils import circuit_store
from marketsync.utils.circuit_store import (
    CircuitState,
    InMemoryCircuitStore,
    RedisCircuitStore,
    create_circuit_store,
)


def test_memory_store_defaults_to_closed():
    state = InMemoryCircuitStore().get("shopee")
    assert state.state == CircuitStateName.CLOSED
    assert state.version == 0


def test_memory_store_compare_and_set_detects_stale_writers():
    store = InMemoryCircuitStore()
    first = store.get("shopee")
    second = store.get("shopee")

    first.failure_count = 1
    assert store.compare_and_set(first.version, first) is True
    second.failure_count = 99
    assert store.compare_and_set(second.version, second) is False

    current = store.get("shopee")
    assert current.failure_count == 1
    assert current.version == 1
    assert store.keys() == ["shopee"]


def test_memory_store_returns_copies():
    store = InMemoryCircuitStore()
    state = store.get("tiktok")
    store.compare_and_set(0, state)
    leaked = store.get("tiktok")
    leaked.failure_count = 50
    assert store.get("tiktok").failure_count == 0


def test_state_serialization_round_trip():
    state = CircuitState(
        key="shopee",
        state=CircuitStateName.HALF_OPEN,
        failure_count=3,
        opened_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        trial_in_flight=True,
        version=4,
    )
    assert CircuitState.from_dict(json.loads(json.dumps(state.to_dict()))) == state


def _redis_mock(stored=None):
    client = MagicMock()
    pipe = MagicMock()
    client.pipeline.return_value.__enter__.return_value = pipe
    pipe.get.return_value = stored
    return client, pipe


def test_redis_store_get_decodes_json():
    client, _ = _redis_mock()
    payload = CircuitState(key="shopee", state=CircuitStateName.OPEN, failure_count=5, version=2).to_dict()
    client.get.return_value = json.dumps(payload).encode("utf-8")
    store = RedisCircuitStore(client, key_prefix="t:")

    state = store.get("shopee")
    client.get.assert_called_once_with("t:shopee")
    assert state.state == CircuitStateName.OPEN
    assert state.version == 2


def test_redis_store_get_missing_key():
    client, _ = _redis_mock()
    client.get.return_value = None
    assert RedisCircuitStore(client, key_prefix="t:").get("tiktok").version == 0


def test_redis_compare_and_set_writes_in_transaction():
    client, pipe = _redis_mock(stored=None)
    store = RedisCircuitStore(client, key_prefix="t:")
    new_state = CircuitState(key="shopee", failure_count=1)

    assert store.compare_and_set(0, new_state) is True
    pipe.watch.assert_called_once_with("t:shopee")
    pipe.multi.assert_called_once()
    key, raw = pipe.set.call_args.args
    assert key == "t:shopee"
    assert json.loads(raw)["version"] == 1
    pipe.sadd.assert_called_once_with("t:__keys__", "shopee")
    pipe.execute.assert_called_once()


def test_redis_compare_and_set_version_mismatch():
    stored = json.dumps(CircuitState(key="shopee", version=3).to_dict())
    client, pipe = _redis_mock(stored=stored)
    store = RedisCircuitStore(client, key_prefix="t:")

    assert store.compare_and_set(2, CircuitState(key="shopee")) is False
    pipe.unwatch.assert_called_once()
    pipe.execute.assert_not_called()


def test_redis_compare_and_set_concurrent_modification():
    client, pipe = _redis_mock(stored=None)
    pipe.execute.side_effect = redis.WatchError()
    store = RedisCircuitStore(client, key_prefix="t:")
    assert store.compare_and_set(0, CircuitState(key="shopee")) is False


def test_redis_keys_and_health():
    client, _ = _redis_mock()
    client.smembers.return_value = {b"tiktok", b"shopee"}
    client.ping.return_value = True
    store = RedisCircuitStore(client, key_prefix="t:")
    assert store.keys() == ["shopee", "tiktok"]
    assert store.health_check() is True

    client.ping.side_effect = redis.ConnectionError("down")
    assert store.health_check() is False


def test_factory_uses_memory_when_redis_disabled(monkeypatch):
    monkeypatch.setitem(circuit_store.CIRCUIT_BREAKER, "use_redis", False)
    assert isinstance(create_circuit_store(), InMemoryCircuitStore)


def test_factory_falls_back_when_redis_unreachable(monkeypatch):
    client = MagicMock()
    client.ping.side_effect = redis.ConnectionError("refused")
    monkeypatch.setitem(circuit_store.CIRCUIT_BREAKER, "use_redis", True)
    monkeypatch.setattr(circuit_store.redis, "from_url", lambda *a, **kw: client)
    assert isinstance(create_circuit_store(), InMemoryCircuitStore)


def test_factory_returns_redis_store_when_reachable(monkeypatch):
    client = MagicMock()
    client.ping.return_value = True
    monkeypatch.setitem(circuit_store.CIRCUIT_BREAKER, "use_redis", True)
    monkeypatch.setattr(circuit_store.redis, "from_url", lambda *a, **kw: client)
    store = create_circuit_store()
    assert store.backend == "redis"
