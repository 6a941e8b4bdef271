"""Core service configuration & tunable resilience rules.

All policy knobs that may evolve (breaker thresholds, retry/backoff curves,
lease durations, dead-letter limits) are centralized here so they can be
adjusted without diving into service logic. Values may be overridden through
environment variables at import time; tests monkeypatch the dicts or pass
explicit arguments to the service constructors.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


_seed_env = os.getenv("INTEGRATIONS_RANDOM_SEED")
INTEGRATIONS_RANDOM_SEED: int | None = int(_seed_env) if _seed_env and _seed_env.strip() else None

# Probability of a simulated failure in the mock marketplace adapter
MOCK_FAILURE_RATE: float = float(os.getenv("MOCK_FAILURE_RATE", "0.05"))

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./marketsync.db")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: str | None = os.getenv("LOG_FILE", "logs/marketsync.log") or None
LOG_AUDIT_FILE: str | None = os.getenv("LOG_AUDIT_FILE") or None

# Marketplaces the HTTP surface accepts batches for
SUPPORTED_PLATFORMS: list[str] = [
    p.strip().lower()
    for p in os.getenv("SUPPORTED_PLATFORMS", "shopee,tiktok").split(",")
    if p.strip()
]

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, object] = {
    "failure_threshold": int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5")),  # Retryable failures before OPEN
    "recovery_timeout_seconds": float(os.getenv("CIRCUIT_RECOVERY_TIMEOUT", "60")),  # Stay OPEN this long
    # Per dependency key overrides, e.g. {"tiktok": {"failure_threshold": 3}}
    "per_key": {},
    # Shared state across processes
    "use_redis": _env_bool("CIRCUIT_USE_REDIS", False),
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    "redis_key_prefix": "marketsync:circuit:",
    "redis_health_check_timeout": 2.0,
}

# ------------------------------ Retry Executor ---------------------------- #
# In-process retries around a single platform call.
RETRY_POLICY: dict[str, int | float] = {
    "max_attempts": 3,
    "base_delay_seconds": 1.0,
    "max_delay_seconds": 30.0,
    "jitter_pct": 0.20,   # +/-20% jitter
}

# --------------------------------- Backoff -------------------------------- #
# Job-level reschedule delay used by fail_job (passive: job just becomes
# claimable later).
BACKOFF_POLICY: dict[str, int | float] = {
    "base_seconds": 2,
    "factor": 2,          # Exponential factor
    "max_seconds": 300,
    "jitter_pct": 0.10,   # +/-10% jitter
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, int | float | bool] = {
    "default_max_attempts": 3,
    "max_attempts_limit": 10,
    "lease_seconds": 300,
    "reaper_interval_seconds": 30,     # Must stay below lease_seconds
    "reclaim_on_claim": True,
    "claim_candidates": 5,             # Rows tried per claim before giving up
    "per_job_duration_estimate_seconds": 30,
    "worker_concurrency": int(os.getenv("WORKER_CONCURRENCY", "5")),
    "poll_interval_seconds": 1.0,
    "attempt_timeout_seconds": 30.0,   # Hard timeout per platform call
    "start_workers": _env_bool("START_WORKERS", True),
}

# ------------------------------ Dead Letter ------------------------------- #
DEAD_LETTER_SETTINGS: dict[str, int] = {
    "bulk_retry_default_limit": 100,
    "bulk_retry_max_limit": 100,
    "cleanup_min_days": 1,
    "cleanup_max_days": 365,
    "recent_entries": 10,
}

# --------------------------- Platform Gateway ----------------------------- #
# "mock" simulates marketplaces locally; "http" posts JSON to a gateway that
# owns platform-specific signing.
PLATFORM_GATEWAY: dict[str, str | float] = {
    "mode": os.getenv("PLATFORM_ADAPTER", "mock"),
    "base_url": os.getenv("PLATFORM_GATEWAY_URL", "http://localhost:9000"),
    "timeout_seconds": float(os.getenv("PLATFORM_GATEWAY_TIMEOUT", "20")),
}

if INTEGRATIONS_RANDOM_SEED is not None:
    import random
    random.seed(INTEGRATIONS_RANDOM_SEED)

__all__ = [
    "INTEGRATIONS_RANDOM_SEED",
    "MOCK_FAILURE_RATE",
    "DATABASE_URL",
    "LOG_LEVEL",
    "LOG_FILE",
    "LOG_AUDIT_FILE",
    "SUPPORTED_PLATFORMS",
    # Rule groups
    "CIRCUIT_BREAKER",
    "RETRY_POLICY",
    "BACKOFF_POLICY",
    "QUEUE_SETTINGS",
    "DEAD_LETTER_SETTINGS",
    "PLATFORM_GATEWAY",
]
