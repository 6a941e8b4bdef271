"""Central Enum definitions for core domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, the error classifier and the circuit breaker.
"""
from __future__ import annotations
import enum


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    # Kept in the vocabulary; rescheduled jobs are written back as PENDING
    FAILED_RETRYABLE = "failed_retryable"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class BatchState(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MIXED = "mixed"
    CANCELLED = "cancelled"

# ----------------------- Error taxonomy ----------------------- #

class ErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PLATFORM_UNAVAILABLE = "platform_unavailable"
    NETWORK = "network"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class ErrorSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CircuitStateName(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


__all__ = [
    "JobStatus",
    "BatchState",
    "ErrorKind",
    "ErrorSeverity",
    "CircuitStateName",
]
