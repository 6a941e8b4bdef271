"""Error classification for platform calls.

Every failure raised while talking to a marketplace is mapped onto one
taxonomy (``ErrorKind``) with a severity, a retryable flag and a suggested
delay. The retry executor, the circuit breaker and ``fail_job`` all consume
the resulting ``ErrorRecord`` so retry decisions never depend on free text
outside this module.

Resolution order:
  1. A recognised platform error code (``error_code`` / ``code``).
  2. An HTTP status (``status_code`` / ``status``).
  3. The Python exception type (timeouts, connection errors).
  4. Message substring heuristics.
Anything unmatched becomes ``UNKNOWN`` (retryable, 60s, medium).
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import aiohttp

from marketsync.models.db.enums import ErrorKind, ErrorSeverity
from marketsync.utils.logger import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000


@dataclass(frozen=True)
class ErrorRule:
    retryable: bool
    default_delay_seconds: Optional[float]
    severity: ErrorSeverity


ERROR_RULES: dict[ErrorKind, ErrorRule] = {
    ErrorKind.RATE_LIMITED: ErrorRule(True, 300.0, ErrorSeverity.MEDIUM),
    ErrorKind.TIMEOUT: ErrorRule(True, 60.0, ErrorSeverity.MEDIUM),
    ErrorKind.PLATFORM_UNAVAILABLE: ErrorRule(True, 180.0, ErrorSeverity.HIGH),
    ErrorKind.NETWORK: ErrorRule(True, 30.0, ErrorSeverity.MEDIUM),
    ErrorKind.VALIDATION: ErrorRule(False, None, ErrorSeverity.HIGH),
    ErrorKind.CONFLICT: ErrorRule(False, None, ErrorSeverity.LOW),
    ErrorKind.PERMISSION_DENIED: ErrorRule(False, None, ErrorSeverity.CRITICAL),
    ErrorKind.UNKNOWN: ErrorRule(True, 60.0, ErrorSeverity.MEDIUM),
}

ERROR_CODE_KINDS: dict[str, ErrorKind] = {
    "RATE_LIMITED": ErrorKind.RATE_LIMITED,
    "SHOPEE_RATE_LIMIT": ErrorKind.RATE_LIMITED,
    "TOO_MANY_REQUESTS": ErrorKind.RATE_LIMITED,
    "TIMEOUT": ErrorKind.TIMEOUT,
    "CONNECTION_TIMEOUT": ErrorKind.TIMEOUT,
    "ETIMEDOUT": ErrorKind.TIMEOUT,
    "SERVICE_UNAVAILABLE": ErrorKind.PLATFORM_UNAVAILABLE,
    "PLATFORM_API_ERROR": ErrorKind.PLATFORM_UNAVAILABLE,
    "SHOPEE_API_ERROR": ErrorKind.PLATFORM_UNAVAILABLE,
    "SYSTEM_ERROR": ErrorKind.PLATFORM_UNAVAILABLE,
    "CIRCUIT_OPEN": ErrorKind.PLATFORM_UNAVAILABLE,
    "NETWORK_ERROR": ErrorKind.NETWORK,
    "ECONNREFUSED": ErrorKind.NETWORK,
    "ENOTFOUND": ErrorKind.NETWORK,
    "ECONNRESET": ErrorKind.NETWORK,
    "VALIDATION_ERROR": ErrorKind.VALIDATION,
    "INVALID_PRODUCT_DATA": ErrorKind.VALIDATION,
    "INVALID_PRODUCT": ErrorKind.VALIDATION,
    "PRODUCT_ALREADY_EXISTS": ErrorKind.CONFLICT,
    "DUPLICATE": ErrorKind.CONFLICT,
    "CONFLICT": ErrorKind.CONFLICT,
    "INSUFFICIENT_PERMISSIONS": ErrorKind.PERMISSION_DENIED,
    "UNAUTHORIZED": ErrorKind.PERMISSION_DENIED,
    "FORBIDDEN": ErrorKind.PERMISSION_DENIED,
    "INVALID_CREDENTIALS": ErrorKind.PERMISSION_DENIED,
}

# Checked in order; first match wins.
MESSAGE_HEURISTICS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMITED, ("rate limit", "too many requests", "429", "throttl", "quota")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.PERMISSION_DENIED, ("permission", "unauthorized", "forbidden", "401", "403", "credential")),
    (ErrorKind.CONFLICT, ("already exists", "duplicate")),
    (ErrorKind.VALIDATION, ("invalid", "missing", "validation", "malformed", "400")),
    (ErrorKind.PLATFORM_UNAVAILABLE, ("service unavailable", "internal server error", "502", "503")),
    (ErrorKind.NETWORK, ("network", "connection", "socket", "econnrefused")),
)


@dataclass(frozen=True)
class ErrorRecord:
    kind: ErrorKind
    severity: ErrorSeverity
    retryable: bool
    suggested_retry_after_seconds: Optional[float]
    raw_message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "suggested_retry_after_seconds": self.suggested_retry_after_seconds,
            "raw_message": self.raw_message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ErrorRecord":
        return cls(
            kind=ErrorKind(data["kind"]),
            severity=ErrorSeverity(data["severity"]),
            retryable=bool(data["retryable"]),
            suggested_retry_after_seconds=data.get("suggested_retry_after_seconds"),
            raw_message=data.get("raw_message") or "",
        )


@dataclass
class _Signal:
    status: Optional[int]
    code: Optional[str]
    retry_after: Optional[float]
    message: str


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) and result >= 0 else None


def _first_present(getter, *names: str) -> Any:
    for name in names:
        value = getter(name)
        if value is not None:
            return value
    return None


def _extract_signal(raw: Any) -> _Signal:
    if isinstance(raw, Mapping):
        getter = raw.get
        message = _first_present(getter, "message", "error", "detail") or ""
    elif isinstance(raw, BaseException):
        def getter(name: str) -> Any:
            return getattr(raw, name, None)
        message = str(raw) or type(raw).__name__
    elif raw is None:
        return _Signal(None, None, None, "")
    else:
        return _Signal(None, None, None, str(raw))

    status_raw = _first_present(getter, "status_code", "status")
    code_raw = _first_present(getter, "error_code", "code")
    retry_after = _as_float(_first_present(getter, "retry_after", "retry_after_seconds"))

    status = _as_int(status_raw)
    code: Optional[str] = None
    if isinstance(code_raw, str) and code_raw.strip():
        code = code_raw.strip().upper()
    elif status is None:
        # Some APIs report the HTTP status under "code"
        status = _as_int(code_raw)
    return _Signal(status, code, retry_after, str(message))


def kind_for_status(status: int) -> Optional[ErrorKind]:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status == 409:
        return ErrorKind.CONFLICT
    if 400 <= status < 500:
        return ErrorKind.VALIDATION
    if 500 <= status < 600:
        return ErrorKind.PLATFORM_UNAVAILABLE
    return None


def _kind_for_exception_type(raw: Any) -> Optional[ErrorKind]:
    if not isinstance(raw, BaseException):
        return None
    # aiohttp.ServerTimeoutError is both a timeout and a connection error
    if isinstance(raw, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(raw, (ConnectionError, aiohttp.ClientConnectionError)):
        return ErrorKind.NETWORK
    return None


def _kind_for_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for kind, needles in MESSAGE_HEURISTICS:
        if any(needle in lowered for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def classify(raw_signal: Any) -> ErrorRecord:
    """Map any raised error, error mapping or message onto an ``ErrorRecord``.

    Pure and total: never raises, identical input yields identical output.
    """
    if isinstance(raw_signal, ErrorRecord):
        return raw_signal
    try:
        signal = _extract_signal(raw_signal)
    except Exception as e:
        # Unreadable error objects (a raising __str__ or attribute) classify as UNKNOWN
        logger.warning("Could not read error signal", error_type=type(raw_signal).__name__, reason=type(e).__name__)
        signal = _Signal(None, None, None, type(raw_signal).__name__)

    kind: Optional[ErrorKind] = None
    if signal.code is not None:
        kind = ERROR_CODE_KINDS.get(signal.code)
    if kind is None and signal.status is not None:
        kind = kind_for_status(signal.status)
    if kind is None:
        kind = _kind_for_exception_type(raw_signal)
    if kind is None:
        kind = _kind_for_message(signal.message)

    rule = ERROR_RULES[kind]
    delay = rule.default_delay_seconds
    if rule.retryable and signal.retry_after is not None:
        delay = signal.retry_after
    return ErrorRecord(
        kind=kind,
        severity=rule.severity,
        retryable=rule.retryable,
        suggested_retry_after_seconds=delay,
        raw_message=signal.message[:MAX_MESSAGE_LENGTH],
    )


__all__ = [
    "ErrorRecord",
    "ErrorRule",
    "ERROR_RULES",
    "ERROR_CODE_KINDS",
    "classify",
    "kind_for_status",
]
