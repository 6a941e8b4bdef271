"""Audit event sinks.

Services emit plain dict events (``{"event": <type>, ...}``); the default sink
forwards them to the structured audit logger.
"""
from __future__ import annotations

from typing import Any, Protocol

from marketsync.utils.logger import log_business_event


class AuditSink(Protocol):
    def emit(self, event: dict[str, Any]) -> None: ...


class LoggingAuditSink:
    def emit(self, event: dict[str, Any]) -> None:
        details = dict(event)
        event_type = str(details.pop("event", "audit"))
        request_id = details.pop("request_id", None)
        log_business_event(event_type, details, request_id=request_id)


__all__ = ["AuditSink", "LoggingAuditSink"]
