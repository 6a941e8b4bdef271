"""
Centralized logging configuration.
Provides structured logging for audit trails, performance monitoring, and queue anomalies.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "marketsync"


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Converts log records to JSON format for easy parsing and analysis.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            log_entry.update(extra_data)

        # Worker pool runs on its own thread; keep ids for correlation
        log_entry.update({
            "process_id": record.process,
            "thread_id": record.thread,
        })

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Wrapper around standard logger to provide structured logging methods.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, exc_info: bool = False, **kwargs):
        """Log with extra structured data."""
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)


# Third-party loggers routed through our handlers, with their own floor level
_QUIET_LOGGERS: Dict[str, str] = {
    "uvicorn": "INFO",
    "aiohttp.access": "WARNING",
    "sqlalchemy.engine": "WARNING",
}


def _handler_configs(log_level: str, log_file: Optional[str], audit_file: Optional[str], enable_console: bool) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
    for name, path in (("file", log_file), ("audit_file", audit_file)):
        if not path:
            continue
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handlers[name] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": path,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    return handlers


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
    audit_file: Optional[str] = None,
) -> None:
    """
    Configure the ``marketsync`` logger tree.

    Console output is human readable; files get one JSON object per line.
    Audit events (``marketsync.audit``) additionally go to ``audit_file``
    when one is given, so dead-letter and circuit transitions can be
    retained separately from request noise.
    """
    handlers = _handler_configs(log_level, log_file, audit_file, enable_console)
    shared = [name for name in handlers if name != "audit_file"]

    loggers: Dict[str, Dict[str, Any]] = {
        ROOT_LOGGER_NAME: {"level": log_level, "handlers": list(shared), "propagate": False},
    }
    if "audit_file" in handlers:
        loggers[f"{ROOT_LOGGER_NAME}.audit"] = {
            "level": "INFO",
            "handlers": list(shared) + ["audit_file"],
            "propagate": False,
        }
    for name, level in _QUIET_LOGGERS.items():
        loggers[name] = {"level": level, "handlers": list(shared), "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": list(shared)},
    })


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    request_id: Optional[str] = None
) -> None:
    """
    Log business events for audit trails.

    Args:
        event_type: Type of business event (e.g., 'batch_submitted', 'circuit_opened')
        details: Event-specific details
        request_id: Request ID for tracing
    """
    audit_logger = get_logger("audit")
    audit_logger.info(
        f"Business event: {event_type}",
        event_type=event_type,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log performance metrics.

    Args:
        operation: Operation name
        duration_ms: Duration in milliseconds
        additional_data: Additional context data
    """
    perf_logger = get_logger("performance")
    data = {"duration_ms": duration_ms}
    if additional_data:
        data.update(additional_data)

    perf_logger.info(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
