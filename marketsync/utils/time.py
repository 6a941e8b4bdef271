"""Time utilities (UTC now, injectable clock type)."""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


__all__ = ["Clock", "utc_now"]
