"""Exponential backoff helpers with jitter."""
from __future__ import annotations

import random
from typing import Callable, Optional

from marketsync.config import BACKOFF_POLICY


def apply_jitter(delay: float, jitter_pct: float, max_seconds: float, *, rng: Callable[[float, float], float] = random.uniform) -> float:
    """Spread ``delay`` by +/- ``jitter_pct`` and clamp the result to ``[0, max_seconds]``."""
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = rng(delay - jitter_amount, delay + jitter_amount)
    return min(max(delay, 0.0), max_seconds)


def compute_backoff_seconds(
    attempt: int,
    *,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_pct: Optional[float] = None,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Compute exponential backoff delay with jitter.

    ``attempt`` is 1-based; values below 1 are treated as the first attempt.
    The un-jittered delay is ``min(max_seconds, base * factor ** (attempt - 1))``.
    """
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])  # type: ignore[index]
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])   # type: ignore[index]
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])  # type: ignore[index]
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])  # type: ignore[index]

    try:
        delay = base * (factor ** (attempt - 1))
    except OverflowError:
        delay = max_seconds
    delay = min(delay, max_seconds)
    return apply_jitter(delay, jitter_pct, max_seconds, rng=rng)


__all__ = ["compute_backoff_seconds", "apply_jitter"]
