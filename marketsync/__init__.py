"""marketsync package.

Resilient marketplace sync queue: batches of per-item jobs, a circuit breaker
per platform, retry with backoff and a dead-letter quarantine.
"""

__version__ = "0.1.0"

__all__: list[str] = ["__version__"]
