from .base import ResponseBase
from .sync import BatchSubmit, BatchSubmitResult, BatchStatusRead, JobRead, QueueStatsRead
from .dead_letter import (
    DeadLetterEntryRead,
    BulkRetryRequest,
    BulkRetryResponse,
    DeadLetterStatsRead,
)

__all__ = [
    # Base
    "ResponseBase",

    # Sync
    "BatchSubmit",
    "BatchSubmitResult",
    "BatchStatusRead",
    "JobRead",
    "QueueStatsRead",

    # Dead letter
    "DeadLetterEntryRead",
    "BulkRetryRequest",
    "BulkRetryResponse",
    "DeadLetterStatsRead",
]
