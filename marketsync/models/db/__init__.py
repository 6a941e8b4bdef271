from .enums import JobStatus, BatchState, ErrorKind, ErrorSeverity, CircuitStateName
from .batches import Batch
from .jobs import Job
from .dead_letters import DeadLetterEntry

__all__ = [
    "JobStatus",
    "BatchState",
    "ErrorKind",
    "ErrorSeverity",
    "CircuitStateName",
    "Batch",
    "Job",
    "DeadLetterEntry",
]
