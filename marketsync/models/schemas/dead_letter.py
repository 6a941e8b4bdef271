"""
Pydantic schemas for dead-letter inspection and recovery.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, ConfigDict

from marketsync.models.db.enums import ErrorKind, ErrorSeverity


class DeadLetterEntryRead(BaseModel):
    id: str
    original_job_id: str
    batch_id: str
    platform: str
    payload: Any = None
    error_kind: ErrorKind
    error_severity: ErrorSeverity
    error_retryable: bool
    error_retry_after_seconds: Optional[float] = None
    error_message: Optional[str] = None
    total_attempts: int
    failure_reason: str
    quarantined_at: datetime
    retry_count: int
    last_retried_at: Optional[datetime] = None
    last_retry_job_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BulkRetryRequest(BaseModel):
    platform: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    batch_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1, description="Defaults to 100; values above 100 are capped")


class BulkRetryResponse(BaseModel):
    matched: int
    retried: int
    failed: int
    job_ids: List[str]
    errors: List[Dict[str, str]]


class DeadLetterStatsRead(BaseModel):
    total: int
    by_platform: Dict[str, int]
    by_error_kind: Dict[str, int]
    retried_entries: int
    total_retries: int
    recent: List[DeadLetterEntryRead]

    model_config = ConfigDict(from_attributes=True)
