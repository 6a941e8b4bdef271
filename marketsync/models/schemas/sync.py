"""
Pydantic schemas for batch submission, job and queue views.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, ConfigDict

from marketsync.models.db.enums import JobStatus, BatchState


class BatchSubmit(BaseModel):
    platform: str = Field(min_length=1, max_length=64, description="Target marketplace, e.g. shopee or tiktok")
    items: List[Any] = Field(min_length=1, max_length=1000, description="Opaque payloads, one job per item")
    max_attempts: Optional[int] = Field(None, ge=1, le=10, description="Attempts per job before dead-lettering")


class BatchSubmitResult(BaseModel):
    batch_id: str
    platform: str
    total_jobs: int


class BatchStatusRead(BaseModel):
    batch_id: str
    platform: Optional[str] = None
    total: int
    pending: int
    in_progress: int
    completed: int
    failed: int
    cancelled: int
    progress_percent: int = Field(ge=0, le=100)
    estimated_remaining_seconds: int = Field(ge=0, description="Coarse estimate: remaining jobs x fixed per-job duration")
    state: BatchState
    is_complete: bool
    success_rate: float
    failure_rate: float
    error_summary: Dict[str, int] = Field(default_factory=dict, description="Dead-lettered jobs by error kind")
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class JobRead(BaseModel):
    id: str
    batch_id: str
    platform: str
    payload: Any = None
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[Dict[str, Any]] = None
    result: Any = None
    retried_from_entry_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class QueueStatsRead(BaseModel):
    pending: int
    in_progress: int
    completed: int
    dead_lettered: int
    cancelled: int
    total: int
    delayed: int = Field(description="Pending jobs waiting for their backoff to elapse")
    expired_leases: int = Field(description="In-progress jobs whose lease has expired")
    dead_letter_entries: int
    batches: int
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)
