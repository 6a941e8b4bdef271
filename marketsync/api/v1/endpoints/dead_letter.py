"""
Dead-letter inspection, recovery and cleanup endpoints.
"""
import time
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from marketsync.api.deps import get_request_id, get_sync_service
from marketsync.models.db.enums import ErrorKind
from marketsync.models.schemas.base import ResponseBase
from marketsync.models.schemas.dead_letter import (
    BulkRetryRequest,
    BulkRetryResponse,
    DeadLetterEntryRead,
    DeadLetterStatsRead,
)
from marketsync.services.dead_letter import (
    BulkRetryCriteria,
    DeadLetterEntryNotFoundError,
    InvalidCleanupWindowError,
)
from marketsync.services.job_queue import BatchNotFoundError
from marketsync.services.sync_service import SyncService
from marketsync.utils.logger import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/stats",
    response_model=ResponseBase,
    summary="Dead-letter statistics"
)
async def get_dead_letter_stats(service: SyncService = Depends(get_sync_service)) -> ResponseBase:
    stats = service.get_dead_letter_stats()
    return ResponseBase(
        success=True,
        message="Dead-letter statistics",
        data=DeadLetterStatsRead.model_validate(stats).model_dump(mode="json"),
    )


@router.get(
    "",
    response_model=ResponseBase,
    summary="List dead-letter entries"
)
async def list_dead_letters(
    platform: Optional[str] = Query(None),
    error_kind: Optional[ErrorKind] = Query(None),
    batch_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    service: SyncService = Depends(get_sync_service),
) -> ResponseBase:
    entries = service.list_dead_letters(platform=platform, error_kind=error_kind, batch_id=batch_id, limit=limit)
    return ResponseBase(
        success=True,
        message=f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}",
        data={"entries": [DeadLetterEntryRead.model_validate(e).model_dump(mode="json") for e in entries]},
    )


@router.post(
    "/retry",
    response_model=ResponseBase,
    summary="Re-enqueue matching dead-letter entries"
)
async def bulk_retry_dead_letters(
    criteria: BulkRetryRequest,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    """Each entry is retried in its own transaction; per-entry failures are reported, not raised."""
    start_time = time.time()
    result = service.bulk_retry_dead_letters(BulkRetryCriteria(
        platform=criteria.platform,
        error_kind=criteria.error_kind,
        batch_id=criteria.batch_id,
        limit=criteria.limit,
    ))
    response = BulkRetryResponse(
        matched=result.matched,
        retried=result.retried,
        failed=result.failed,
        job_ids=result.job_ids,
        errors=result.errors,
    )
    log_business_event(
        event_type="dead_letter_bulk_retry_requested",
        details={"matched": result.matched, "retried": result.retried, "failed": result.failed},
        request_id=request_id
    )
    log_performance(
        operation="bulk_retry_dead_letters",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"retried": result.retried}
    )
    return ResponseBase(
        success=result.failed == 0,
        message=f"Retried {result.retried} of {result.matched} entr{'y' if result.matched == 1 else 'ies'}",
        data=response.model_dump(mode="json"),
    )


@router.post(
    "/{entry_id}/retry",
    response_model=ResponseBase,
    summary="Re-enqueue a single dead-letter entry"
)
async def retry_dead_letter(
    entry_id: str,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    try:
        job_id = service.retry_dead_letter(entry_id)
    except (DeadLetterEntryNotFoundError, BatchNotFoundError) as e:
        logger.warning("Dead-letter retry failed: not found", entry_id=entry_id, error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Dead-letter entry {entry_id} not found")
    return ResponseBase(success=True, message="Entry re-enqueued", data={"entry_id": entry_id, "job_id": job_id})


@router.delete(
    "",
    response_model=ResponseBase,
    summary="Delete dead-letter entries older than N days"
)
async def cleanup_dead_letters(
    older_than_days: int = Query(..., description="Window in days, 1 to 365"),
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    try:
        deleted = service.cleanup_dead_letters(older_than_days)
    except InvalidCleanupWindowError as e:
        logger.warning("Dead-letter cleanup rejected", older_than_days=older_than_days, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    log_business_event(
        event_type="dead_letter_cleanup_requested",
        details={"older_than_days": older_than_days, "deleted": deleted},
        request_id=request_id
    )
    return ResponseBase(
        success=True,
        message=f"Deleted {deleted} entr{'y' if deleted == 1 else 'ies'}",
        data={"older_than_days": older_than_days, "deleted": deleted},
    )
