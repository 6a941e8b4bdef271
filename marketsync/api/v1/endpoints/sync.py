"""
Batch submission, batch progress and queue health endpoints.
"""
import time
from fastapi import APIRouter, Depends, HTTPException, status

from marketsync.api.deps import get_request_id, get_sync_service
from marketsync.integrations.base import UnsupportedPlatformError
from marketsync.models.schemas.base import ResponseBase
from marketsync.models.schemas.sync import (
    BatchSubmit,
    BatchSubmitResult,
    BatchStatusRead,
    JobRead,
    QueueStatsRead,
)
from marketsync.services.job_queue import BatchNotFoundError, JobNotFoundError
from marketsync.services.sync_service import SyncService
from marketsync.utils.logger import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


def _batch_not_found(batch_id: str, request_id: str) -> HTTPException:
    logger.warning("Batch not found", batch_id=batch_id, request_id=request_id)
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch {batch_id} not found")


@router.post(
    "/batches",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a batch of items for sync"
)
async def submit_batch(
    payload: BatchSubmit,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    """Create one pending job per item under a shared batch id."""
    start_time = time.time()
    logger.info(
        "Batch submission started",
        platform=payload.platform,
        items=len(payload.items),
        request_id=request_id
    )
    try:
        created = service.submit_batch(payload.platform, payload.items, payload.max_attempts)
    except UnsupportedPlatformError as e:
        logger.warning("Batch submission rejected: unsupported platform", platform=payload.platform, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValueError as e:
        logger.warning("Batch submission rejected", error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log_business_event(
        event_type="batch_submitted",
        details=created,
        request_id=request_id
    )
    log_performance(
        operation="submit_batch",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"total_jobs": created["total_jobs"]}
    )
    return ResponseBase(
        success=True,
        message="Batch accepted",
        data=BatchSubmitResult(**created).model_dump(mode="json"),
    )


@router.get(
    "/batches/{batch_id}",
    response_model=ResponseBase,
    summary="Get batch progress"
)
async def get_batch_status(
    batch_id: str,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    try:
        batch_status = service.get_batch_status(batch_id)
    except BatchNotFoundError:
        raise _batch_not_found(batch_id, request_id)
    return ResponseBase(
        success=True,
        message="Batch status retrieved",
        data=BatchStatusRead.model_validate(batch_status).model_dump(mode="json"),
    )


@router.post(
    "/batches/{batch_id}/cancel",
    response_model=ResponseBase,
    summary="Cancel the pending jobs of a batch"
)
async def cancel_batch(
    batch_id: str,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    """Pending jobs become cancelled; jobs already in progress finish normally."""
    try:
        cancelled = service.cancel_batch(batch_id)
    except BatchNotFoundError:
        raise _batch_not_found(batch_id, request_id)
    log_business_event(
        event_type="batch_cancel_requested",
        details={"batch_id": batch_id, "cancelled_jobs": cancelled},
        request_id=request_id
    )
    return ResponseBase(
        success=True,
        message=f"Cancelled {cancelled} pending job(s)",
        data={"batch_id": batch_id, "cancelled_jobs": cancelled},
    )


@router.get(
    "/batches/{batch_id}/jobs",
    response_model=ResponseBase,
    summary="List the jobs of a batch"
)
async def list_batch_jobs(
    batch_id: str,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    try:
        jobs = service.list_batch_jobs(batch_id)
    except BatchNotFoundError:
        raise _batch_not_found(batch_id, request_id)
    return ResponseBase(
        success=True,
        message=f"{len(jobs)} job(s)",
        data={
            "batch_id": batch_id,
            "jobs": [JobRead.model_validate(job).model_dump(mode="json") for job in jobs],
        },
    )


@router.get(
    "/jobs/{job_id}",
    response_model=ResponseBase,
    summary="Get a single job"
)
async def get_job(
    job_id: str,
    service: SyncService = Depends(get_sync_service),
    request_id: str = Depends(get_request_id),
) -> ResponseBase:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError:
        logger.warning("Job not found", job_id=job_id, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return ResponseBase(success=True, message="Job retrieved", data=JobRead.model_validate(job).model_dump(mode="json"))


@router.get(
    "/queue/stats",
    response_model=ResponseBase,
    summary="Queue statistics"
)
async def get_queue_stats(service: SyncService = Depends(get_sync_service)) -> ResponseBase:
    stats = service.get_queue_stats()
    return ResponseBase(
        success=True,
        message="Queue statistics",
        data=QueueStatsRead.model_validate(stats).model_dump(mode="json"),
    )


@router.get(
    "/circuits",
    response_model=ResponseBase,
    summary="Circuit breaker states per platform"
)
async def get_circuit_states(service: SyncService = Depends(get_sync_service)) -> ResponseBase:
    return ResponseBase(
        success=True,
        message="Circuit states",
        data={"circuits": service.get_circuit_states()},
    )
