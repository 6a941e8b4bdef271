"""
Dependencies for service access and request context.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from marketsync.database import SessionLocal
from marketsync.services.sync_service import SyncService
from marketsync.utils.logger import get_logger
from marketsync.utils.observability import REQUEST_ID_HEADER

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency (used by health checks).
    Ensures proper session lifecycle management with automatic cleanup.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_sync_service(request: Request) -> SyncService:
    """
    The ``SyncService`` built during application startup.

    Raises:
        HTTPException: 503 while the service is not initialised
    """
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        logger.error("Sync service requested before startup completed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return service


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER, "unknown")
