"""
FastAPI application main module.
Wires the sync service, worker pool and lease reaper into the app lifespan,
plus request-context middleware, error handling and health checks.
"""
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import time
import os
from contextlib import asynccontextmanager

from marketsync import __version__
from marketsync.api.deps import get_db
from marketsync.api.v1 import api_router
from marketsync.config import LOG_AUDIT_FILE, LOG_LEVEL, LOG_FILE, QUEUE_SETTINGS
from marketsync.database import Base, SessionLocal, engine
from marketsync.integrations.platforms import build_default_registry
from marketsync.jobs.reaper import LeaseReaper
from marketsync.jobs.worker import SyncWorkerPool
from marketsync.services.sync_service import build_sync_service
from marketsync.utils.logger import setup_logging, get_logger
from marketsync.utils.observability import REQUEST_ID_HEADER, elapsed_ms, ensure_request_id

# Setup logging before creating the app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE, enable_console=True, audit_file=LOG_AUDIT_FILE)

logger = get_logger(__name__)

SERVICE_NAME = "marketsync"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates tables, builds the sync service, starts the worker pool and the
    lease reaper; stops both on shutdown.
    """
    logger.info("Application startup initiated")
    worker_pool: SyncWorkerPool | None = None
    reaper: LeaseReaper | None = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        service = build_sync_service(SessionLocal)
        app.state.sync_service = service

        if QUEUE_SETTINGS.get("start_workers", True):
            worker_pool = SyncWorkerPool(service.job_queue, service.breaker, build_default_registry())
            reaper = LeaseReaper(service.job_queue)
            worker_pool.start()
            reaper.start()
        else:
            logger.info("Background workers disabled; queue is submit-only in this process")
        app.state.worker_pool = worker_pool
        app.state.lease_reaper = reaper

        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if worker_pool is not None:
            worker_pool.stop()
        if reaper is not None:
            reaper.stop()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Marketplace Sync Queue",
    description="""
    Resilient job queue for pushing catalog and order updates to third-party marketplaces.

    ## Features
    * **Batches** - one job per item, progress and remaining-time estimates
    * **Circuit breaker** - per platform, shared through Redis when enabled
    * **Retry with backoff** - only for retryable error kinds
    * **Dead-letter quarantine** - inspection, bulk retry and cleanup
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Attach a request id, time the request and log one line per response."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    start = time.perf_counter()
    logger.debug("Request received", method=request.method, path=request.url.path, request_id=request_id)

    response = await call_next(request)

    duration_ms = elapsed_ms(start)
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(duration_ms)
    response.headers["X-Content-Type-Options"] = "nosniff"
    logger.info(
        "Request handled",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        client=request.client.host if request.client else None,
        request_id=request_id,
    )
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_response(request: Request, status_code: int, message: object, **extra) -> JSONResponse:
    content = {"success": False, "message": message, "request_id": _request_id(request)}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Pydantic validation errors: 422 with a compact per-field list."""
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        path=request.url.path,
        method=request.method,
        error_count=len(details),
        request_id=_request_id(request),
    )
    return _error_response(request, 422, "Request validation failed", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTP error response",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=_request_id(request),
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unhandled becomes a 500; the traceback stays in the logs."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=_request_id(request),
        exc_info=True,
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    service = getattr(app.state, "sync_service", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": time.time(),
        "circuit_store_backend": service.breaker.store.backend if service is not None else None,
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check(db: Session = Depends(get_db)):
    """Detailed health check with database, circuit store and worker status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except SQLAlchemyError as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    service = getattr(app.state, "sync_service", None)
    if service is not None:
        store = service.breaker.store
        store_check = {"backend": store.backend}
        health_check_fn = getattr(store, "health_check", None)
        if health_check_fn is not None:
            healthy = health_check_fn()
            store_check["status"] = "healthy" if healthy else "unavailable"
            if not healthy:
                health_status["status"] = "degraded"
        health_status["checks"]["circuit_store"] = store_check
        open_circuits = [k for k, v in service.get_circuit_states().items() if v.get("state") != "closed"]
        health_status["checks"]["open_circuits"] = open_circuits

    worker_pool = getattr(app.state, "worker_pool", None)
    health_status["checks"]["workers"] = worker_pool.snapshot() if worker_pool is not None else {"running": False}
    reaper = getattr(app.state, "lease_reaper", None)
    health_status["checks"]["lease_reaper"] = {"running": reaper.running if reaper is not None else False}

    return health_status


@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Marketplace Sync Queue API",
        "version": __version__,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")
    uvicorn.run(
        "marketsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["marketsync"],
        log_level="info",
        access_log=True
    )
