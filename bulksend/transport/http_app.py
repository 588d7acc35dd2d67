# bulksend/transport/http_app.py
"""
HTTP application for bulk notification jobs.

Security layers:
1. Public: health/readiness probes
2. User: bulk job routes (identity from the upstream gateway's X-User-Id,
   ownership enforced by the service)
3. Scheduler: sweep and metrics (Bearer CRON_SECRET)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from bulksend.config import settings
from bulksend.core.bulk import (
    BulkJobError,
    BulkJobService,
    ChunkClaimer,
    DispatchExecutor,
    JobDriver,
    TransientStoreError,
)
from bulksend.core.bulk.ports import BulkJobStore, NotificationDispatcher, RecipientDirectory
from bulksend.infra.db_async import close_pool, init_pool
from bulksend.infra.http_client import close_all_sessions
from bulksend.infra.logging_config import get_logger, setup_logging
from bulksend.infra.metrics import get_metrics_collector
from bulksend.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from bulksend.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from bulksend.transport.models import (
    ChunkResponse,
    CreateBulkJobRequest,
    CreateBulkJobResponse,
    JobStatusResponse,
    RecipientEntryResponse,
    RecipientsResponse,
    SweepItemResponse,
    SweepResponse,
)
from bulksend.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    get_current_user_id,
    require_cron_secret,
    sanitize_error_message,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# WIRING
# ============================================================================

def wire_components(
    state,
    *,
    store: BulkJobStore,
    directory: RecipientDirectory,
    dispatcher: NotificationDispatcher,
    start_immediately: bool = True,
) -> None:
    """Build the processor around the given adapters and attach it to app state."""
    claimer = ChunkClaimer(store, lease_seconds=settings.claim_lease_seconds)
    executor = DispatchExecutor(store, dispatcher, default_country=settings.default_country)
    driver = JobDriver(store, directory, claimer, executor)

    state.store = store
    state.driver = driver
    state.bulk_service = BulkJobService(
        store, directory, driver,
        chunk_size=settings.bulk_chunk_size,
        start_immediately=start_immediately,
    )
    state.rate_limiter = RateLimitDependency(
        InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60),
    )
    state.create_rate_limiter = RateLimitDependency(
        InMemoryRateLimiter(max_requests=settings.bulk_create_rate_limit_per_minute, window_seconds=60),
        scope="create",
    )


def _build_memory_adapters():
    from bulksend.infra.memory_store import (
        InMemoryBulkJobStore,
        InMemoryRecipientDirectory,
        load_seed,
    )

    store = InMemoryBulkJobStore()
    directory = InMemoryRecipientDirectory(store)
    if settings.memory_seed_path:
        load_seed(directory, settings.memory_seed_path)
    return store, directory


async def _build_postgres_adapters():
    from bulksend.infra.pg_bulk_job_store_async import get_bulk_job_store
    from bulksend.infra.pg_recipient_directory_async import get_recipient_directory
    from bulksend.infra.schema_validator import validate_schema_version

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        await validate_schema_version()
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m bulksend.infra.migrate",
            exc_info=True
        )
        raise

    return get_bulk_job_store(), get_recipient_directory()


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> BulkJobService:
    return request.app.state.bulk_service


def get_driver(request: Request) -> JobDriver:
    return request.app.state.driver


async def rate_limit_check(request: Request) -> None:
    await request.app.state.rate_limiter(request)


async def create_rate_limit_check(request: Request) -> None:
    await request.app.state.create_rate_limiter(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    logger.info(
        f"Starting application: env={settings.app_env}, store={settings.store_backend}, "
        f"provider={settings.channel_provider}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

    check_configured_tokens()

    if settings.store_backend == "memory":
        store, directory = _build_memory_adapters()
    else:
        store, directory = await _build_postgres_adapters()

    from bulksend.infra.notification_dispatcher import ChannelNotificationDispatcher
    wire_components(
        fastapi_app.state,
        store=store,
        directory=directory,
        dispatcher=ChannelNotificationDispatcher(settings.channel_provider),
    )

    logger.info(
        f"Bulk processor ready: chunk={settings.bulk_chunk_size}, "
        f"lease={settings.claim_lease_seconds}s, sweep_budget={settings.sweep_time_budget_seconds}s"
    )

    yield

    logger.info("Shutting down application")

    # Let fire-and-forget first chunks finish their current sends
    await fastapi_app.state.bulk_service.wait_background()

    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Bulk Notification Jobs",
    description="Chunked, resumable bulk WhatsApp sends for event guests",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-User-Id"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(BulkJobError)
async def bulk_job_error_handler(request: Request, exc: BulkJobError):
    """Map typed domain errors to their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"Bulk job error: {exc.__class__.__name__}: {exc.detail}")

    headers = {"Retry-After": "5"} if isinstance(exc, TransientStoreError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Basic health check - PUBLIC endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness check - PUBLIC endpoint. Checks the store is reachable."""
    if settings.store_backend == "memory":
        return {"status": "healthy"}

    from bulksend.infra.schema_validator import get_schema_info
    try:
        info = await get_schema_info()
    except Exception as exc:
        logger.warning(f"Readiness check failed: {type(exc).__name__}: {exc}")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    if not info.get("is_compatible"):
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


# ============================================================================
# BULK JOB ENDPOINTS (X-User-Id required)
# Routes: parse request → call service → BulkJobError handler → JSON.
# ============================================================================

@app.post(
    "/bulk-jobs",
    status_code=202,
    response_model=CreateBulkJobResponse,
    dependencies=[Depends(create_rate_limit_check)],
)
async def create_bulk_job(
    body: CreateBulkJobRequest,
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    """Create a job and start its first chunk in the background."""
    result = await service.create_job(
        user_id, body.event_id, body.message_type, body.recipient_ids, channel=body.channel,
    )
    return CreateBulkJobResponse(job_id=result.job_id, total_recipients=result.total_recipients)


@app.get("/bulk-jobs/{job_id}", response_model=JobStatusResponse, dependencies=[Depends(rate_limit_check)])
async def get_bulk_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    job = await service.get_status(user_id, job_id)
    return JobStatusResponse.from_job(job)


@app.post("/bulk-jobs/{job_id}/continue", response_model=ChunkResponse, dependencies=[Depends(rate_limit_check)])
async def continue_bulk_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    """Process the next chunk. Poll until is_complete."""
    result = await service.continue_job(user_id, job_id)
    return ChunkResponse.from_result(result)


@app.post("/bulk-jobs/{job_id}/cancel", response_model=JobStatusResponse, dependencies=[Depends(rate_limit_check)])
async def cancel_bulk_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    job = await service.cancel_job(user_id, job_id)
    return JobStatusResponse.from_job(job)


@app.get(
    "/bulk-jobs/{job_id}/recipients",
    response_model=RecipientsResponse,
    dependencies=[Depends(rate_limit_check)],
)
async def list_bulk_job_recipients(
    job_id: str,
    state: Optional[str] = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    entries = await service.list_recipients(user_id, job_id, state, limit=limit)
    return RecipientsResponse(
        job_id=job_id,
        state=state.upper() if state else None,
        count=len(entries),
        recipients=[RecipientEntryResponse.from_entry(e) for e in entries],
    )


@app.post(
    "/bulk-jobs/{job_id}/retry",
    status_code=202,
    response_model=CreateBulkJobResponse,
    dependencies=[Depends(create_rate_limit_check)],
)
async def retry_bulk_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BulkJobService = Depends(get_service),
):
    """Re-send to the retryable failures of a finished job, as a new job."""
    result = await service.retry_failed(user_id, job_id)
    return CreateBulkJobResponse(job_id=result.job_id, total_recipients=result.total_recipients)


# ============================================================================
# SCHEDULER / MONITORING ENDPOINTS (Bearer CRON_SECRET)
# ============================================================================

@app.api_route(
    "/cron/process-bulk-jobs",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def process_bulk_jobs(driver: JobDriver = Depends(get_driver)):
    """Advance every active job by one chunk, within the sweep time budget."""
    items = await driver.sweep(
        settings.sweep_chunk_size,
        settings.sweep_time_budget_seconds,
        max_jobs=settings.sweep_max_jobs,
    )
    return SweepResponse(
        processed_jobs=len(items),
        results=[SweepItemResponse.from_item(item) for item in items],
    )


@app.get("/metrics", dependencies=[Depends(require_cron_secret)])
def metrics():
    """Operational metrics - scheduler secret required."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()
