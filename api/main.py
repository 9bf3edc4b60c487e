"""
Account Identity Service
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000

The periodic sync scheduler starts with the app when
IDENTITY_SCHEDULER_ENABLED is true and stops on shutdown.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import identity
from config.settings import settings

logger = logging.getLogger(__name__)

# Background services (initialized on startup)
_scheduler = None
_unified_client = None


def build_scheduler():
    """Scheduler running the native sync pass and, when configured, unified-API CRM polling."""
    from api.services.scheduler import Scheduler
    from api.services.sync_engine import get_sync_engine

    global _unified_client

    engine = get_sync_engine()
    jobs = [("integration-sync", lambda: engine.sync_all(trigger_source="scheduled"))]

    if settings.unified_api_enabled:
        from api.services.unified_ingest import UnifiedApiClient, UnifiedSyncService
        _unified_client = UnifiedApiClient()
        unified = UnifiedSyncService(store=engine.store, client=_unified_client, resolver=engine.resolver)
        jobs.append(("unified-crm-poll", unified.poll_all_linked_accounts))

    return Scheduler(
        interval_seconds=settings.crm_poll_interval_seconds,
        jobs=jobs,
        name="IdentitySyncScheduler",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    global _scheduler, _unified_client

    if settings.scheduler_enabled:
        try:
            _scheduler = build_scheduler()
            _scheduler.start()
            logger.info("Sync scheduler started successfully")
        except Exception as e:
            logger.error(f"Failed to start sync scheduler: {e}")
    else:
        logger.info("Sync scheduler disabled (IDENTITY_SCHEDULER_ENABLED=false)")

    yield

    if _scheduler:
        _scheduler.stop()
        _scheduler = None
    if _unified_client:
        _unified_client.close()
        _unified_client = None


app = FastAPI(
    title="Account Identity Service",
    description="Entity resolution, review queue and account merge for call and CRM data",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(identity.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized.pop("ctx", None)
        sanitized_errors.append(sanitized)

    for error in errors:
        if "org_id" in error.get("loc", ()):
            return JSONResponse(
                status_code=400,
                content={"error": "org_id is required", "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check endpoint that verifies critical dependencies."""
    from api.services.identity_store import get_identity_store

    checks = {"database": True}
    try:
        get_identity_store()
    except Exception as e:
        logger.error(f"Health check: identity store unavailable: {e}")
        checks["database"] = False

    checks["unified_api_configured"] = settings.unified_api_enabled
    checks["scheduler_running"] = bool(_scheduler and _scheduler.is_running)

    return {
        "status": "healthy" if checks["database"] else "degraded",
        "service": "identity",
        "checks": checks,
    }
