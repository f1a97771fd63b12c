"""Cooperative Ledger -- FastAPI Application."""
from contextlib import asynccontextmanager
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from coopledger.config import settings
from coopledger.database import AsyncSessionLocal, async_engine
from coopledger.errors import LedgerError
from coopledger.middleware.audit_middleware import AuditReadAccessMiddleware
from coopledger.routes import auth, gl, org, reports
from coopledger.services.audit_service import AuditEvent, AuditEventCategory
from coopledger.services.ledger import (
    auto_close_expired_periods,
    get_audit_writer,
    get_ledger,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _system_event(action: str, details: dict | None = None) -> None:
    """Fire a SYSTEM-category audit event (non-blocking)."""
    get_audit_writer().fire_and_forget(AuditEvent.create(
        action,
        category=AuditEventCategory.SYSTEM,
        username="system",
        resource_type="system",
        details=details,
    ))


scheduler = AsyncIOScheduler()


async def run_audit_retention_purge():
    """Purge expired audit events from the JSONL and SQLite stores."""
    _system_event("system.scheduler.audit_retention_purge", {"status": "started"})
    try:
        summary = get_audit_writer().purge_expired()
        logger.info("Audit retention purge: %s", summary)
        _system_event("system.scheduler.audit_retention_purge", {
            "status": "completed", **summary,
        })
    except Exception as e:
        logger.error("Audit retention purge failed: %s", e)
        _system_event("system.scheduler.audit_retention_purge", {
            "status": "failed", "error": str(e),
        })


async def run_auto_close_periods():
    """Close expired fiscal periods and roll each cooperative forward."""
    _system_event("system.scheduler.auto_close_periods", {"status": "started"})
    try:
        summary = await auto_close_expired_periods(get_ledger(), AsyncSessionLocal)
        logger.info("Auto-close of expired periods: %s", summary)
        _system_event("system.scheduler.auto_close_periods", {
            "status": "completed", **summary,
        })
    except Exception as e:
        logger.error("Auto-close of expired periods failed: %s", e)
        _system_event("system.scheduler.auto_close_periods", {
            "status": "failed", "error": str(e),
        })


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Cooperative Ledger API...")
    _system_event("system.startup")

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    # Schedule jobs; a run still in progress is never started twice
    scheduler.add_job(
        run_audit_retention_purge,
        "interval",
        hours=settings.AUDIT_RETENTION_INTERVAL_HOURS,
        id="audit_retention_purge",
        max_instances=1,
        coalesce=True,
    )
    if settings.AUTO_CLOSE_PERIODS:
        scheduler.add_job(
            run_auto_close_periods,
            "interval",
            hours=settings.AUTO_CLOSE_INTERVAL_HOURS,
            id="auto_close_periods",
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    logger.info("Scheduled jobs started: %s", [job.id for job in scheduler.get_jobs()])

    yield

    # Shutdown
    _system_event("system.shutdown")
    scheduler.shutdown()
    await async_engine.dispose()
    logger.info("Cooperative Ledger API shut down")


app = FastAPI(
    title="Cooperative Ledger",
    description="Multi-cooperative double-entry general ledger: chart of accounts, "
                "fiscal periods, journal entries and balances",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Read-access audit for balance and report views
LEDGER_SENSITIVE_PATTERNS = [
    r"^/api/cooperatives/(?P<cooperative_id>[^/]+)/reports/",
    r"^/api/cooperatives/(?P<cooperative_id>[^/]+)/accounts/[^/]+/balance$",
]
app.add_middleware(
    AuditReadAccessMiddleware,
    writer=get_audit_writer(),
    patterns=LEDGER_SENSITIVE_PATTERNS,
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _error_response(status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = _error_response(exc.status_code, {
        "code": exc.status_code,
        "kind": "http_error",
        "message": exc.detail,
        "details": {},
    })
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, {
        "code": 422,
        "kind": "validation_error",
        "message": "Request validation error",
        "details": {"errors": errors},
    })


app.include_router(auth.router)
app.include_router(org.router)
app.include_router(gl.router)
app.include_router(reports.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "Cooperative Ledger API", "version": "1.0.0"}
