"""
FastAPI Entity Risk Screening API Server

Provides REST API endpoints over the screening engine and the change-stream
watcher.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

import psutil
from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.responses import RedirectResponse, Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.middleware import (
    RateLimiter,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    setup_cors,
    setup_exception_handlers,
)
from api.models import (
    AcknowledgeRequest,
    AlertListResponse,
    AlertResponse,
    ErrorResponse,
    HealthResponse,
    ScreeningRequest,
    ScreeningResponse,
    WalletScreeningRequest,
    WatchlistRequest,
    WatchlistResponse,
    WatchlistStatusResponse,
)
from config_manager import ConfigManager, ConfigurationError, configure_logging, get_config
from database import WatchlistStore, close_db, init_db
from models import AlertStatus, Severity, SubjectKind
from monitoring import get_source_metrics
from screener import EntityScreener, InputValidationError, ScreeningReport
from security_logger import AuditLogger, get_audit_logger
from watcher import ChangeStreamWatcher

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH") or None
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_screener: Optional[EntityScreener] = None
_watcher: Optional[ChangeStreamWatcher] = None
_config: Optional[ConfigManager] = None
_audit: Optional[AuditLogger] = None
_startup_time: Optional[datetime] = None
_warm_up_task: Optional[asyncio.Task] = None
_persistence = None

rate_limiter = RateLimiter()

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_screener() -> EntityScreener:
    """Dependency to get the screener instance."""
    if _screener is None:
        raise HTTPException(
            status_code=503, detail="Screener not initialized. Service is starting up."
        )
    return _screener


def get_watcher() -> ChangeStreamWatcher:
    """Dependency to get the change-stream watcher."""
    if _watcher is None:
        raise HTTPException(
            status_code=503, detail="Watcher not initialized. Service is starting up."
        )
    return _watcher


def _current_audit() -> Optional[AuditLogger]:
    return _audit


# Create FastAPI application
app = FastAPI(
    title="Entity Risk Screening API",
    description="Screen names, organizations and wallet addresses against sanctions, "
                "PEP, leak and court-record sources; watch companies for registry changes",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware (last added runs first)
setup_cors(app)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(RequestLoggingMiddleware, audit_provider=_current_audit)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Build the screener and watcher; lists load in the background."""
    global _screener, _watcher, _config, _audit, _startup_time, _warm_up_task, _persistence

    logger.info("🚀 Starting Entity Risk Screening API...")

    try:
        _config = get_config(CONFIG_PATH)
        configure_logging(_config)
        logger.info("✓ Configuration loaded")
    except ConfigurationError as e:
        logger.error(f"✗ Configuration error: {e}")
        raise

    _audit = get_audit_logger(_config.logging.security_log_dir)
    _screener = EntityScreener(_config, audit=_audit)
    _warm_up_task = asyncio.create_task(_screener.warm_up())

    loop = asyncio.get_running_loop()
    store = None
    try:
        _persistence = await loop.run_in_executor(None, init_db, _config.database)
        store = WatchlistStore(_persistence)
        logger.info("✓ Watchlist persistence enabled")
    except Exception as e:
        logger.warning(f"⚠ Database unavailable, watchlist kept in memory only: {e}")

    # Loading the stored watchlist and alerts is blocking I/O
    _watcher = await loop.run_in_executor(
        None, lambda: ChangeStreamWatcher(_config.watcher, store=store, audit=_audit)
    )
    await _watcher.start()

    _startup_time = datetime.now(timezone.utc)
    logger.info("✓ API ready")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Entity Risk Screening API...")
    if _warm_up_task is not None and not _warm_up_task.done():
        _warm_up_task.cancel()
    if _watcher is not None:
        await _watcher.stop()
    if _screener is not None:
        await _screener.close()
    close_db()


def _screening_response(report: ScreeningReport) -> ScreeningResponse:
    risk = report.assessment
    return ScreeningResponse(
        screening_id=str(uuid.uuid4()),
        screening_date=datetime.now(timezone.utc).isoformat(),
        subject=report.query.subject_text,
        subject_kind=report.query.subject_kind.value,
        score=risk.score,
        level=risk.level.value,
        flags=[f.to_dict() for f in risk.flags],
        matches=[c.to_dict() for c in report.candidates],
        diagnostics=dict(risk.diagnostics),
        overridden=risk.overridden,
        processing_time_ms=report.duration_ms,
    )


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
}


# ============================================
# SCREENING
# ============================================

@app.post(
    "/api/v1/screen",
    response_model=ScreeningResponse,
    responses=ERROR_RESPONSES,
    summary="Screen a name or organization",
    description="Fan out to every enabled source and return the aggregated risk assessment",
)
async def screen_subject(
    request: ScreeningRequest,
    screener: EntityScreener = Depends(get_screener),
    api_key: str = Depends(verify_api_key),
):
    report = await screener.screen_report(
        request.subject,
        request.subject_kind,
        {"country": request.country, "jurisdiction": request.jurisdiction},
    )
    return _screening_response(report)


@app.post(
    "/api/v1/screen/wallet",
    response_model=ScreeningResponse,
    responses=ERROR_RESPONSES,
    summary="Screen a crypto wallet address",
)
async def screen_wallet(
    request: WalletScreeningRequest,
    screener: EntityScreener = Depends(get_screener),
    api_key: str = Depends(verify_api_key),
):
    report = await screener.screen_report(request.address, SubjectKind.WALLET)
    return _screening_response(report)


# ============================================
# ALERTS
# ============================================

def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value.strip().upper() if enum_cls is Severity else value.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InputValidationError(
            f"Unknown {field}: {value}",
            field=field,
            code=f"INVALID_{field.upper()}",
            suggestion=f"Use one of: {allowed}",
        )


@app.get(
    "/api/v1/alerts",
    response_model=AlertListResponse,
    responses=ERROR_RESPONSES,
    summary="List watchlist alerts, most recent first",
)
async def list_alerts(
    severity: Optional[str] = Query(default=None, description="CRITICAL, HIGH, MEDIUM or LOW"),
    subject_key: Optional[str] = Query(default=None, max_length=32),
    status: Optional[str] = Query(default=None, description="new, acknowledged or resolved"),
    offset: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    watcher: ChangeStreamWatcher = Depends(get_watcher),
    api_key: str = Depends(verify_api_key),
):
    alerts = watcher.get_alerts(
        severity=_parse_enum(Severity, severity, "severity"),
        subject_key=subject_key.strip().upper() if subject_key else None,
        status=_parse_enum(AlertStatus, status, "status"),
        offset=offset,
        limit=limit,
    )
    return AlertListResponse(
        alerts=[AlertResponse(**a.to_dict()) for a in alerts],
        counts=watcher.get_alert_counts(),
        offset=offset,
        limit=limit if limit is not None else watcher.config.default_page_size,
    )


@app.post(
    "/api/v1/alerts/{alert_id}/acknowledge",
    response_model=AlertResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Unknown alert"}},
    summary="Acknowledge or resolve an alert",
)
async def acknowledge_alert(
    alert_id: str,
    request: Optional[AcknowledgeRequest] = None,
    watcher: ChangeStreamWatcher = Depends(get_watcher),
    api_key: str = Depends(verify_api_key),
):
    status = _parse_enum(AlertStatus, (request or AcknowledgeRequest()).status, "status")
    alert = watcher.acknowledge_alert(alert_id, status)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return AlertResponse(**alert.to_dict())


# ============================================
# WATCHLIST
# ============================================

@app.post(
    "/api/v1/watchlist",
    response_model=WatchlistResponse,
    responses=ERROR_RESPONSES,
    summary="Add a company to the watchlist",
)
async def add_to_watchlist(
    request: WatchlistRequest,
    watcher: ChangeStreamWatcher = Depends(get_watcher),
    api_key: str = Depends(verify_api_key),
):
    watcher.add_to_watchlist(request.subject_key, request.name)
    return WatchlistResponse(
        subject_key=request.subject_key.strip().upper(),
        watched=True,
        watchlist_size=len(watcher.watchlist),
    )


@app.delete(
    "/api/v1/watchlist/{subject_key}",
    response_model=WatchlistResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Not on watchlist"}},
    summary="Remove a company from the watchlist",
)
async def remove_from_watchlist(
    subject_key: str,
    watcher: ChangeStreamWatcher = Depends(get_watcher),
    api_key: str = Depends(verify_api_key),
):
    if not watcher.remove_from_watchlist(subject_key):
        raise HTTPException(status_code=404, detail="Subject is not on the watchlist")
    return WatchlistResponse(
        subject_key=subject_key.strip().upper(),
        watched=False,
        watchlist_size=len(watcher.watchlist),
    )


@app.get(
    "/api/v1/watchlist/status",
    response_model=WatchlistStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Watcher connection and watchlist status",
)
async def watchlist_status(
    watcher: ChangeStreamWatcher = Depends(get_watcher),
    api_key: str = Depends(verify_api_key),
):
    return WatchlistStatusResponse(**watcher.get_watchlist_status())


# ============================================
# OPERATIONS
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Reference list status, source statistics and process info",
)
async def health_check():
    """Always returns HTTP 200; problems are reported in the body."""
    try:
        memory_usage_mb = None
        try:
            memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
        except psutil.Error:
            pass

        uptime_seconds = None
        if _startup_time:
            uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

        database_ok = None
        if _persistence is not None:
            loop = asyncio.get_running_loop()
            database_ok = await loop.run_in_executor(None, _persistence.health_check)

        lists = _screener.list_status() if _screener is not None else {}
        degraded = _screener is None or not all(s.get("loaded") for s in lists.values())
        return HealthResponse(
            status="degraded" if degraded else "healthy",
            lists=lists,
            sources=get_source_metrics(),
            watcher_configured=_watcher.configured if _watcher is not None else False,
            database_ok=database_ok,
            memory_usage_mb=memory_usage_mb,
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        logger.error(f"✗ Health check failed: {e}")
        return HealthResponse(status="error", error_message=str(e))


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
