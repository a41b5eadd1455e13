"""
FastAPI Middleware for the Screening API

Provides CORS configuration, request ID + logging, security headers,
per-client rate limiting and global error handling.
"""

import logging
import os
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8000",
]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}

# Paths never rate limited (probes and scrapers)
RATE_LIMIT_EXEMPT = ("/api/v1/health", "/metrics")


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins can be customized via CORS_ORIGINS environment variable
    (comma-separated list of allowed origins).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID, logs each request and sets the audit context.

    An incoming X-Request-ID header is kept (sanitized); otherwise one is
    generated. The ID is echoed back on the response.
    """

    def __init__(self, app, audit_provider: Optional[Callable] = None):
        super().__init__(app)
        self.audit_provider = audit_provider

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        incoming = request.headers.get("X-Request-ID")
        request_id = sanitize_for_logging(incoming, 64) if incoming else f"REQ-{uuid.uuid4().hex[:12]}"

        request.state.request_id = request_id
        request.state.start_time = start_time

        audit = self.audit_provider() if self.audit_provider else None
        if audit is not None:
            audit.set_request_context(request_id, request.client.host if request.client else "")

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise
        finally:
            if audit is not None:
                audit.clear_request_context()

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)
        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative security headers to every response."""

    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class RateLimiter:
    """Sliding-window request counter per client address.

    Window and limit default to RATE_LIMIT_WINDOW_SECONDS and
    RATE_LIMIT_REQUESTS (60 requests per 60 seconds). A limit of 0
    disables the check.
    """

    def __init__(self, max_requests: Optional[int] = None,
                 window_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = (
            max_requests if max_requests is not None
            else int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
        )
        self.window_seconds = (
            window_seconds if window_seconds is not None
            else float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
        )
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, client: str) -> Optional[int]:
        """Record a request; returns seconds to wait when over the limit"""
        if self.max_requests <= 0:
            return None
        now = self.clock()
        hits = self._hits[client]
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return max(1, int(self.window_seconds - (now - hits[0])))
        hits.append(now)
        return None

    def reset(self) -> None:
        self._hits.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects clients over the limiter's budget with 429."""

    def __init__(self, app, limiter: Optional[RateLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or RateLimiter()

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path in RATE_LIMIT_EXEMPT:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        retry_after = self.limiter.hit(client)
        if retry_after is not None:
            logger.warning(f"⚠ Rate limit exceeded for {sanitize_for_logging(client, 45)}")
            response = create_error_response(
                code="RATE_LIMITED",
                message="Too many requests",
                status_code=429,
                suggestion=f"Retry after {retry_after} seconds",
            )
            response.headers["Retry-After"] = str(retry_after)
            return response

        return await call_next(request)


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response: {error, code, field, suggestion}"""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "code": code,
            "field": field,
            "suggestion": suggestion,
        },
    )


async def input_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    """400 for screener input validation failures."""
    return create_error_response(
        code=exc.code,
        message=str(exc),
        status_code=400,
        field=exc.field,
        suggestion=exc.suggestion or None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """400 for malformed request bodies and query parameters."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    return create_error_response(
        code="REQUEST_VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=400,
        field=".".join(location) or None,
        suggestion="Check the request against the API documentation at /api/docs",
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )
    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: log everything, return nothing internal."""
    from config_manager import ConfigurationError

    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    # Import here to avoid circular imports
    from screener import InputValidationError

    app.add_exception_handler(InputValidationError, input_validation_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
