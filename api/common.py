"""
Common utilities shared between the public and admin routers.

Middleware, client IP resolution, rate-limit handling, upload staging and
health checks live here so both routers behave the same way.
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
from fastapi import HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api.database import database
from config import (
    MAX_UPLOAD_SIZE,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    STORAGE_CHECK_TIMEOUT,
    TRUSTED_PROXIES,
    UPLOAD_CHUNK_SIZE,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt as an aware UTC datetime. SQLite hands back naive values for UTC columns."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_real_ip(request: Request) -> str:
    """
    Client address used for rate limiting, audit entries and auth logs.

    X-Forwarded-For is honoured only when the direct peer is listed in
    CLIPDECK_TRUSTED_PROXIES; otherwise the socket address is used.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2, ...
            return forwarded.split(",")[0].strip()

    return client_ip


# Shared rate limiter; registered on app.state by api.main
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


def get_request_id(request: Request) -> Optional[str]:
    """Request ID assigned by RequestIDMiddleware (None outside a request)."""
    return getattr(request.state, "request_id", None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with an ID for log correlation.

    An incoming X-Request-ID header is kept as-is; otherwise a UUID4 is
    generated. The ID is echoed back in the response headers.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # JSON API only; the embed iframes point at the video host, not at us
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def validate_content_length(request: Request, max_size: int = MAX_UPLOAD_SIZE) -> None:
    """
    Validate Content-Length header against the upload ceiling.

    This provides early rejection of oversized uploads before the transfer starts.

    Raises:
        HTTPException: 413 if Content-Length exceeds max_size
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            too_large = int(content_length) > max_size
        except ValueError:
            return  # Invalid header, rely on streaming validation
        if too_large:
            max_size_gb = max_size / (1024 * 1024 * 1024)
            raise HTTPException(
                status_code=413,
                detail=f"File too large. Maximum upload size is {max_size_gb:.0f} GB",
            )


def staging_path(filename: Optional[str]) -> Path:
    """Unique path in the uploads dir, keeping the original extension."""
    suffix = Path(filename).suffix.lower() if filename else ""
    return UPLOADS_DIR / f"{uuid.uuid4().hex}{suffix}"


async def save_upload_with_size_limit(file: UploadFile, upload_path: Path, max_size: int = MAX_UPLOAD_SIZE) -> int:
    """
    Stream an upload to disk with size validation.

    Returns the total bytes written. The partial file is removed on any failure.

    Raises:
        HTTPException: 413 if the file exceeds max_size, 503 on storage errors
    """
    total_size = 0
    try:
        async with aiofiles.open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum upload size is {max_size / (1024 * 1024 * 1024):.0f} GB",
                    )
                await f.write(chunk)
    except HTTPException:
        upload_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise HTTPException(
            status_code=503,
            detail="Upload staging temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )

    return total_size


def _check_storage_sync() -> bool:
    """Verify the staging directory exists and is writable (runs in a thread)."""
    if os.environ.get("CLIPDECK_TEST_MODE"):
        return True

    try:
        if not UPLOADS_DIR.exists():
            return False
        test_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        test_file.write_text("health check")
        test_file.unlink()
        return True
    except OSError:
        return False


async def check_health() -> dict:
    """
    Perform health checks for database and upload staging storage.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {
        "database": False,
        "storage": False,
    }

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    try:
        loop = asyncio.get_running_loop()
        checks["storage"] = await asyncio.wait_for(
            loop.run_in_executor(None, _check_storage_sync),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out")
    except Exception as e:
        logger.warning(f"Storage health check failed: {e}")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
