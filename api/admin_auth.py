"""
Shared-secret authentication for admin routes.

Admin clients send the password in the X-Admin-Password header. The check
runs as a FastAPI dependency before the route body, so a rejected request
never reaches the catalog, the video host or the staging directory.
"""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

from api.common import get_real_ip
from config import ADMIN_PASSWORD

ADMIN_PASSWORD_HEADER = "X-Admin-Password"
UNAUTHORIZED_DETAIL = "Unauthorized! Admin password required."

# Security event logger for authentication events
security_logger = logging.getLogger("security.admin_auth")


def check_admin_password(candidate: str, expected: Optional[str] = None) -> bool:
    """
    Constant-time comparison of a supplied password against the configured one.

    An unconfigured (empty) password never matches, so admin stays closed
    until CLIPDECK_ADMIN_PASSWORD is set.
    """
    if expected is None:
        expected = ADMIN_PASSWORD
    if not expected or not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(request: Request) -> None:
    """
    FastAPI dependency that rejects requests without a valid admin password.

    Raises:
        HTTPException: 401 if the header is missing, wrong, or admin is unconfigured
    """
    path = request.url.path
    client_ip = get_real_ip(request)
    supplied = request.headers.get(ADMIN_PASSWORD_HEADER, "")

    if not ADMIN_PASSWORD:
        security_logger.warning(
            "Admin auth rejected: CLIPDECK_ADMIN_PASSWORD is not configured",
            extra={"event": "auth_failure", "reason": "not_configured", "path": path, "client_ip": client_ip},
        )
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)

    if not supplied:
        security_logger.warning(
            "Admin auth failed: no credentials",
            extra={"event": "auth_failure", "reason": "no_credentials", "path": path, "client_ip": client_ip},
        )
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)

    if not check_admin_password(supplied, ADMIN_PASSWORD):
        security_logger.warning(
            "Admin auth failed: invalid password",
            extra={"event": "auth_failure", "reason": "invalid_password", "path": path, "client_ip": client_ip},
        )
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_DETAIL)

    security_logger.info(
        "Admin auth successful",
        extra={"event": "auth_success", "method": "header", "path": path, "client_ip": client_ip},
    )
