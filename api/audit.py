"""
Audit logging for administrative actions.

Every admin mutation (upload, add-by-reference, delete) and every credential
check writes one JSON line, so an operator can answer "who added this video"
without digging through access logs.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from fastapi import Request

from api.common import get_real_ip, get_request_id
from api.errors import truncate_string
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)

# Ensure log directory exists (skip in test mode)
if not os.environ.get("CLIPDECK_TEST_MODE") and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # Will fall back to console logging


class AuditAction(str, Enum):
    """Audit action types for categorization."""

    ADMIN_VERIFY = "admin_verify"
    VIDEO_UPLOAD = "video_upload"
    VIDEO_ADD = "video_add"
    VIDEO_DELETE = "video_delete"


class AuditLogger:
    """
    Structured audit logger for administrative actions.

    Logs events in JSON format. Falls back to console logging if the audit
    file can't be opened.
    """

    def __init__(self):
        self.logger = logging.getLogger("clipdeck.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")  # Raw JSON output

        if not AUDIT_LOG_ENABLED:
            self.logger.addHandler(logging.NullHandler())
            return

        try:
            handler = RotatingFileHandler(
                AUDIT_LOG_PATH,
                maxBytes=AUDIT_LOG_MAX_BYTES,
                backupCount=AUDIT_LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError:
            handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        self.logger.addHandler(handler)

    def build_entry(
        self,
        action: AuditAction,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource_id: Optional[Any] = None,
        resource_name: Optional[str] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        """Build the JSON-serializable audit entry, omitting empty fields."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
        }
        if request_id:
            entry["request_id"] = request_id
        if client_ip:
            entry["client_ip"] = client_ip
        if user_agent:
            entry["user_agent"] = truncate_string(user_agent, ERROR_DETAIL_MAX_LENGTH)
        if resource_id is not None:
            entry["resource_type"] = "video"
            entry["resource_id"] = resource_id
        if resource_name:
            entry["resource_name"] = resource_name
        if details:
            entry["details"] = details
        if error:
            entry["error"] = truncate_string(error, ERROR_DETAIL_MAX_LENGTH)
        return entry

    def log(self, action: AuditAction, **fields):
        """Log an audit event. Keyword fields are those accepted by build_entry."""
        if not AUDIT_LOG_ENABLED:
            return
        self.logger.info(json.dumps(self.build_entry(action, **fields), default=str))


# Singleton instance for use across the application
audit_logger = AuditLogger()


def log_audit(
    action: AuditAction,
    request: Optional[Request] = None,
    resource_id: Optional[Any] = None,
    resource_name: Optional[str] = None,
    details: Optional[dict] = None,
    success: bool = True,
    error: Optional[str] = None,
):
    """
    Convenience function for logging audit events from a route.

    Client IP, user agent and request ID are taken from the request when given.

    Example usage:
        log_audit(
            AuditAction.VIDEO_UPLOAD,
            request,
            resource_id=video["id"],
            resource_name=video["file_code"],
            details={"title": video["title"]},
        )
    """
    fields = {
        "resource_id": resource_id,
        "resource_name": resource_name,
        "details": details,
        "success": success,
        "error": error,
    }
    if request is not None:
        fields["client_ip"] = get_real_ip(request)
        fields["user_agent"] = request.headers.get("user-agent")
        fields["request_id"] = get_request_id(request)
    audit_logger.log(action, **fields)
