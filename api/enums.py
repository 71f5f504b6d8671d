"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Status of a catalog record, as reported by the video host."""

    PROCESSING = "processing"
    ACTIVE = "active"
    FAILED = "failed"


class QueueItemStatus(str, Enum):
    """Lifecycle of one item in the bulk upload queue."""

    PENDING = "pending"
    UPLOADING = "uploading"
    DONE = "done"
    ERROR = "error"


class ThumbnailSource(str, Enum):
    """Where a queue item's thumbnail came from (display only)."""

    AUTO = "auto"  # captured from the video
    MANUAL = "manual"  # picked by the user
    DEFAULT = "default"  # none; server falls back to the host thumbnail
