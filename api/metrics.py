"""
Prometheus metrics for the clipdeck API.

Metrics are exposed at /metrics in Prometheus text format.
"""

from prometheus_client import Counter, Info, generate_latest

APP_INFO = Info("clipdeck", "clipdeck application information")

VIDEO_UPLOADS_TOTAL = Counter(
    "clipdeck_video_uploads_total",
    "Total video uploads forwarded to the video host",
    ["result"],  # success, failed
)

VIDEO_REFERENCES_TOTAL = Counter(
    "clipdeck_video_references_total",
    "Total existing host assets registered by file code",
)

THUMBNAIL_FALLBACKS_TOTAL = Counter(
    "clipdeck_thumbnail_fallbacks_total",
    "Uploads that fell back to the host thumbnail because the image CDN failed",
)

VIDEO_VIEWS_TOTAL = Counter(
    "clipdeck_video_views_total",
    "Total video detail views",
)

UPSTREAM_ERRORS_TOTAL = Counter(
    "clipdeck_upstream_errors_total",
    "Errors returned by third-party services",
    ["service"],  # video_host, image_cdn
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "dev"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "clipdeck"})
