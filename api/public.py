"""
Public API - catalog listing, video detail (counts a view), embed URLs, health.

No authentication; everything here is safe to expose to the frontend.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.catalog import CatalogStore, get_catalog
from api.common import check_health, limiter
from api.metrics import VIDEO_VIEWS_TOTAL
from api.schemas import EmbedResponse, VideoDetailResponse, VideoListResponse, VideoResponse
from api.video_host import VideoHostClient, get_video_host
from code_version import get_version_info
from config import ENVIRONMENT, MAX_TITLE_LENGTH, RATE_LIMIT_DEFAULT

logger = logging.getLogger(__name__)

router = APIRouter(tags=["public"])


@router.get("/api/health")
async def health_check(host: VideoHostClient = Depends(get_video_host)):
    """
    Health check endpoint for monitoring and load balancers.

    Reports database and staging-directory health plus the video host quota
    (null when the host can't be reached). Returns 503 if a local check fails.
    """
    result = await check_health()
    quota = await host.get_quota_info()

    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "ok" if result["healthy"] else "unhealthy",
            "message": "Video platform API is running",
            "environment": ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **get_version_info(),
            "checks": result["checks"],
            "video_host_quota": quota,
        },
    )


@router.get("/api/videos", response_model=VideoListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_videos(
    request: Request,
    search: Optional[str] = Query(
        default=None, max_length=MAX_TITLE_LENGTH, description="Case-insensitive match on title or file code"
    ),
    catalog: CatalogStore = Depends(get_catalog),
) -> VideoListResponse:
    """All videos, newest first, optionally filtered by search."""
    records = await catalog.list(search=search)
    return VideoListResponse(
        count=len(records),
        videos=[VideoResponse(**record) for record in records],
    )


@router.get("/api/videos/{video_id}", response_model=VideoDetailResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_video(
    request: Request, video_id: int, catalog: CatalogStore = Depends(get_catalog)
) -> VideoDetailResponse:
    """Fetch one video and count a view."""
    record = await catalog.increment_views(video_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    VIDEO_VIEWS_TOTAL.inc()
    return VideoDetailResponse(video=VideoResponse(**record))


@router.get("/api/videos/{video_id}/embed", response_model=EmbedResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_embed_url(
    request: Request,
    video_id: int,
    catalog: CatalogStore = Depends(get_catalog),
    host: VideoHostClient = Depends(get_video_host),
) -> EmbedResponse:
    """Iframe URL for playback. Doesn't count as a view."""
    record = await catalog.get_by_id(video_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return EmbedResponse(embed_url=host.embed_url(record["embed_code"] or record["file_code"]))
