"""
Admin API - uploads, add-by-reference, deletes and stats.

Every route here requires the X-Admin-Password header (see api.admin_auth).
Uploads are staged to disk, forwarded to the video host, and the thumbnail
to the image CDN; only the resulting codes and URLs are stored.
"""

import logging
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.datastructures import UploadFile

from api.admin_auth import require_admin
from api.audit import AuditAction, log_audit
from api.catalog import CatalogStore, DuplicateFileCodeError, get_catalog
from api.common import limiter, save_upload_with_size_limit, staging_path, validate_content_length
from api.enums import VideoStatus
from api.image_cdn import ImageCDNClient, ImageCDNError, get_image_cdn
from api.metrics import (
    THUMBNAIL_FALLBACKS_TOTAL,
    UPSTREAM_ERRORS_TOTAL,
    VIDEO_REFERENCES_TOTAL,
    VIDEO_UPLOADS_TOTAL,
)
from api.schemas import (
    AddVideoRequest,
    MessageResponse,
    StatsResponse,
    VideoMutationResponse,
    VideoResponse,
)
from api.video_host import VideoHostClient, VideoHostError, VideoHostNotFoundError, get_video_host
from config import (
    DEFAULT_DURATION,
    MAX_THUMBNAIL_UPLOAD_SIZE,
    MAX_UPLOAD_SIZE,
    MAX_TITLE_LENGTH,
    RATE_LIMIT_ADMIN_VERIFY,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_UPLOAD,
    SUPPORTED_IMAGE_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
)
from uploader.metadata import is_valid_duration

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])

DUPLICATE_FILE_CODE_DETAIL = "Video with this file_code already exists"


def validate_video_upload(video: UploadFile) -> None:
    """
    Accept only known video containers with a video/* content type.

    Raises:
        HTTPException: 400 for anything else
    """
    ext = Path(video.filename or "").suffix.lower()
    content_type = (video.content_type or "").lower()
    if ext not in SUPPORTED_VIDEO_EXTENSIONS or not content_type.startswith("video/"):
        raise HTTPException(
            status_code=400,
            detail=f"Only video files are allowed for video field! Allowed: {SUPPORTED_VIDEO_EXTENSIONS_STR}",
        )


def validate_thumbnail_upload(thumbnail: UploadFile) -> None:
    """
    Accept image/* thumbnails, or octet-stream ones with an image extension.

    Raises:
        HTTPException: 400 for anything else
    """
    ext = Path(thumbnail.filename or "").suffix.lower()
    content_type = (thumbnail.content_type or "").lower()
    is_image_type = content_type.startswith("image/")
    if not (is_image_type or content_type == "application/octet-stream"):
        raise HTTPException(status_code=400, detail="Only image files are allowed for thumbnail!")
    if not is_image_type and ext not in SUPPORTED_IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only image files are allowed for thumbnail!")


def validate_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Video title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise HTTPException(status_code=400, detail=f"Title must be {MAX_TITLE_LENGTH} characters or less")
    return title


def validate_duration_field(duration: Optional[str]) -> str:
    duration = (duration or "").strip()
    if not duration:
        return DEFAULT_DURATION
    if not is_valid_duration(duration):
        raise HTTPException(status_code=400, detail="Duration must look like 4:05, 12:30 or 1:02:03")
    return duration


def normalize_host_status(status: Optional[str]) -> str:
    """Map whatever the host reports onto our status values (unknown -> processing)."""
    if status:
        status = str(status).lower()
        if status in {s.value for s in VideoStatus}:
            return status
    return VideoStatus.PROCESSING.value


@router.post("/api/admin/verify", response_model=MessageResponse)
@limiter.limit(RATE_LIMIT_ADMIN_VERIFY)
async def verify_admin(request: Request) -> MessageResponse:
    """Check the admin password. Reaching the body means it was accepted."""
    log_audit(AuditAction.ADMIN_VERIFY, request)
    return MessageResponse(message="Admin verified successfully")


@router.get("/api/admin/stats", response_model=StatsResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def admin_stats(request: Request, catalog: CatalogStore = Depends(get_catalog)) -> StatsResponse:
    return StatsResponse(stats=await catalog.stats())


@router.post("/api/videos/upload", response_model=VideoMutationResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video(
    request: Request,
    catalog: CatalogStore = Depends(get_catalog),
    host: VideoHostClient = Depends(get_video_host),
    cdn: ImageCDNClient = Depends(get_image_cdn),
) -> VideoMutationResponse:
    """
    Upload a video (multipart: video, optional thumbnail, title, duration).

    The form is read here rather than declared as parameters so the admin
    check above runs before any of the body is received.
    """
    validate_content_length(request, MAX_UPLOAD_SIZE)

    form = await request.form()
    staged: List[Path] = []
    try:
        video = form.get("video")
        if not isinstance(video, UploadFile):
            raise HTTPException(status_code=400, detail="No video file uploaded")
        thumbnail = form.get("thumbnail")
        if not isinstance(thumbnail, UploadFile) or not thumbnail.filename:
            thumbnail = None

        validate_video_upload(video)
        if thumbnail is not None:
            validate_thumbnail_upload(thumbnail)
        title = validate_title(form.get("title"))
        duration = validate_duration_field(form.get("duration"))

        video_path = staging_path(video.filename)
        staged.append(video_path)
        await save_upload_with_size_limit(video, video_path, max_size=MAX_UPLOAD_SIZE)

        thumbnail_path = None
        if thumbnail is not None:
            thumbnail_path = staging_path(thumbnail.filename)
            staged.append(thumbnail_path)
            await save_upload_with_size_limit(thumbnail, thumbnail_path, max_size=MAX_THUMBNAIL_UPLOAD_SIZE)

        try:
            result = await host.upload_video(video_path, video.filename)
        except VideoHostError as e:
            VIDEO_UPLOADS_TOTAL.labels(result="failed").inc()
            UPSTREAM_ERRORS_TOTAL.labels(service="video_host").inc()
            logger.error(f"Video host upload failed for '{title}': {e}")
            log_audit(
                AuditAction.VIDEO_UPLOAD,
                request,
                resource_name=video.filename,
                details={"title": title},
                success=False,
                error=str(e),
            )
            raise HTTPException(status_code=502, detail="Failed to upload video to the video host")

        file_code = result["file_id"]
        thumbnail_url = host.thumbnail_url(file_code)
        if thumbnail_path is not None:
            try:
                thumbnail_url = await cdn.upload_image(thumbnail_path, thumbnail.filename)
            except ImageCDNError as e:
                THUMBNAIL_FALLBACKS_TOTAL.inc()
                UPSTREAM_ERRORS_TOTAL.labels(service="image_cdn").inc()
                logger.warning(f"Thumbnail upload failed for {file_code}, using host thumbnail: {e}")

        try:
            record = await catalog.create(
                file_code=file_code,
                embed_code=host.derive_embed_code(result),
                title=title,
                thumbnail=thumbnail_url,
                duration=duration,
                status=normalize_host_status(result.get("status")),
            )
        except DuplicateFileCodeError:
            raise HTTPException(status_code=409, detail=DUPLICATE_FILE_CODE_DETAIL)
    finally:
        for path in staged:
            path.unlink(missing_ok=True)
        await form.close()

    VIDEO_UPLOADS_TOTAL.labels(result="success").inc()
    log_audit(
        AuditAction.VIDEO_UPLOAD,
        request,
        resource_id=record["id"],
        resource_name=file_code,
        details={"title": title, "filename": video.filename, "custom_thumbnail": thumbnail is not None},
    )
    return VideoMutationResponse(
        message="Video uploaded successfully",
        video=VideoResponse(**record),
    )


@router.post("/api/videos/add", response_model=VideoMutationResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def add_video(
    request: Request,
    data: AddVideoRequest,
    catalog: CatalogStore = Depends(get_catalog),
    host: VideoHostClient = Depends(get_video_host),
) -> VideoMutationResponse:
    """
    Register a video that already exists on the host, by file code.

    Host verification is best-effort: if the lookup fails the video is
    registered anyway and a warning is logged.
    """
    if await catalog.get_by_file_code(data.file_code):
        raise HTTPException(status_code=400, detail=DUPLICATE_FILE_CODE_DETAIL)

    try:
        await host.get_file_info(data.file_code)
    except VideoHostNotFoundError:
        logger.warning(f"File {data.file_code} not found on video host, registering anyway")
    except VideoHostError as e:
        logger.warning(f"Could not verify {data.file_code} on video host: {e}")

    try:
        record = await catalog.create(
            file_code=data.file_code,
            embed_code=data.file_code,
            title=data.title,
            thumbnail=host.thumbnail_url(data.file_code),
            duration=data.duration,
            status=VideoStatus.ACTIVE.value,
        )
    except DuplicateFileCodeError:
        raise HTTPException(status_code=400, detail=DUPLICATE_FILE_CODE_DETAIL)

    VIDEO_REFERENCES_TOTAL.inc()
    log_audit(
        AuditAction.VIDEO_ADD,
        request,
        resource_id=record["id"],
        resource_name=data.file_code,
        details={"title": data.title},
    )
    return VideoMutationResponse(message="Video added successfully", video=VideoResponse(**record))


@router.delete("/api/videos/{video_id}", response_model=MessageResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_video(
    request: Request, video_id: int, catalog: CatalogStore = Depends(get_catalog)
) -> MessageResponse:
    """Remove a video from the catalog. The asset stays on the host."""
    record = await catalog.get_by_id(video_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")

    await catalog.delete(video_id)
    log_audit(
        AuditAction.VIDEO_DELETE,
        request,
        resource_id=video_id,
        resource_name=record["file_code"],
        details={"title": record["title"]},
    )
    return MessageResponse(message="Video deleted successfully")
