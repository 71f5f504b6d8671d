from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from config import DEFAULT_DURATION, MAX_TITLE_LENGTH
from uploader.metadata import is_valid_duration


def _normalize_duration(v: Optional[str]) -> str:
    """Blank durations default to 0:00; anything else must be m:ss, mm:ss or h:mm:ss."""
    if v is None or not str(v).strip():
        return DEFAULT_DURATION
    v = str(v).strip()
    if not is_valid_duration(v):
        raise ValueError("Duration must look like 4:05, 12:30 or 1:02:03")
    return v


class VideoResponse(BaseModel):
    id: int
    file_code: str
    embed_code: str
    title: str
    thumbnail: str
    duration: str = DEFAULT_DURATION
    status: str
    views: int = 0
    upload_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("duration", mode="before")
    @classmethod
    def default_duration(cls, v):
        return v if v else DEFAULT_DURATION

    @field_validator("views", mode="before")
    @classmethod
    def default_views(cls, v):
        return v if v is not None else 0


class VideoListResponse(BaseModel):
    success: bool = True
    count: int
    videos: List[VideoResponse]


class VideoDetailResponse(BaseModel):
    success: bool = True
    video: VideoResponse


class VideoMutationResponse(BaseModel):
    """Response for upload and add-by-reference."""

    success: bool = True
    message: str
    video: VideoResponse


class EmbedResponse(BaseModel):
    success: bool = True
    embed_url: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class CatalogStats(BaseModel):
    total_videos: int
    total_views: int


class StatsResponse(BaseModel):
    success: bool = True
    stats: CatalogStats


class AddVideoRequest(BaseModel):
    """Register a video that already exists on the host."""

    file_code: str = Field(..., max_length=255)
    title: str = Field(..., max_length=MAX_TITLE_LENGTH)
    duration: Optional[str] = None

    @field_validator("file_code", "title")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        return _normalize_duration(v)
