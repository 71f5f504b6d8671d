"""HTTP client for talking to the clipdeck API from the uploader and the CLI."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx

from config import API_URL, DEFAULT_API_TIMEOUT, UPLOAD_TIMEOUT
from uploader.errors import AuthorizationError, NotFoundError, RemoteAPIError, UploadError

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_HEADER = "X-Admin-Password"

ProgressCallback = Callable[[int], None]


@dataclass
class UploadResult:
    remote_id: int
    status: str
    video: dict


class ProgressFileWrapper:
    """
    Wrapper for file objects that reports upload progress as a percentage.

    The callback receives ``round(bytes_read * 100 / total)`` and is only
    called when that value grows, so a rewind-and-resend never makes
    progress go backwards.
    """

    def __init__(self, file, total: int, callback: Optional[ProgressCallback] = None):
        """
        Args:
            file: The file object to wrap (opened in binary mode)
            total: Total number of bytes that will be read
            callback: Called with the new percentage (0-100)
        """
        self.file = file
        self.total = total
        self.callback = callback
        self.bytes_read = 0
        self.last_percent = 0

    def read(self, size=-1):
        """Read from the file and report progress for non-empty reads."""
        data = self.file.read(size)
        if data:
            self.bytes_read += len(data)
            self._report()
        return data

    def _report(self):
        if not self.total or self.callback is None:
            return
        percent = min(100, round(self.bytes_read * 100 / self.total))
        if percent > self.last_percent:
            self.last_percent = percent
            self.callback(percent)

    def seek(self, offset, whence=os.SEEK_SET):
        """
        Forward seek to the underlying file.

        Rewinding resets the byte count; the reported percentage stays put
        until the re-read passes it.
        """
        position = self.file.seek(offset, whence)
        self.bytes_read = position
        return position

    def tell(self):
        return self.file.tell()

    def fileno(self):
        return self.file.fileno()

    def close(self):
        """Does not close the underlying file; it's managed externally."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def _error_detail(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or default
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or default
        if isinstance(detail, list):
            # FastAPI validation errors: [{"loc": [...], "msg": "..."}]
            return "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
        return str(detail)
    return default


def raise_for_api_error(response: httpx.Response, default: str = "Request failed"):
    """
    Map a non-2xx response to the uploader error taxonomy.

    Raises:
        AuthorizationError: 401 or 403
        NotFoundError: 404
        UploadError: Any other non-2xx status
    """
    if response.is_success:
        return
    detail = _error_detail(response, default)
    if response.status_code in (401, 403):
        raise AuthorizationError(detail, status_code=response.status_code)
    if response.status_code == 404:
        raise NotFoundError(detail)
    raise UploadError(response.status_code, detail)


class RemoteUploadClient:
    """
    Async client for the clipdeck API.

    Args:
        base_url: API root (e.g. http://localhost:5000)
        timeout: Timeout for ordinary requests (seconds)
        upload_timeout: Fixed upper bound for a single upload (seconds)
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str = API_URL,
        timeout: float = DEFAULT_API_TIMEOUT,
        upload_timeout: float = UPLOAD_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    @staticmethod
    def _headers(credential: Optional[str]) -> dict:
        return {ADMIN_PASSWORD_HEADER: credential} if credential else {}

    async def _request(
        self,
        method: str,
        path: str,
        credential: Optional[str] = None,
        default_error: str = "Request failed",
        **kwargs: Any,
    ) -> dict:
        client = await self._get_client()
        try:
            response = await client.request(method, path, headers=self._headers(credential), **kwargs)
        except httpx.TimeoutException as e:
            raise UploadError(0, f"Request to {self.base_url} timed out") from e
        except httpx.RequestError as e:
            raise UploadError(0, f"Could not connect to {self.base_url}: {e}") from e

        raise_for_api_error(response, default_error)
        try:
            return response.json()
        except ValueError as e:
            raise UploadError(response.status_code, "Invalid JSON response") from e

    async def upload(
        self,
        path: Path,
        title: str,
        duration: str,
        credential: str,
        thumbnail: Optional[bytes] = None,
        thumbnail_filename: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Upload one video (and optional thumbnail) as multipart form data.

        The request can't be cancelled once started; it is bounded by
        ``upload_timeout``.

        Raises:
            AuthorizationError: Credential rejected
            UploadError: Any other failure, including transport errors (status 0)
        """
        path = Path(path)
        filename = filename or path.name
        data = {"title": title, "duration": duration}

        try:
            total = path.stat().st_size
            f = open(path, "rb")
        except OSError as e:
            raise UploadError(0, f"Could not read {filename}: {e}") from e

        with f:
            files = {"video": (filename, ProgressFileWrapper(f, total, on_progress), "video/" + _video_subtype(filename))}
            if thumbnail:
                files["thumbnail"] = (thumbnail_filename or "thumbnail.jpg", thumbnail, "image/jpeg")
            body = await self._request(
                "POST",
                "/api/videos/upload",
                credential=credential,
                default_error="Upload failed. Try again.",
                data=data,
                files=files,
                timeout=self.upload_timeout,
            )

        video = body.get("video") or {}
        if "id" not in video:
            raise UploadError(200, "Upload response did not include the new video")
        return UploadResult(remote_id=video["id"], status=video.get("status", "processing"), video=video)

    async def add_by_reference(self, file_code: str, title: str, duration: Optional[str], credential: str) -> dict:
        """Register a video that already exists on the host. Returns the new record."""
        body = await self._request(
            "POST",
            "/api/videos/add",
            credential=credential,
            default_error="Failed to add video",
            json={"file_code": file_code, "title": title, "duration": duration or None},
        )
        return body["video"]

    async def delete_video(self, video_id: int, credential: str) -> dict:
        return await self._request("DELETE", f"/api/videos/{video_id}", credential=credential)

    async def verify_admin(self, credential: str) -> bool:
        """True if the server accepts the credential, False if it rejects it."""
        try:
            await self._request("POST", "/api/admin/verify", credential=credential)
        except AuthorizationError:
            return False
        return True

    async def get_stats(self, credential: str) -> dict:
        body = await self._request("GET", "/api/admin/stats", credential=credential)
        return body["stats"]

    async def list_videos(self, search: Optional[str] = None) -> List[dict]:
        params = {"search": search} if search else None
        body = await self._request("GET", "/api/videos", params=params)
        return body.get("videos", [])

    async def get_video(self, video_id: int) -> dict:
        """Fetch one video. Note: the server counts this as a view."""
        body = await self._request("GET", f"/api/videos/{video_id}")
        return body["video"]

    async def get_embed_url(self, video_id: int) -> str:
        body = await self._request("GET", f"/api/videos/{video_id}/embed")
        return body["embed_url"]


# Subtypes for the extensions the server accepts; anything else is sent as mp4
_VIDEO_SUBTYPES = {
    ".mp4": "mp4",
    ".m4v": "x-m4v",
    ".mkv": "x-matroska",
    ".mov": "quicktime",
    ".avi": "x-msvideo",
    ".wmv": "x-ms-wmv",
    ".flv": "x-flv",
    ".webm": "webm",
    ".mpeg": "mpeg",
    ".mpg": "mpeg",
}


def _video_subtype(filename: str) -> str:
    return _VIDEO_SUBTYPES.get(Path(filename).suffix.lower(), "mp4")
