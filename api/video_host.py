"""HTTP client for the third-party video host (uploads, file lookups, quota)."""

import logging
from pathlib import Path
from typing import Optional

import httpx

from config import (
    EMBED_BASE_URL,
    VIDEO_HOST_API_KEY,
    VIDEO_HOST_API_TIMEOUT,
    VIDEO_HOST_API_URL,
    VIDEO_HOST_THUMBNAIL_URL,
    VIDEO_HOST_TIMEOUT,
    VIDEO_HOST_UPLOAD_URL,
)

logger = logging.getLogger(__name__)

# Keys the host has used for the playable link, in order of preference
EMBED_URL_KEYS = ("embed_url", "url", "link", "short_url")


class VideoHostError(Exception):
    """Exception raised when the video host returns an error or can't be reached."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Video host error {status_code}: {message}")


class VideoHostNotFoundError(VideoHostError):
    """The requested file code doesn't exist on the host."""

    def __init__(self, file_code: str):
        super().__init__(404, f"File not found: {file_code}")
        self.file_code = file_code


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("msg") or body.get("error") or body)
    return str(body)


class VideoHostClient:
    """
    Async client for the video host.

    Args:
        api_key: Account API key
        upload_url: Base URL of the upload endpoint
        api_url: Base URL of the REST API
        thumbnail_url_template: Template with a {file_code} placeholder
        embed_base_url: Base of the short embed links (e.g. https://short.icu)
        timeout: Timeout for video uploads (seconds)
        api_timeout: Timeout for lightweight API calls (seconds)
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        api_key: str = VIDEO_HOST_API_KEY,
        upload_url: str = VIDEO_HOST_UPLOAD_URL,
        api_url: str = VIDEO_HOST_API_URL,
        thumbnail_url_template: str = VIDEO_HOST_THUMBNAIL_URL,
        embed_base_url: str = EMBED_BASE_URL,
        timeout: float = VIDEO_HOST_TIMEOUT,
        api_timeout: float = VIDEO_HOST_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.upload_url = upload_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.thumbnail_url_template = thumbnail_url_template
        self.embed_base_url = embed_base_url.rstrip("/")
        self.timeout = timeout
        self.api_timeout = api_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.api_timeout,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def upload_video(self, path: Path, filename: str) -> dict:
        """
        Upload a local video file to the host.

        Returns:
            Normalized dict with file_id, embed_url (may be None), status (may be None)
            and raw (the host's response body)

        Raises:
            VideoHostError: Missing API key, non-2xx response, transport failure,
                or a response without a file id
        """
        if not self.api_key:
            raise VideoHostError(0, "Video host API key is not configured")

        client = await self._get_client()
        url = f"{self.upload_url}/{self.api_key}"
        logger.info(f"Uploading {filename} to video host")
        try:
            with open(path, "rb") as f:
                response = await client.post(
                    url,
                    files={"file": (filename, f, "application/octet-stream")},
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise VideoHostError(0, f"Upload timed out after {self.timeout:.0f}s") from e
        except httpx.RequestError as e:
            raise VideoHostError(0, f"Connection error: {e}") from e

        if not response.is_success:
            raise VideoHostError(response.status_code, _error_detail(response))

        try:
            data = response.json()
        except ValueError as e:
            raise VideoHostError(response.status_code, "Invalid JSON in upload response") from e

        file_id = data.get("file_id") or data.get("slug") or data.get("id")
        if not file_id:
            raise VideoHostError(response.status_code, "Upload response has no file id")

        embed_url = next((data[key] for key in EMBED_URL_KEYS if data.get(key)), None)
        return {
            "file_id": str(file_id),
            "embed_url": embed_url,
            "status": data.get("status"),
            "raw": data,
        }

    async def get_file_info(self, file_code: str) -> dict:
        """
        Look up a file on the host.

        Raises:
            VideoHostNotFoundError: The file code is unknown
            VideoHostError: Any other failure
        """
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.api_url}/v1/files/{file_code}",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.RequestError as e:
            raise VideoHostError(0, f"Connection error: {e}") from e

        if response.status_code == 404:
            raise VideoHostNotFoundError(file_code)
        if not response.is_success:
            raise VideoHostError(response.status_code, _error_detail(response))
        try:
            data = response.json()
        except ValueError as e:
            raise VideoHostError(response.status_code, "Invalid JSON in file info response") from e
        if not isinstance(data, dict):
            raise VideoHostError(response.status_code, "Unexpected file info response")
        return data

    async def get_quota_info(self) -> Optional[dict]:
        """
        Account storage and upload quota, best-effort.

        Returns None on any failure.
        """
        if not self.api_key:
            return None
        try:
            client = await self._get_client()
            response = await client.get(
                f"{self.api_url}/v1/about",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not fetch video host quota: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning("Could not fetch video host quota: unexpected response body")
            return None

        storage = data.get("storageQuota")
        uploads = data.get("uploadQuota")
        storage = storage if isinstance(storage, dict) else {}
        uploads = uploads if isinstance(uploads, dict) else {}
        return {
            "storage_usage": storage.get("usage") or 0,
            "storage_limit": storage.get("limit") or 0,
            "daily_upload_remaining": uploads.get("dailyUploadRemaining") or 0,
        }

    def thumbnail_url(self, file_code: str) -> str:
        """Host-generated thumbnail URL for a file code."""
        return self.thumbnail_url_template.format(file_code=file_code)

    def embed_url(self, embed_code: str) -> str:
        """Public embed URL for iframe playback."""
        return f"{self.embed_base_url}/{embed_code}"

    def derive_embed_code(self, upload_result: dict) -> str:
        """
        Work out the embed code for an upload result.

        The host sometimes returns a short link (https://short.icu/<code>);
        the code is the part after the embed base. Otherwise the file id
        doubles as the embed code.
        """
        embed_url = upload_result.get("embed_url") or ""
        marker = self.embed_base_url.split("://", 1)[-1] + "/"
        if marker in embed_url:
            code = embed_url.split(marker, 1)[1].strip().strip("/")
            if code:
                return code
        return upload_result["file_id"]


_video_host: Optional[VideoHostClient] = None


def get_video_host() -> VideoHostClient:
    """FastAPI dependency returning the shared video host client."""
    global _video_host
    if _video_host is None:
        _video_host = VideoHostClient()
    return _video_host


async def close_video_host():
    """Close the shared client (called from the app lifespan)."""
    global _video_host
    if _video_host is not None:
        await _video_host.close()
        _video_host = None
