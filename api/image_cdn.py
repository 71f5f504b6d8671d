"""HTTP client for the image CDN that hosts custom thumbnails."""

import hashlib
import logging
import time
from pathlib import Path
from typing import Optional

import httpx

from config import (
    IMAGE_CDN_API_KEY,
    IMAGE_CDN_API_SECRET,
    IMAGE_CDN_CLOUD_NAME,
    IMAGE_CDN_FOLDER,
    IMAGE_CDN_TIMEOUT,
    IMAGE_CDN_UPLOAD_URL,
)

logger = logging.getLogger(__name__)


class ImageCDNError(Exception):
    """Exception raised when the image CDN rejects an upload or can't be reached."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Image CDN error {status_code}: {message}")


def sign_params(params: dict, api_secret: str) -> str:
    """
    Signature for a signed upload.

    Parameters are sorted by name, joined as ``k=v`` pairs with ``&``, the
    API secret is appended, and the result is SHA-1 hex digested.
    Empty values are not signed.
    """
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class ImageCDNClient:
    """Async client for signed image uploads."""

    def __init__(
        self,
        cloud_name: str = IMAGE_CDN_CLOUD_NAME,
        api_key: str = IMAGE_CDN_API_KEY,
        api_secret: str = IMAGE_CDN_API_SECRET,
        folder: str = IMAGE_CDN_FOLDER,
        upload_url_template: str = IMAGE_CDN_UPLOAD_URL,
        timeout: float = IMAGE_CDN_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.upload_url = upload_url_template.format(cloud_name=cloud_name)
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def upload_image(self, path: Path, filename: Optional[str] = None) -> str:
        """
        Upload an image and return its HTTPS URL.

        Raises:
            ImageCDNError: Not configured, rejected, unreachable, or no URL in the response
        """
        if not self.configured:
            raise ImageCDNError(0, "Image CDN credentials are not configured")

        params = {
            "folder": self.folder,
            "timestamp": str(int(time.time())),
        }
        data = {
            **params,
            "api_key": self.api_key,
            "signature": sign_params(params, self.api_secret),
        }

        client = await self._get_client()
        try:
            with open(path, "rb") as f:
                response = await client.post(
                    self.upload_url,
                    data=data,
                    files={"file": (filename or Path(path).name, f)},
                )
        except httpx.RequestError as e:
            raise ImageCDNError(0, f"Connection error: {e}") from e

        if not response.is_success:
            try:
                detail = response.json().get("error", {}).get("message", response.text)
            except (ValueError, AttributeError):
                detail = response.text[:200]
            raise ImageCDNError(response.status_code, str(detail))

        try:
            secure_url = response.json().get("secure_url")
        except ValueError as e:
            raise ImageCDNError(response.status_code, "Invalid JSON in upload response") from e
        if not secure_url:
            raise ImageCDNError(response.status_code, "Upload response has no secure_url")

        logger.info(f"Thumbnail uploaded to image CDN: {secure_url}")
        return secure_url


_image_cdn: Optional[ImageCDNClient] = None


def get_image_cdn() -> ImageCDNClient:
    """FastAPI dependency returning the shared image CDN client."""
    global _image_cdn
    if _image_cdn is None:
        _image_cdn = ImageCDNClient()
    return _image_cdn


async def close_image_cdn():
    global _image_cdn
    if _image_cdn is not None:
        await _image_cdn.close()
        _image_cdn = None
