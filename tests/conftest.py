"""
Pytest fixtures for clipdeck tests.
Provides a test database, fake third-party services, and API clients.

Uses a SQLite file so the suite runs without a PostgreSQL server.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator

import httpx
import pytest
import sqlalchemy as sa
from databases import Database

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
TEST_UPLOADS_DIR = Path(_test_temp_dir) / "uploads"
TEST_UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
TEST_DATABASE_URL = f"sqlite:///{_test_temp_dir}/clipdeck_test.db"
TEST_ADMIN_PASSWORD = "test-admin-password-123"

os.environ["CLIPDECK_TEST_MODE"] = "1"
os.environ["CLIPDECK_DATABASE_URL"] = TEST_DATABASE_URL
os.environ["CLIPDECK_UPLOADS_DIR"] = str(TEST_UPLOADS_DIR)
os.environ["CLIPDECK_ADMIN_PASSWORD"] = TEST_ADMIN_PASSWORD
os.environ["CLIPDECK_RATE_LIMIT_ENABLED"] = "false"
os.environ["CLIPDECK_AUDIT_LOG_ENABLED"] = "false"

from api.catalog import CatalogStore  # noqa: E402
from api.database import metadata  # noqa: E402
from api.image_cdn import ImageCDNClient, get_image_cdn  # noqa: E402
from api.video_host import VideoHostClient, get_video_host  # noqa: E402

TEST_THUMBNAIL_TEMPLATE = "https://thumbs.test/{file_code}.jpg"


class FakeVideoHost:
    """
    httpx.MockTransport handler standing in for the video host.

    Tests change the attributes to script failures; every request is kept
    in ``requests`` for assertions.
    """

    def __init__(self):
        self.requests = []
        self.upload_status = 200
        self.upload_body = {
            "file_id": "abc123",
            "embed_url": "https://short.icu/xyz789",
            "status": "active",
        }
        self.file_info_status = 200
        self.file_info_text = None
        self.about_status = 200

    def uploads(self):
        return [r for r in self.requests if r.method == "POST"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST":
            return httpx.Response(self.upload_status, json=self.upload_body)
        if path.endswith("/v1/about"):
            if self.about_status != 200:
                return httpx.Response(self.about_status, json={"message": "unavailable"})
            return httpx.Response(
                200,
                json={
                    "storageQuota": {"usage": 1024, "limit": 4096},
                    "uploadQuota": {"dailyUploadRemaining": 50},
                },
            )
        if "/v1/files/" in path:
            if self.file_info_status != 200:
                return httpx.Response(self.file_info_status, json={"message": "lookup failed"})
            if self.file_info_text is not None:
                return httpx.Response(200, text=self.file_info_text, headers={"Content-Type": "text/html"})
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "status": "ready"})
        return httpx.Response(404, json={"message": "unknown route"})


class FakeImageCDN:
    """httpx.MockTransport handler standing in for the image CDN."""

    def __init__(self):
        self.requests = []
        self.status = 200
        self.secure_url = "https://cdn.test/video-thumbnails/thumb.jpg"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "Invalid signature"}})
        return httpx.Response(200, json={"secure_url": self.secure_url})


@pytest.fixture(scope="function")
def test_db_url() -> str:
    """Recreate all tables in the test database and return its URL."""
    engine = sa.create_engine(TEST_DATABASE_URL)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()
    return TEST_DATABASE_URL


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connected Database on a fresh schema."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def catalog(test_database: Database) -> CatalogStore:
    return CatalogStore(test_database, base_delay=0)


@pytest.fixture(scope="function")
async def sample_video(catalog: CatalogStore) -> dict:
    """A catalog record for an uploaded video."""
    return await catalog.create(
        file_code="sample01",
        embed_code="embed01",
        title="Sample Video",
        thumbnail="https://thumbs.test/sample01.jpg",
        duration="4:05",
        status="active",
    )


@pytest.fixture(scope="function")
def fake_video_host() -> FakeVideoHost:
    return FakeVideoHost()


@pytest.fixture(scope="function")
def fake_image_cdn() -> FakeImageCDN:
    return FakeImageCDN()


@pytest.fixture(scope="function")
def video_host(fake_video_host: FakeVideoHost) -> VideoHostClient:
    return VideoHostClient(
        api_key="test-host-key",
        upload_url="https://upload.host.test",
        api_url="https://api.host.test",
        thumbnail_url_template=TEST_THUMBNAIL_TEMPLATE,
        embed_base_url="https://short.icu",
        transport=httpx.MockTransport(fake_video_host),
    )


@pytest.fixture(scope="function")
def image_cdn(fake_image_cdn: FakeImageCDN) -> ImageCDNClient:
    return ImageCDNClient(
        cloud_name="demo",
        api_key="cdn-key",
        api_secret="cdn-secret",
        transport=httpx.MockTransport(fake_image_cdn),
    )


@pytest.fixture(scope="function")
def admin_headers() -> dict:
    return {"X-Admin-Password": TEST_ADMIN_PASSWORD}


# ============================================================================
# Test Client Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def client(test_db_url: str, video_host: VideoHostClient, image_cdn: ImageCDNClient):
    """
    Test client for the API app with the third-party services faked out.
    The app manages its own database connection through its lifespan.
    """
    from fastapi.testclient import TestClient

    from api.main import app

    app.dependency_overrides[get_video_host] = lambda: video_host
    app.dependency_overrides[get_image_cdn] = lambda: image_cdn

    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client

    app.dependency_overrides.clear()
