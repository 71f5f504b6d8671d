"""
Catalog store: the one place that reads and writes video records.

Every route gets a CatalogStore through the ``get_catalog`` dependency, so
tests can swap the database without touching route code.

Transient database errors (SQLite lock contention, PostgreSQL deadlocks,
dropped connections) are retried with exponential backoff. When retries run
out, DatabaseUnavailableError is raised and the app turns it into a 503.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import sqlalchemy as sa
from databases import Database

from api.common import ensure_utc
from api.database import database, videos
from api.enums import VideoStatus
from api.errors import is_unique_violation
from config import DEFAULT_DURATION

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0

# Lowercased substrings of driver errors worth retrying
RETRYABLE_ERROR_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)


class DatabaseUnavailableError(Exception):
    """Raised when a catalog operation keeps failing with transient database errors."""

    pass


class DuplicateFileCodeError(Exception):
    """Raised when a record with the same remote file code already exists."""

    def __init__(self, file_code: str):
        self.file_code = file_code
        super().__init__(f"Video with file_code '{file_code}' already exists")


def is_retryable_database_error(exc: Exception) -> bool:
    """Check whether a database exception is transient (lock contention or a dropped connection)."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in RETRYABLE_ERROR_PATTERNS):
        return True
    # asyncpg exposes the SQLSTATE; 40P01 = deadlock, 40001 = serialization failure
    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)
    return False


def _row_to_dict(row) -> dict:
    """Convert a database row into a plain dict with UTC-aware timestamps."""
    record = dict(row._mapping)
    for key, value in record.items():
        if isinstance(value, datetime):
            record[key] = ensure_utc(value)
    return record


class CatalogStore:
    """Async access to the ``videos`` table."""

    def __init__(
        self,
        db: Database,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
    ):
        self.db = db
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def _run(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a database call, retrying transient failures with jittered backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args)
            except Exception as e:
                if not is_retryable_database_error(e):
                    raise
                last_error = e
                if attempt < self.max_retries:
                    delay = min(self.base_delay * (2**attempt), DEFAULT_MAX_DELAY)
                    delay = delay * (0.75 + random.random() * 0.5)
                    logger.warning(
                        f"Database error (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"retrying in {delay:.2f}s: {e}"
                    )
                    await asyncio.sleep(delay)

        logger.error(f"Database error after {self.max_retries + 1} attempts, giving up: {last_error}")
        raise DatabaseUnavailableError(str(last_error))

    async def list(self, search: Optional[str] = None) -> List[dict]:
        """
        Records newest first.

        ``search`` keeps only records whose title or file code contains it,
        ignoring case.
        """
        query = videos.select()
        search = (search or "").strip()
        if search:
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            query = query.where(
                sa.or_(
                    videos.c.title.ilike(pattern, escape="\\"),
                    videos.c.file_code.ilike(pattern, escape="\\"),
                )
            )
        query = query.order_by(
            videos.c.upload_date.desc(),
            videos.c.created_at.desc(),
            videos.c.id.desc(),
        )
        rows = await self._run(self.db.fetch_all, query)
        return [_row_to_dict(row) for row in rows]

    async def get_by_id(self, video_id: int) -> Optional[dict]:
        row = await self._run(self.db.fetch_one, videos.select().where(videos.c.id == video_id))
        return _row_to_dict(row) if row else None

    async def get_by_file_code(self, file_code: str) -> Optional[dict]:
        row = await self._run(self.db.fetch_one, videos.select().where(videos.c.file_code == file_code))
        return _row_to_dict(row) if row else None

    async def create(
        self,
        *,
        file_code: str,
        embed_code: str,
        title: str,
        thumbnail: str,
        duration: str = DEFAULT_DURATION,
        status: str = VideoStatus.PROCESSING.value,
    ) -> dict:
        """
        Insert a new record and return it.

        Raises:
            DuplicateFileCodeError: A record with this file_code already exists
        """
        now = datetime.now(timezone.utc)
        query = videos.insert().values(
            file_code=file_code,
            embed_code=embed_code,
            title=title.strip(),
            thumbnail=thumbnail,
            duration=duration or DEFAULT_DURATION,
            status=status,
            views=0,
            upload_date=now,
            created_at=now,
            updated_at=now,
        )
        try:
            video_id = await self._run(self.db.execute, query)
        except Exception as e:
            if is_unique_violation(e, column="file_code"):
                raise DuplicateFileCodeError(file_code) from e
            raise

        record = await self.get_by_id(video_id)
        if record is None:
            # Some drivers don't report the new primary key
            record = await self.get_by_file_code(file_code)
        return record

    async def delete(self, video_id: int) -> bool:
        """Delete a record. Returns False if it didn't exist."""
        existing = await self.get_by_id(video_id)
        if existing is None:
            return False
        await self._run(self.db.execute, videos.delete().where(videos.c.id == video_id))
        return True

    async def increment_views(self, video_id: int) -> Optional[dict]:
        """Atomically bump the view counter and return the updated record (None if unknown)."""
        query = (
            videos.update()
            .where(videos.c.id == video_id)
            .values(views=videos.c.views + 1, updated_at=datetime.now(timezone.utc))
        )
        await self._run(self.db.execute, query)
        return await self.get_by_id(video_id)

    async def stats(self) -> dict:
        total_videos = await self._run(
            self.db.fetch_val, sa.select(sa.func.count()).select_from(videos)
        )
        total_views = await self._run(
            self.db.fetch_val,
            sa.select(sa.func.coalesce(sa.func.sum(videos.c.views), 0)).select_from(videos),
        )
        return {
            "total_videos": int(total_videos or 0),
            "total_views": int(total_views or 0),
        }


def get_catalog() -> CatalogStore:
    """FastAPI dependency returning the catalog store bound to the app database."""
    return CatalogStore(database)
