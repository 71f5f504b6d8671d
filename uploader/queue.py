"""
Bulk upload queue.

The controller owns an ordered list of QueueItems. Callers read snapshots
and change items only through controller methods. ``upload_all`` pushes the
queue to the API one item at a time; a failing item is marked ``error`` and
the batch moves on.
"""

import asyncio
import dataclasses
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from api.enums import QueueItemStatus, ThumbnailSource
from config import DEFAULT_DURATION, SUPPORTED_IMAGE_EXTENSIONS
from uploader.errors import (
    AuthorizationError,
    InvalidTransitionError,
    QueueItemLockedError,
    QueueItemNotFoundError,
    RemoteAPIError,
    ValidationError,
)
from uploader.metadata import ExtractionResult, MetadataExtractor, is_valid_duration

logger = logging.getLogger(__name__)

# Shown on an item when the failure wasn't a reported API error
GENERIC_UPLOAD_ERROR = "Upload failed. Try again."
CANCELLED_UPLOAD_ERROR = "Upload cancelled"

EDITABLE_FIELDS = frozenset(["title", "duration"])

# Allowed state changes. error -> pending only happens when upload_all
# picks up items that failed in an earlier batch.
_TRANSITIONS: Dict[QueueItemStatus, frozenset] = {
    QueueItemStatus.PENDING: frozenset([QueueItemStatus.UPLOADING]),
    QueueItemStatus.UPLOADING: frozenset([QueueItemStatus.DONE, QueueItemStatus.ERROR]),
    QueueItemStatus.ERROR: frozenset([QueueItemStatus.PENDING]),
    QueueItemStatus.DONE: frozenset(),
}

ChangeListener = Callable[["QueueItem"], None]


class PreviewHandle:
    """
    A thumbnail preview written to a temporary file.

    The file lives until the owning handle's ``release()`` is called.
    Releasing twice is a no-op. Borrowed handles (handed out with snapshots)
    never delete the file.
    """

    def __init__(self, path: Path, owned: bool = True):
        self.path = path
        self.owned = owned
        self.released = False

    @classmethod
    def create(cls, data: bytes, suffix: str = ".jpg") -> "PreviewHandle":
        fd, name = tempfile.mkstemp(prefix="clipdeck-preview-", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return cls(Path(name))

    def release(self):
        if self.released:
            return
        self.released = True
        if self.owned:
            self.path.unlink(missing_ok=True)

    def borrowed(self) -> "PreviewHandle":
        """A non-owning handle to the same file."""
        handle = PreviewHandle(self.path, owned=False)
        handle.released = self.released
        return handle

    def __repr__(self):
        state = "released" if self.released else "live"
        return f"PreviewHandle({self.path.name}, {state})"


@dataclass(eq=False)
class QueueItem:
    """One file's unit of work in the upload queue."""

    source: Path
    filename: str
    title: str
    duration: str = DEFAULT_DURATION
    thumbnail: Optional[bytes] = field(default=None, repr=False)
    thumbnail_filename: Optional[str] = None
    thumbnail_source: ThumbnailSource = ThumbnailSource.DEFAULT
    preview: Optional[PreviewHandle] = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    progress: int = 0
    error_message: Optional[str] = None
    remote_id: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def locked(self) -> bool:
        """Uploading and done items can't be edited or removed."""
        return self.status in (QueueItemStatus.UPLOADING, QueueItemStatus.DONE)

    def _transition(self, target: QueueItemStatus):
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def start_upload(self):
        self._transition(QueueItemStatus.UPLOADING)
        self.progress = 0
        self.error_message = None

    def report_progress(self, percent: int) -> bool:
        """
        Record upload progress, clamped to 0-100.

        Returns True if the stored value changed. Decreasing values and
        updates outside the uploading state are ignored.
        """
        if self.status != QueueItemStatus.UPLOADING:
            return False
        percent = max(0, min(100, int(percent)))
        if percent <= self.progress:
            return False
        self.progress = percent
        return True

    def mark_done(self, remote_id: Optional[int]):
        self._transition(QueueItemStatus.DONE)
        self.progress = 100
        self.remote_id = remote_id

    def mark_error(self, message: str):
        self._transition(QueueItemStatus.ERROR)
        self.progress = 0
        self.error_message = message or GENERIC_UPLOAD_ERROR

    def requeue(self):
        self._transition(QueueItemStatus.PENDING)

    def release_preview(self):
        if self.preview is not None:
            self.preview.release()
            self.preview = None

    def snapshot(self) -> "QueueItem":
        """A detached copy; changing it doesn't affect the queue."""
        preview = self.preview.borrowed() if self.preview is not None else None
        return dataclasses.replace(self, preview=preview)


def default_title(path: Path) -> str:
    """File name without its extension."""
    return path.stem or path.name


class UploadQueueController:
    """
    Owns the upload queue and drives bulk submission.

    Args:
        client: RemoteUploadClient (or anything with the same ``upload`` coroutine)
        extractor: MetadataExtractor used by ``enqueue``
        on_change: Optional callback receiving an item snapshot after every change
    """

    def __init__(
        self,
        client,
        extractor: Optional[MetadataExtractor] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        self.client = client
        self.extractor = extractor or MetadataExtractor()
        self.on_change = on_change
        self._items: List[QueueItem] = []
        self._append_lock = asyncio.Lock()
        self._upload_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def items(self) -> List[QueueItem]:
        return [item.snapshot() for item in self._items]

    def get(self, item_id: str) -> QueueItem:
        return self._find(item_id).snapshot()

    def __len__(self):
        return len(self._items)

    @property
    def is_uploading(self) -> bool:
        return self._upload_lock.locked()

    def _find(self, item_id: str) -> QueueItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise QueueItemNotFoundError(item_id)

    def _find_editable(self, item_id: str) -> QueueItem:
        item = self._find(item_id)
        if item.locked:
            raise QueueItemLockedError(item_id, item.status.value)
        if self.is_uploading:
            raise QueueItemLockedError(item_id, f"{item.status.value} in a running batch")
        return item

    def _notify(self, item: QueueItem):
        if self.on_change is None:
            return
        try:
            self.on_change(item.snapshot())
        except Exception:
            logger.exception(f"Queue change listener failed for item {item.id}")

    # ------------------------------------------------------------------
    # Queue editing
    # ------------------------------------------------------------------

    async def _safe_extract(self, path: Path) -> ExtractionResult:
        try:
            return await self.extractor.extract(path)
        except Exception:
            logger.exception(f"Metadata extraction crashed for {path.name}")
            return ExtractionResult(DEFAULT_DURATION, None)

    async def enqueue(self, paths: Iterable[Union[str, Path]]) -> List[QueueItem]:
        """
        Add video files to the end of the queue.

        Metadata for all files is extracted concurrently; the new items are
        appended in input order once every extraction has settled.

        Returns:
            Snapshots of the new items, in input order
        """
        paths = [Path(p) for p in paths]
        if not paths:
            return []

        results = await asyncio.gather(*(self._safe_extract(path) for path in paths))

        added = []
        async with self._append_lock:
            for path, result in zip(paths, results):
                item = QueueItem(
                    source=path,
                    filename=path.name,
                    title=default_title(path),
                    duration=result.duration,
                )
                if result.thumbnail:
                    item.thumbnail = result.thumbnail
                    item.thumbnail_filename = f"{item.title}.jpg"
                    item.thumbnail_source = ThumbnailSource.AUTO
                    item.preview = PreviewHandle.create(result.thumbnail)
                self._items.append(item)
                added.append(item)

        for item in added:
            logger.info(f"Queued {item.filename} (duration {item.duration}, thumbnail {item.thumbnail_source.value})")
            self._notify(item)
        return [item.snapshot() for item in added]

    def update(self, item_id: str, **changes) -> QueueItem:
        """
        Change the title and/or duration of a queued item.

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueItemLockedError: The item is uploading or done, or a batch is running
            ValidationError: A field other than title or duration was given
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Can't update field(s): {', '.join(sorted(unknown))}")

        item = self._find_editable(item_id)

        for name, value in changes.items():
            setattr(item, name, "" if value is None else str(value))
        self._notify(item)
        return item.snapshot()

    def set_thumbnail(self, item_id: str, image_path: Union[str, Path]) -> QueueItem:
        """
        Replace an item's thumbnail with a user-picked image.

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueItemLockedError: The item is uploading or done, or a batch is running
            ValidationError: Unsupported image type or unreadable file
        """
        image_path = Path(image_path)
        suffix = image_path.suffix.lower()
        if suffix not in SUPPORTED_IMAGE_EXTENSIONS:
            raise ValidationError(
                f"Unsupported thumbnail type '{suffix or image_path.name}'. "
                f"Allowed: {', '.join(sorted(SUPPORTED_IMAGE_EXTENSIONS))}"
            )

        item = self._find_editable(item_id)

        try:
            data = image_path.read_bytes()
        except OSError as e:
            raise ValidationError(f"Could not read thumbnail {image_path.name}: {e}") from e
        if not data:
            raise ValidationError(f"Thumbnail {image_path.name} is empty")

        item.release_preview()
        item.thumbnail = data
        item.thumbnail_filename = image_path.name
        item.thumbnail_source = ThumbnailSource.MANUAL
        item.preview = PreviewHandle.create(data, suffix=suffix)
        self._notify(item)
        return item.snapshot()

    def remove(self, item_id: str) -> None:
        """
        Drop an item from the queue and release its preview.

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueItemLockedError: The item is uploading or done, or a batch is running
        """
        item = self._find_editable(item_id)
        item.release_preview()
        self._items.remove(item)

    def close(self):
        """Release every preview and empty the queue."""
        for item in self._items:
            item.release_preview()
        self._items.clear()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def validate(self):
        """
        Check every item is uploadable.

        Raises:
            ValidationError: Empty queue, blank title, or malformed duration
        """
        if not self._items:
            raise ValidationError("No videos in the queue")
        for item in self._items:
            if item.status == QueueItemStatus.DONE:
                continue
            if not item.title or not item.title.strip():
                raise ValidationError(f"Title is required for {item.filename}")
            if not is_valid_duration(item.duration):
                raise ValidationError(
                    f"Invalid duration '{item.duration}' for \"{item.title}\" (use m:ss or h:mm:ss)"
                )

    async def upload_all(self, credential: Optional[str]) -> List[QueueItem]:
        """
        Upload every item that isn't done yet, one at a time, in queue order.

        Items that failed in an earlier call are tried again. A failing item
        is marked error and the next item starts; nothing is retried within
        the call. Items enqueued while this runs wait for the next call.

        Returns:
            Snapshots of the whole queue after the batch

        Raises:
            AuthorizationError: Blank credential (checked first, nothing changes)
            ValidationError: Empty queue or an invalid item (nothing changes)
        """
        if not credential or not credential.strip():
            raise AuthorizationError("Admin password required to upload")

        async with self._upload_lock:
            self.validate()

            batch = list(self._items)
            pending = [item for item in batch if item.status != QueueItemStatus.DONE]
            logger.info(f"Uploading {len(pending)} of {len(batch)} queued videos")

            for item in batch:
                if item not in self._items:
                    continue  # queue closed while an earlier item was uploading
                if item.status == QueueItemStatus.DONE:
                    continue
                if item.status == QueueItemStatus.ERROR:
                    item.requeue()
                await self._upload_one(item, credential)

        return self.items

    async def _upload_one(self, item: QueueItem, credential: str):
        item.start_upload()
        self._notify(item)

        def on_progress(percent: int):
            if item.report_progress(percent):
                self._notify(item)

        try:
            result = await self.client.upload(
                path=item.source,
                title=item.title.strip(),
                duration=item.duration,
                credential=credential,
                thumbnail=item.thumbnail,
                thumbnail_filename=item.thumbnail_filename,
                filename=item.filename,
                on_progress=on_progress,
            )
        except RemoteAPIError as e:
            logger.warning(f"Upload of {item.filename} failed: {e}")
            item.mark_error(e.message)
        except asyncio.CancelledError:
            item.mark_error(CANCELLED_UPLOAD_ERROR)
            self._notify(item)
            raise
        except Exception:
            logger.exception(f"Unexpected error uploading {item.filename}")
            item.mark_error(GENERIC_UPLOAD_ERROR)
        else:
            item.mark_done(result.remote_id)
            logger.info(f"Uploaded {item.filename} as video {result.remote_id}")

        self._notify(item)
