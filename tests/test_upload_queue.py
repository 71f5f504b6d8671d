"""
Tests for uploader/queue.py: the bulk upload queue and its controller.

The remote client and the metadata extractor are replaced with in-memory
fakes; no HTTP or subprocess work happens here.
"""

import asyncio
from pathlib import Path

import pytest

from api.enums import QueueItemStatus, ThumbnailSource
from uploader.errors import (
    AuthorizationError,
    InvalidTransitionError,
    QueueItemLockedError,
    QueueItemNotFoundError,
    UploadError,
    ValidationError,
)
from uploader.http_client import UploadResult
from uploader.metadata import ExtractionResult, MetadataExtractor, format_duration
from uploader.queue import (
    GENERIC_UPLOAD_ERROR,
    PreviewHandle,
    QueueItem,
    UploadQueueController,
    default_title,
)

FAKE_JPEG = b"\xff\xd8\xff\xe0thumb\xff\xd9"


class FakeExtractor(MetadataExtractor):
    """Extractor that maps file names to scripted durations."""

    def __init__(self, durations=None, delays=None, thumbnail=FAKE_JPEG):
        super().__init__()
        self.durations = durations or {}
        self.delays = delays or {}
        self.thumbnail = thumbnail

    async def extract(self, source):
        name = Path(source).name
        await asyncio.sleep(self.delays.get(name, 0))
        seconds = self.durations.get(name)
        if seconds is None:
            return ExtractionResult("0:00", None)
        return ExtractionResult(format_duration(seconds), self.thumbnail)


class FakeUploadClient:
    """
    Records upload calls and fails the ones named in ``fail``.

    ``fail`` maps a filename to the exception to raise.
    """

    def __init__(self, fail=None, delay=0.0, progress_steps=(25, 50, 100)):
        self.fail = fail or {}
        self.delay = delay
        self.progress_steps = progress_steps
        self.calls = []
        self.active = 0
        self.peak = 0
        self.next_id = 1

    async def upload(self, path, title, duration, credential, thumbnail=None,
                     thumbnail_filename=None, filename=None, on_progress=None):
        self.calls.append(
            {
                "path": path,
                "title": title,
                "duration": duration,
                "credential": credential,
                "thumbnail": thumbnail,
                "filename": filename,
            }
        )
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            error = self.fail.get(filename)
            if error is not None:
                raise error
            for step in self.progress_steps:
                if on_progress:
                    on_progress(step)
            remote_id = self.next_id
            self.next_id += 1
            return UploadResult(remote_id=remote_id, status="active", video={"id": remote_id})
        finally:
            self.active -= 1


@pytest.fixture
def video_files(tmp_path):
    """Three small files standing in for videos."""
    paths = []
    for name in ("first.mp4", "second.mov", "third.mkv"):
        path = tmp_path / name
        path.write_bytes(b"not really a video")
        paths.append(path)
    return paths


@pytest.fixture
def extractor():
    return FakeExtractor(durations={"first.mp4": 90, "second.mov": 3725, "third.mkv": 12})


@pytest.fixture
def upload_client():
    return FakeUploadClient()


@pytest.fixture
def controller(upload_client, extractor):
    controller = UploadQueueController(upload_client, extractor)
    yield controller
    controller.close()


class TestQueueItem:
    """Tests for QueueItem state transitions."""

    def make_item(self):
        return QueueItem(source=Path("/videos/a.mp4"), filename="a.mp4", title="a")

    def test_happy_path(self):
        item = self.make_item()
        item.start_upload()
        assert item.status == QueueItemStatus.UPLOADING
        item.mark_done(7)
        assert item.status == QueueItemStatus.DONE
        assert item.progress == 100
        assert item.remote_id == 7

    def test_error_then_requeue(self):
        item = self.make_item()
        item.start_upload()
        item.report_progress(40)
        item.mark_error("Host rejected file")
        assert item.status == QueueItemStatus.ERROR
        assert item.progress == 0
        assert item.error_message == "Host rejected file"

        item.requeue()
        assert item.status == QueueItemStatus.PENDING

    def test_start_clears_previous_error(self):
        item = self.make_item()
        item.start_upload()
        item.mark_error("boom")
        item.requeue()
        item.start_upload()
        assert item.error_message is None

    @pytest.mark.parametrize(
        "steps",
        [
            ["mark_done"],
            ["mark_error"],
            ["requeue"],
            ["start_upload", "start_upload"],
            ["start_upload", "mark_done", "requeue"],
            ["start_upload", "mark_done", "start_upload"],
        ],
    )
    def test_invalid_transitions_rejected(self, steps):
        """Done is terminal and pending can only move to uploading."""
        item = self.make_item()
        args = {"mark_done": (1,), "mark_error": ("x",)}
        with pytest.raises(InvalidTransitionError):
            for step in steps:
                getattr(item, step)(*args.get(step, ()))

    def test_progress_is_monotonic_and_clamped(self):
        item = self.make_item()
        item.start_upload()
        assert item.report_progress(30) is True
        assert item.report_progress(20) is False
        assert item.progress == 30
        assert item.report_progress(250) is True
        assert item.progress == 100

    def test_progress_ignored_unless_uploading(self):
        item = self.make_item()
        assert item.report_progress(50) is False
        assert item.progress == 0

    def test_locked_states(self):
        item = self.make_item()
        assert not item.locked
        item.start_upload()
        assert item.locked
        item.mark_error("x")
        assert not item.locked

    def test_snapshot_is_detached(self):
        item = self.make_item()
        copy = item.snapshot()
        copy.title = "changed"
        assert item.title == "a"


class TestPreviewHandle:
    def test_create_and_release(self):
        handle = PreviewHandle.create(FAKE_JPEG)
        assert handle.path.read_bytes() == FAKE_JPEG
        handle.release()
        assert not handle.path.exists()
        assert handle.released

    def test_release_twice_is_noop(self):
        handle = PreviewHandle.create(FAKE_JPEG)
        handle.release()
        handle.release()
        assert handle.released

    def test_borrowed_release_keeps_file(self):
        handle = PreviewHandle.create(FAKE_JPEG)
        view = handle.borrowed()

        view.release()

        assert view.released
        assert not handle.released
        assert handle.path.exists()
        handle.release()


class TestDefaultTitle:
    def test_strips_extension(self):
        assert default_title(Path("/x/My Holiday.final.mp4")) == "My Holiday.final"


class TestEnqueue:
    """Tests for adding files to the queue."""

    async def test_scenario_short_video_duration(self, controller, video_files):
        """A 90-second video is listed as 1:30."""
        items = await controller.enqueue([video_files[0]])
        assert items[0].duration == "1:30"

    async def test_scenario_long_video_duration(self, controller, video_files):
        """A 3725-second video is listed as 1:02:05."""
        items = await controller.enqueue([video_files[1]])
        assert items[0].duration == "1:02:05"

    async def test_defaults_from_file(self, controller, video_files):
        items = await controller.enqueue([video_files[0]])
        item = items[0]
        assert item.title == "first"
        assert item.filename == "first.mp4"
        assert item.status == QueueItemStatus.PENDING
        assert item.progress == 0
        assert item.thumbnail == FAKE_JPEG
        assert item.thumbnail_source == ThumbnailSource.AUTO
        assert item.preview is not None and item.preview.path.exists()

    async def test_extraction_failure_uses_defaults(self, upload_client, tmp_path):
        """Files the extractor can't read still join the queue."""
        path = tmp_path / "broken.mp4"
        path.write_bytes(b"")
        controller = UploadQueueController(upload_client, FakeExtractor())

        items = await controller.enqueue([path])

        assert items[0].duration == "0:00"
        assert items[0].thumbnail is None
        assert items[0].thumbnail_source == ThumbnailSource.DEFAULT
        assert items[0].preview is None

    async def test_extractor_crash_is_contained(self, upload_client, video_files):
        class ExplodingExtractor(FakeExtractor):
            async def extract(self, source):
                raise RuntimeError("decoder exploded")

        controller = UploadQueueController(upload_client, ExplodingExtractor())
        items = await controller.enqueue([video_files[0]])
        assert items[0].duration == "0:00"

    async def test_input_order_preserved(self, upload_client, video_files):
        """Items land in input order even when extraction finishes out of order."""
        extractor = FakeExtractor(
            durations={"first.mp4": 1, "second.mov": 2, "third.mkv": 3},
            delays={"first.mp4": 0.03, "second.mov": 0.0, "third.mkv": 0.01},
        )
        controller = UploadQueueController(upload_client, extractor)

        await controller.enqueue(video_files)

        assert [item.filename for item in controller.items] == ["first.mp4", "second.mov", "third.mkv"]
        controller.close()

    async def test_appends_after_existing_items(self, controller, video_files):
        await controller.enqueue([video_files[2]])
        await controller.enqueue(video_files[:2])
        assert [item.filename for item in controller.items] == ["third.mkv", "first.mp4", "second.mov"]

    async def test_empty_input(self, controller):
        assert await controller.enqueue([]) == []
        assert len(controller) == 0

    async def test_change_listener_called(self, upload_client, extractor, video_files):
        seen = []
        controller = UploadQueueController(upload_client, extractor, on_change=seen.append)
        await controller.enqueue(video_files[:2])
        assert [item.filename for item in seen] == ["first.mp4", "second.mov"]
        controller.close()


class TestEditing:
    """Tests for update, set_thumbnail and remove."""

    async def test_update_title_and_duration(self, controller, video_files):
        [item] = await controller.enqueue([video_files[0]])
        updated = controller.update(item.id, title="Beach day", duration="2:00")
        assert updated.title == "Beach day"
        assert controller.get(item.id).duration == "2:00"

    async def test_update_rejects_unknown_field(self, controller, video_files):
        [item] = await controller.enqueue([video_files[0]])
        with pytest.raises(ValidationError):
            controller.update(item.id, status="done")

    async def test_update_unknown_item(self, controller):
        with pytest.raises(QueueItemNotFoundError):
            controller.update("missing", title="x")

    async def test_snapshot_edits_do_not_leak(self, controller, video_files):
        [item] = await controller.enqueue([video_files[0]])
        item.title = "edited copy"
        assert controller.get(item.id).title == "first"

    async def test_snapshot_preview_release_leaves_queued_preview(self, controller, video_files):
        """Releasing a snapshot's preview must not delete the file the queue still owns."""
        [item] = await controller.enqueue([video_files[0]])

        item.preview.release()

        live = controller.get(item.id).preview
        assert not live.released
        assert live.path.exists()

    async def test_set_thumbnail_replaces_preview(self, controller, video_files, tmp_path):
        [item] = await controller.enqueue([video_files[0]])
        old_preview = item.preview.path
        image = tmp_path / "cover.png"
        image.write_bytes(b"\x89PNG fake")

        updated = controller.set_thumbnail(item.id, image)

        assert updated.thumbnail == b"\x89PNG fake"
        assert updated.thumbnail_filename == "cover.png"
        assert updated.thumbnail_source == ThumbnailSource.MANUAL
        assert not old_preview.exists()
        assert updated.preview.path.exists()

    async def test_set_thumbnail_rejects_non_image(self, controller, video_files, tmp_path):
        [item] = await controller.enqueue([video_files[0]])
        doc = tmp_path / "notes.txt"
        doc.write_text("hi")
        with pytest.raises(ValidationError, match="Unsupported thumbnail type"):
            controller.set_thumbnail(item.id, doc)

    async def test_remove_releases_preview(self, controller, video_files):
        [item] = await controller.enqueue([video_files[0]])
        preview_path = item.preview.path
        controller.remove(item.id)
        assert len(controller) == 0
        assert not preview_path.exists()

    async def test_close_releases_all_previews(self, upload_client, extractor, video_files):
        controller = UploadQueueController(upload_client, extractor)
        items = await controller.enqueue(video_files)
        paths = [item.preview.path for item in items if item.preview]
        assert paths

        controller.close()

        assert len(controller) == 0
        assert not any(path.exists() for path in paths)

    async def test_done_items_are_locked(self, controller, video_files):
        [item] = await controller.enqueue([video_files[0]])
        await controller.upload_all("secret")
        with pytest.raises(QueueItemLockedError):
            controller.update(item.id, title="late edit")
        with pytest.raises(QueueItemLockedError):
            controller.remove(item.id)


class TestUploadAll:
    """Tests for bulk submission."""

    async def test_scenario_empty_queue_rejected(self, controller, upload_client):
        """Uploading an empty queue is a validation error and nothing is sent."""
        with pytest.raises(ValidationError, match="No videos"):
            await controller.upload_all("secret")
        assert upload_client.calls == []

    async def test_scenario_one_failure_is_isolated(self, extractor, video_files):
        """The second of three uploads fails; the other two still succeed."""
        client = FakeUploadClient(fail={"second.mov": UploadError(502, "Failed to upload video to the video host")})
        controller = UploadQueueController(client, extractor)
        await controller.enqueue(video_files)

        results = await controller.upload_all("secret")

        assert [item.status for item in results] == [
            QueueItemStatus.DONE,
            QueueItemStatus.ERROR,
            QueueItemStatus.DONE,
        ]
        assert results[1].error_message == "Failed to upload video to the video host"
        assert results[1].progress == 0
        assert len(client.calls) == 3
        controller.close()

    @pytest.mark.parametrize("credential", [None, "", "   "])
    async def test_scenario_missing_credential(self, controller, upload_client, video_files, credential):
        """A blank credential fails immediately and leaves every item pending."""
        await controller.enqueue(video_files)

        with pytest.raises(AuthorizationError):
            await controller.upload_all(credential)

        assert upload_client.calls == []
        assert all(item.status == QueueItemStatus.PENDING for item in controller.items)

    async def test_missing_credential_checked_before_empty_queue(self, controller):
        with pytest.raises(AuthorizationError):
            await controller.upload_all("")

    async def test_blank_title_aborts_before_any_upload(self, controller, upload_client, video_files):
        items = await controller.enqueue(video_files)
        controller.update(items[2].id, title="   ")

        with pytest.raises(ValidationError, match="Title is required"):
            await controller.upload_all("secret")

        assert upload_client.calls == []

    async def test_invalid_duration_names_the_title(self, controller, upload_client, video_files):
        items = await controller.enqueue(video_files)
        controller.update(items[0].id, duration="90 seconds")

        with pytest.raises(ValidationError, match='"first"'):
            await controller.upload_all("secret")

        assert upload_client.calls == []

    async def test_sends_item_fields(self, controller, upload_client, video_files):
        items = await controller.enqueue([video_files[0]])
        controller.update(items[0].id, title="  Beach day  ")

        await controller.upload_all("secret")

        [call] = upload_client.calls
        assert call["title"] == "Beach day"
        assert call["duration"] == "1:30"
        assert call["credential"] == "secret"
        assert call["thumbnail"] == FAKE_JPEG
        assert call["filename"] == "first.mp4"

    async def test_records_remote_id_and_progress(self, controller, video_files):
        await controller.enqueue(video_files[:2])
        results = await controller.upload_all("secret")
        assert [item.remote_id for item in results] == [1, 2]
        assert all(item.progress == 100 for item in results)

    async def test_idempotent_for_done_items(self, controller, upload_client, video_files):
        """A second call doesn't re-upload anything that already succeeded."""
        await controller.enqueue(video_files)
        await controller.upload_all("secret")
        await controller.upload_all("secret")
        assert len(upload_client.calls) == 3

    async def test_failed_items_retried_on_next_call(self, extractor, video_files):
        client = FakeUploadClient(fail={"first.mp4": UploadError(0, "Could not connect")})
        controller = UploadQueueController(client, extractor)
        await controller.enqueue(video_files[:2])

        first = await controller.upload_all("secret")
        assert first[0].status == QueueItemStatus.ERROR

        client.fail = {}
        second = await controller.upload_all("secret")

        assert [item.status for item in second] == [QueueItemStatus.DONE, QueueItemStatus.DONE]
        assert [call["filename"] for call in client.calls] == ["first.mp4", "second.mov", "first.mp4"]
        controller.close()

    async def test_server_auth_rejection_is_per_item(self, extractor, video_files):
        """A 401 from the server marks the item but the batch carries on."""
        client = FakeUploadClient(fail={"first.mp4": AuthorizationError("Unauthorized! Admin password required.")})
        controller = UploadQueueController(client, extractor)
        await controller.enqueue(video_files[:2])

        results = await controller.upload_all("wrong")

        assert results[0].status == QueueItemStatus.ERROR
        assert results[0].error_message == "Unauthorized! Admin password required."
        assert results[1].status == QueueItemStatus.DONE
        controller.close()

    async def test_unexpected_error_gets_generic_message(self, extractor, video_files):
        client = FakeUploadClient(fail={"first.mp4": RuntimeError("socket exploded at 0x7f")})
        controller = UploadQueueController(client, extractor)
        await controller.enqueue([video_files[0]])

        [item] = await controller.upload_all("secret")

        assert item.status == QueueItemStatus.ERROR
        assert item.error_message == GENERIC_UPLOAD_ERROR
        controller.close()

    async def test_uploads_are_sequential(self, extractor, video_files):
        """Only one upload is ever in flight, even with concurrent calls."""
        client = FakeUploadClient(delay=0.01)
        controller = UploadQueueController(client, extractor)
        await controller.enqueue(video_files)

        await asyncio.gather(controller.upload_all("secret"), controller.upload_all("secret"))

        assert client.peak == 1
        assert len(client.calls) == 3
        controller.close()

    async def test_items_added_during_batch_wait(self, extractor, video_files):
        """A file enqueued mid-batch is left pending for the next call."""
        client = FakeUploadClient(delay=0.02)
        controller = UploadQueueController(client, extractor)
        await controller.enqueue(video_files[:1])

        batch = asyncio.create_task(controller.upload_all("secret"))
        await asyncio.sleep(0.005)
        await controller.enqueue(video_files[1:2])
        results = await batch

        assert [item.status for item in results] == [QueueItemStatus.DONE, QueueItemStatus.PENDING]
        controller.close()

    async def test_progress_notifications(self, extractor, video_files):
        seen = []
        client = FakeUploadClient(progress_steps=(10, 10, 60, 100))
        controller = UploadQueueController(client, extractor, on_change=seen.append)
        await controller.enqueue([video_files[0]])
        seen.clear()

        await controller.upload_all("secret")

        assert [(item.status, item.progress) for item in seen] == [
            (QueueItemStatus.UPLOADING, 0),
            (QueueItemStatus.UPLOADING, 10),
            (QueueItemStatus.UPLOADING, 60),
            (QueueItemStatus.UPLOADING, 100),
            (QueueItemStatus.DONE, 100),
        ]
        controller.close()

    async def test_listener_failure_does_not_break_batch(self, extractor, video_files):
        def broken_listener(item):
            raise ValueError("UI went away")

        client = FakeUploadClient()
        controller = UploadQueueController(client, extractor, on_change=broken_listener)
        await controller.enqueue([video_files[0]])

        [item] = await controller.upload_all("secret")

        assert item.status == QueueItemStatus.DONE
        controller.close()

    async def test_cancellation_marks_item(self, extractor, video_files):
        client = FakeUploadClient(delay=1.0)
        controller = UploadQueueController(client, extractor)
        [item] = await controller.enqueue([video_files[0]])

        batch = asyncio.create_task(controller.upload_all("secret"))
        await asyncio.sleep(0.01)
        batch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await batch

        assert controller.get(item.id).status == QueueItemStatus.ERROR
        controller.close()

    async def test_queue_is_frozen_while_batch_runs(self, extractor, video_files, tmp_path):
        """Items waiting in a running batch can't be edited past validation."""
        client = FakeUploadClient(delay=0.02)
        controller = UploadQueueController(client, extractor)
        items = await controller.enqueue(video_files)
        image = tmp_path / "cover.jpg"
        image.write_bytes(FAKE_JPEG)

        batch = asyncio.create_task(controller.upload_all("secret"))
        await asyncio.sleep(0.005)
        assert controller.is_uploading
        with pytest.raises(QueueItemLockedError):
            controller.update(items[1].id, title="   ", duration="banana")
        with pytest.raises(QueueItemLockedError):
            controller.set_thumbnail(items[1].id, image)
        with pytest.raises(QueueItemLockedError):
            controller.remove(items[2].id)
        results = await batch

        assert [(call["title"], call["duration"]) for call in client.calls] == [
            ("first", "1:30"),
            ("second", "1:02:05"),
            ("third", "0:12"),
        ]
        assert all(item.status == QueueItemStatus.DONE for item in results)
        controller.close()

    async def test_edits_allowed_again_after_batch(self, extractor, video_files):
        client = FakeUploadClient(fail={"first.mp4": UploadError(500, "boom")})
        controller = UploadQueueController(client, extractor)
        [item] = await controller.enqueue(video_files[:1])

        await controller.upload_all("secret")
        updated = controller.update(item.id, title="Second try")

        assert updated.title == "Second try"
        controller.close()
