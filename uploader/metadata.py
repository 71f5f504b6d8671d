"""
Client-side video metadata extraction.

Duration comes from ffprobe, the preview thumbnail from a single ffmpeg
frame grab. Extraction is best-effort: ``MetadataExtractor.extract`` never
raises (other than cancellation) and degrades to ``("0:00", None)``.
"""

import asyncio
import json
import logging
import math
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, NamedTuple, Optional, Union

from config import (
    DEFAULT_DURATION,
    EXTRACTION_CONCURRENCY,
    FFMPEG_PATH,
    FFPROBE_PATH,
    FFPROBE_TIMEOUT,
    THUMBNAIL_CAPTURE_TIMEOUT,
    THUMBNAIL_JPEG_QUALITY,
)
from uploader.errors import ExtractionFailure

logger = logging.getLogger(__name__)

# m:ss, mm:ss or h:mm:ss (hours up to two digits)
DURATION_PATTERN = re.compile(r"^(\d{1,2}):([0-5]\d)(?::([0-5]\d))?$")

# Largest duration that still fits the pattern (99:59:59)
MAX_FORMATTED_SECONDS = 99 * 3600 + 59 * 60 + 59

# Seek target for the preview frame: 10% in, but never past the first second
THUMBNAIL_SEEK_FRACTION = 0.1
THUMBNAIL_SEEK_MAX = 1.0


def format_duration(seconds: Any) -> str:
    """
    Format a duration in seconds for display.

    Under an hour the result is ``m:ss`` (75 -> "1:15"), otherwise
    ``h:mm:ss`` (3661 -> "1:01:01"). Missing, non-numeric, NaN, infinite or
    non-positive input gives "0:00". Fractions of a second are dropped.
    """
    if seconds is None:
        return DEFAULT_DURATION
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return DEFAULT_DURATION
    if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
        return DEFAULT_DURATION

    total = min(int(seconds), MAX_FORMATTED_SECONDS)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def is_valid_duration(value: Optional[str]) -> bool:
    """True if value is an accepted duration string (m:ss, mm:ss or h:mm:ss)."""
    if not value:
        return False
    return DURATION_PATTERN.match(value) is not None


def thumbnail_timestamp(duration_seconds: float) -> float:
    """Where to grab the preview frame for a video of the given length."""
    return min(THUMBNAIL_SEEK_MAX, duration_seconds * THUMBNAIL_SEEK_FRACTION)


def jpeg_qscale(quality: float) -> int:
    """
    Map a 0.0-1.0 quality to ffmpeg's mjpeg ``-q:v`` scale (2 best, 31 worst).

    0.9 maps to 5.
    """
    quality = max(0.0, min(1.0, quality))
    return int(round(2 + (1.0 - quality) * 29))


class ExtractionResult(NamedTuple):
    duration: str
    thumbnail: Optional[bytes]


async def _run_process(cmd: List[str], timeout: float, label: str) -> bytes:
    """
    Run a subprocess and return its stdout.

    The process is killed on timeout or cancellation.

    Raises:
        ExtractionFailure: Non-zero exit, timeout, or the binary is missing
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise ExtractionFailure(f"{label} could not be started: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ExtractionFailure(f"{label} timed out after {timeout}s")
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="ignore").strip()[:300]
        raise ExtractionFailure(f"{label} failed: {message}")
    return stdout


class MetadataExtractor:
    """
    Probe duration and capture a preview frame with ffprobe/ffmpeg.

    At most ``concurrency`` extractions run at once; callers may issue as
    many as they like.
    """

    def __init__(
        self,
        ffprobe_path: str = FFPROBE_PATH,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_timeout: float = FFPROBE_TIMEOUT,
        capture_timeout: float = THUMBNAIL_CAPTURE_TIMEOUT,
        jpeg_quality: float = THUMBNAIL_JPEG_QUALITY,
        concurrency: int = EXTRACTION_CONCURRENCY,
    ):
        self.ffprobe_path = ffprobe_path
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_timeout = ffprobe_timeout
        self.capture_timeout = capture_timeout
        self.jpeg_quality = jpeg_quality
        self._semaphore = asyncio.Semaphore(concurrency)

    async def read_duration(self, path: Path) -> float:
        """
        Duration of a video in seconds.

        Raises:
            ExtractionFailure: ffprobe failed or reported no usable duration
        """
        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            str(path),
        ]
        stdout = await _run_process(cmd, self.ffprobe_timeout, "ffprobe")

        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
            duration = float(data["format"]["duration"])
        except (ValueError, KeyError, TypeError) as e:
            raise ExtractionFailure(f"ffprobe returned no duration for {path.name}") from e

        if math.isnan(duration) or math.isinf(duration) or duration <= 0:
            raise ExtractionFailure(f"Invalid duration {duration} for {path.name}")
        return duration

    async def capture_frame(self, path: Path, timestamp: float) -> bytes:
        """
        Grab one frame at ``timestamp`` seconds and encode it as JPEG.

        Raises:
            ExtractionFailure: ffmpeg failed or produced an empty image
        """
        fd, output_name = tempfile.mkstemp(prefix="clipdeck-thumb-", suffix=".jpg")
        os.close(fd)
        output_path = Path(output_name)
        try:
            # -ss before -i seeks to the nearest keyframe without decoding everything before it
            cmd = [
                self.ffmpeg_path,
                "-y",
                "-v",
                "error",
                "-ss",
                f"{timestamp:.3f}",
                "-i",
                str(path),
                "-frames:v",
                "1",
                "-q:v",
                str(jpeg_qscale(self.jpeg_quality)),
                "-f",
                "image2",
                str(output_path),
            ]
            await _run_process(cmd, self.capture_timeout, "ffmpeg")
            data = output_path.read_bytes()
        except OSError as e:
            raise ExtractionFailure(f"Could not read captured frame: {e}") from e
        finally:
            output_path.unlink(missing_ok=True)

        if not data:
            raise ExtractionFailure(f"ffmpeg produced an empty frame for {path.name}")
        return data

    async def extract(self, source: Union[Path, str, bytes]) -> ExtractionResult:
        """
        Duration string and JPEG thumbnail for a video file or raw bytes.

        Never raises ExtractionFailure: a failed ffprobe run gives ("0:00", None)
        and a failed capture gives (duration, None).
        """
        async with self._semaphore:
            if isinstance(source, (bytes, bytearray)):
                return await self._extract_bytes(bytes(source))
            return await self._extract_path(Path(source))

    async def _extract_bytes(self, data: bytes) -> ExtractionResult:
        fd, name = tempfile.mkstemp(prefix="clipdeck-src-")
        spill_path = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            return await self._extract_path(spill_path)
        finally:
            spill_path.unlink(missing_ok=True)

    async def _extract_path(self, path: Path) -> ExtractionResult:
        try:
            seconds = await self.read_duration(path)
        except ExtractionFailure as e:
            logger.warning(f"Duration lookup failed for {path.name}: {e}")
            return ExtractionResult(DEFAULT_DURATION, None)

        duration = format_duration(seconds)
        try:
            thumbnail = await self.capture_frame(path, thumbnail_timestamp(seconds))
        except ExtractionFailure as e:
            logger.warning(f"Thumbnail capture failed for {path.name}: {e}")
            thumbnail = None

        return ExtractionResult(duration, thumbnail)
