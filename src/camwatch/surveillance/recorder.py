"""Serialise triggered footage into per-segment clip files."""
from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Protocol

from ..camera import Frame
from .index import RecordingSegment, SegmentIndex
from .video import ENCODER_ERRORS, VideoEncoder, ensure_rgb_frame, write_thumbnail

logger = logging.getLogger(__name__)

_SPACE_CHECK_INTERVAL = 30


class SinkUnavailable(RuntimeError):
    """Raised when the storage sink can no longer accept frames."""


class SegmentSink(Protocol):
    """Destination receiving the frames of a single segment."""

    def write(self, frame: Frame) -> None:  # pragma: no cover - interface only
        ...

    def close(self) -> None:  # pragma: no cover - interface only
        ...


SinkFactory = Callable[[Path], SegmentSink]


class VideoFileSink:
    """Encode frames into an MP4 file, opening the encoder on the first frame."""

    def __init__(self, path: Path, *, fps: int, encoding: str) -> None:
        self.path = Path(path)
        self._fps = max(1, int(fps))
        self._encoding = encoding
        self._encoder: VideoEncoder | None = None

    def write(self, frame: Frame) -> None:
        try:
            if self._encoder is None:
                rgb = ensure_rgb_frame(frame.pixels, even=True)
                height, width = rgb.shape[:2]
                self._encoder = VideoEncoder(
                    path=self.path,
                    fps=self._fps,
                    encoding=self._encoding,
                    width=width,
                    height=height,
                )
            self._encoder.encode(frame.pixels, frame.timestamp)
        except (OSError, RuntimeError, *ENCODER_ERRORS) as exc:
            raise SinkUnavailable(f"Unable to write {self.path.name}: {exc}") from exc

    def close(self) -> None:
        encoder = self._encoder
        self._encoder = None
        if encoder is None:
            return
        try:
            encoder.close()
        except (OSError, *ENCODER_ERRORS) as exc:
            raise SinkUnavailable(f"Unable to finalise {self.path.name}: {exc}") from exc


class SegmentWriter:
    """Handle for one open segment.

    Only the owning state machine writes to it, one frame at a time. After
    :meth:`end` the handle refuses further writes.
    """

    def __init__(
        self,
        *,
        segment: RecordingSegment,
        sink: SegmentSink,
        index: SegmentIndex,
        space_check: Callable[[], None] | None = None,
    ) -> None:
        self._segment = segment
        self._sink = sink
        self._index = index
        self._space_check = space_check
        self._first_frame: Frame | None = None
        self._last_timestamp: datetime | None = None
        self._frame_count = 0
        self._failure: str | None = None
        self._failed_at: datetime | None = None
        self._closed = False

    # ------------------------------------------------------------------
    @property
    def segment(self) -> RecordingSegment:
        return self._segment

    @property
    def segment_id(self) -> str:
        return self._segment.segment_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failed(self) -> bool:
        return self._failure is not None

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def last_timestamp(self) -> datetime | None:
        return self._last_timestamp

    # ------------------------------------------------------------------
    def write(self, frame: Frame) -> None:
        if self._closed:
            raise RuntimeError(f"Segment {self.segment_id} has already ended")
        if self._failure is not None:
            raise SinkUnavailable(self._failure)
        try:
            if self._space_check is not None and self._frame_count % _SPACE_CHECK_INTERVAL == 0:
                self._space_check()
            self._sink.write(frame)
        except (SinkUnavailable, OSError) as exc:
            self._failure = str(exc) or exc.__class__.__name__
            self._failed_at = frame.timestamp
            logger.error("Recording %s failed: %s", self.segment_id, self._failure)
            if isinstance(exc, SinkUnavailable):
                raise
            raise SinkUnavailable(self._failure) from exc
        if self._first_frame is None:
            self._first_frame = frame
        self._last_timestamp = frame.timestamp
        self._frame_count += 1

    def write_many(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            self.write(frame)

    def end(self, *, end_time: datetime | None = None) -> RecordingSegment:
        """Finalise the segment and return its closed record.

        ``end_time`` defaults to the failure time for failed segments and to the
        capture time of the last written frame otherwise.
        """

        if self._closed:
            return self._segment
        self._closed = True

        try:
            self._sink.close()
        except (SinkUnavailable, OSError) as exc:
            if self._failure is None:
                self._failure = str(exc) or exc.__class__.__name__
            logger.error("Failed to close segment %s: %s", self.segment_id, exc)

        segment = self._segment
        if end_time is None:
            end_time = self._failed_at or self._last_timestamp or segment.start_time
        if end_time < segment.start_time:
            end_time = segment.start_time

        thumb_path: str | None = None
        if self._first_frame is not None:
            thumb = Path(segment.path).with_suffix(".jpg")
            try:
                write_thumbnail(thumb, self._first_frame.pixels)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to write thumbnail for %s: %s", self.segment_id, exc)
            else:
                thumb_path = str(thumb)

        path = Path(segment.path)
        size_bytes = path.stat().st_size if path.exists() else 0
        self._segment = replace(
            segment,
            end_time=end_time,
            thumb_path=thumb_path,
            frame_count=self._frame_count,
            size_bytes=size_bytes,
            failed=self._failure is not None,
        )
        try:
            self._index.close_segment(self._segment)
        except sqlite3.Error:
            logger.exception("Failed to update index for segment %s", self.segment_id)
        logger.info(
            "Segment %s closed: %d frame(s), %.2fs%s",
            self.segment_id,
            self._frame_count,
            (end_time - segment.start_time).total_seconds(),
            " (failed)" if self._failure else "",
        )
        return self._segment


class Recorder:
    """Creates :class:`SegmentWriter` handles for one camera."""

    def __init__(
        self,
        camera_id: str,
        *,
        storage_root: Path | str,
        index: SegmentIndex,
        fps: int = 15,
        encoding: str = "h264",
        min_free_bytes: int = 64 * 1024 * 1024,
        sink_factory: SinkFactory | None = None,
    ) -> None:
        self.camera_id = camera_id
        self._storage_root = Path(storage_root)
        self._index = index
        self._fps = max(1, int(fps))
        self._encoding = encoding
        self._min_free_bytes = max(0, int(min_free_bytes))
        self._sink_factory: SinkFactory = sink_factory or self._default_sink

    @property
    def storage_root(self) -> Path:
        return self._storage_root

    def _default_sink(self, path: Path) -> SegmentSink:
        return VideoFileSink(path, fps=self._fps, encoding=self._encoding)

    def segment_path(self, segment_id: str, started: datetime) -> Path:
        folder = self._storage_root / self.camera_id / started.strftime("%Y/%m/%d")
        return folder / f"{segment_id}.mp4"

    def check_free_space(self) -> None:
        if self._min_free_bytes <= 0:
            return
        try:
            usage = shutil.disk_usage(self._storage_root)
        except OSError as exc:
            raise SinkUnavailable(f"Storage unavailable: {exc}") from exc
        if usage.free < self._min_free_bytes:
            raise SinkUnavailable(
                f"Insufficient free space: {usage.free // (1024 * 1024)} MiB available"
            )

    def begin(
        self,
        segment_id: str,
        preroll_frames: Iterable[Frame],
        *,
        started: datetime,
        reason: str = "motion",
    ) -> SegmentWriter:
        """Open a segment and write the buffered pre-roll frames into it."""

        preroll = list(preroll_frames)
        start_time = preroll[0].timestamp if preroll else started
        path = self.segment_path(segment_id, start_time)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SinkUnavailable(f"Unable to create {path.parent}: {exc}") from exc
        self.check_free_space()
        try:
            sink = self._sink_factory(path)
        except OSError as exc:
            raise SinkUnavailable(f"Unable to open sink for {path.name}: {exc}") from exc

        segment = RecordingSegment(
            camera_id=self.camera_id,
            segment_id=segment_id,
            start_time=start_time,
            end_time=None,
            path=str(path),
            reason=reason,
        )
        try:
            self._index.open_segment(segment)
        except sqlite3.Error as exc:
            raise SinkUnavailable(f"Unable to index segment {segment_id}: {exc}") from exc
        writer = SegmentWriter(
            segment=segment,
            sink=sink,
            index=self._index,
            space_check=self.check_free_space,
        )
        logger.info(
            "Recording %s started with %d pre-roll frame(s)", segment_id, len(preroll)
        )
        try:
            writer.write_many(preroll)
        except SinkUnavailable:
            writer.end()
            raise
        return writer


__all__ = [
    "Recorder",
    "RecordingSegment",
    "SegmentSink",
    "SegmentWriter",
    "SinkFactory",
    "SinkUnavailable",
    "VideoFileSink",
]
