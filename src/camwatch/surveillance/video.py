"""Encoding helpers for recorded segments and JPEG stills."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction
from pathlib import Path
from typing import Sequence

import av
import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)

ENCODER_ERRORS: tuple[type[BaseException], ...] = (av.error.FFmpegError, ValueError)


def ensure_rgb_frame(frame: np.ndarray | Sequence, *, even: bool = True) -> np.ndarray:
    """Return a contiguous ``uint8`` RGB array, cropped to even dimensions if asked."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame for encoding")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if even:
        height, width = array.shape[:2]
        if width % 2:
            array = array[:, : width - 1, :]
        if height % 2:
            array = array[: height - 1, :, :]
        if array.shape[0] == 0 or array.shape[1] == 0:
            raise ValueError("Frame is too small to encode")

    if not array.flags["C_CONTIGUOUS"] or not array.flags["WRITEABLE"]:
        array = np.array(array, order="C")

    return array


def _codec_candidates(encoding: str) -> list[str]:
    codec = encoding.lower()
    if codec in {"h264", "libx264"}:
        return ["libx264", "h264", "mpeg4"]
    if codec in {"hevc", "h265", "libx265"}:
        return ["libx265", "hevc", "libx264", "h264", "mpeg4"]
    return [codec, "libx264", "h264", "mpeg4"]


@dataclass(slots=True)
class VideoEncoder:
    """Incrementally encode frames into an MP4 container.

    Presentation timestamps come from the capture time of each frame relative
    to the first one, so a clip plays back at wall-clock speed even when the
    camera delivers frames irregularly.
    """

    path: Path
    fps: int
    encoding: str
    width: int
    height: int
    _container: av.container.OutputContainer | None = field(init=False, default=None)
    _stream: av.video.stream.VideoStream | None = field(init=False, default=None)
    _origin: datetime | None = field(init=False, default=None)
    _last_pts: int = field(init=False, default=-1)
    frame_count: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        self._open()

    # ------------------------------------------------------------------
    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        container = av.open(self.path.as_posix(), mode="w")
        stream = None
        for codec in _codec_candidates(self.encoding):
            try:
                stream = container.add_stream(codec, rate=self.fps)
            except ENCODER_ERRORS:
                logger.debug("Codec %s unavailable", codec)
                continue
            else:
                break
        if stream is None:
            container.close()
            raise RuntimeError(f"No compatible encoder available for {self.encoding!r}")
        stream.width = int(self.width)
        stream.height = int(self.height)
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(1, int(self.fps))
        if stream.codec_context.name == "libx264":
            stream.codec_context.options = {"preset": "veryfast", "crf": "23"}
        self._container = container
        self._stream = stream

    # ------------------------------------------------------------------
    def _pts_for(self, timestamp: datetime | None) -> int:
        if timestamp is None:
            return self._last_pts + 1
        if self._origin is None:
            self._origin = timestamp
        offset = (timestamp - self._origin).total_seconds()
        pts = int(round(offset * self.fps))
        if pts <= self._last_pts:
            pts = self._last_pts + 1
        return pts

    def encode(self, frame: np.ndarray | Sequence, timestamp: datetime | None = None) -> None:
        if self._stream is None or self._container is None:
            raise RuntimeError("Video encoder has been closed")
        rgb = ensure_rgb_frame(frame, even=True)
        height, width = rgb.shape[:2]
        if (width, height) != (self.width, self.height):
            # Resolution changes mid-segment are padded or cropped to the
            # dimensions the stream was opened with.
            canvas = np.zeros((self.height, self.width, 3), dtype=np.uint8)
            h = min(height, self.height)
            w = min(width, self.width)
            canvas[:h, :w] = rgb[:h, :w]
            rgb = canvas
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        pts = self._pts_for(timestamp)
        video_frame.pts = pts
        video_frame.time_base = self._stream.time_base
        self._last_pts = pts
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)
        self.frame_count += 1

    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._stream is None or self._container is None:
            return
        stream, container = self._stream, self._container
        self._stream = None
        self._container = None
        try:
            for packet in stream.encode():
                container.mux(packet)
        finally:
            container.close()

    # ------------------------------------------------------------------
    def __enter__(self) -> "VideoEncoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def encode_jpeg(frame: np.ndarray | Sequence, *, quality: int = 85) -> bytes:
    """Return *frame* encoded as a JPEG image."""

    rgb = ensure_rgb_frame(frame, even=False)
    return simplejpeg.encode_jpeg(rgb, quality=quality, colorspace="RGB")


def write_thumbnail(path: Path, frame: np.ndarray | Sequence) -> None:
    """Persist *frame* as a JPEG thumbnail."""

    payload = encode_jpeg(frame)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


__all__ = [
    "ENCODER_ERRORS",
    "VideoEncoder",
    "encode_jpeg",
    "ensure_rgb_frame",
    "write_thumbnail",
]
