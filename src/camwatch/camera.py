"""Camera backends and the frame source consumed by camera pipelines."""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

import numpy as np

logger = logging.getLogger(__name__)

_STREAM_PREFIXES = ("rtsp://", "rtsps://", "http://", "https://")


class CameraError(RuntimeError):
    """Raised when the camera cannot be initialised or read."""


class SourceUnavailable(RuntimeError):
    """Raised when a frame source has been lost and can no longer produce frames."""


@dataclass(frozen=True, slots=True, eq=False)
class Frame:
    """An immutable capture handed down the camera pipeline."""

    pixels: np.ndarray
    sequence: int
    timestamp: datetime

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.pixels.shape)


class BaseCamera(ABC):
    """Abstract camera capable of producing RGB frames."""

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details) or exc.__class__.__name__


class OpenCVCamera(BaseCamera):
    """Capture from a USB device index or a network stream using OpenCV."""

    def __init__(
        self,
        device: int | str = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError("OpenCV is not installed") from exc

        self._cv2 = cv2
        self._device = device
        self._capture = cv2.VideoCapture(device)
        if not self._capture.isOpened():
            raise CameraError(f"Failed to open camera {device!r}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))

    async def get_frame(self) -> np.ndarray:
        ret, frame = await asyncio.to_thread(self._capture.read)
        if not ret or frame is None:
            raise CameraError(f"Failed to read frame from camera {self._device!r}")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(BaseCamera):
    """Generates synthetic frames for development and testing."""

    def __init__(
        self,
        width: int = 320,
        height: int = 240,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / float(fps) if fps and fps > 0 else 1.0 / 15.0
        self._start = time.perf_counter()

    async def get_frame(self) -> np.ndarray:
        await asyncio.sleep(self._interval)
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2)
        return frame.astype(np.uint8)


def _parse_resolution(text: str) -> tuple[int, int] | None:
    if "x" not in text:
        return None
    width, height = text.split("x", 1)
    try:
        width_i, height_i = int(width), int(height)
    except ValueError as exc:
        raise CameraError(f"Invalid resolution {text!r}") from exc
    if width_i <= 0 or height_i <= 0:
        raise CameraError(f"Invalid resolution {text!r}")
    return width_i, height_i


def create_camera(
    source: str,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Create the camera backend described by *source*.

    ``source`` is one of ``"synthetic"``, ``"synthetic:640x480"``,
    ``"opencv:<index>"``, a bare device index, or an ``rtsp://``/``http://``
    stream URL. Failures raise :class:`CameraError`.
    """

    text = str(source).strip()
    lower = text.lower()
    if lower.startswith(_STREAM_PREFIXES):
        return OpenCVCamera(text, resolution=resolution, fps=fps)
    kind, _, argument = lower.partition(":")
    if kind == "synthetic":
        parsed = _parse_resolution(argument) if argument else None
        return SyntheticCamera(resolution=parsed or resolution, fps=fps)
    if kind == "opencv":
        device: int | str = 0
        if argument:
            device = int(argument) if argument.isdigit() else text.partition(":")[2]
        return OpenCVCamera(device, resolution=resolution, fps=fps)
    if lower.isdigit():
        return OpenCVCamera(int(lower), resolution=resolution, fps=fps)
    raise CameraError(f"Unknown camera source: {source}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FrameSource:
    """Timestamped, non-restartable frame sequence over a :class:`BaseCamera`.

    Any backend failure, or a stall longer than ``frame_timeout`` seconds,
    closes the source and raises :class:`SourceUnavailable`. Every later call
    raises as well; callers open a fresh source to resume.
    """

    def __init__(
        self,
        camera: BaseCamera,
        *,
        frame_timeout: float | None = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._camera = camera
        self._frame_timeout = frame_timeout
        self._clock = clock
        self._sequence = 0
        self._last_timestamp: datetime | None = None
        self._closed = False
        self._failure: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failure(self) -> str | None:
        return self._failure

    async def next_frame(self) -> Frame:
        if self._closed:
            raise SourceUnavailable(self._failure or "Frame source is closed")
        try:
            if self._frame_timeout is not None:
                pixels = await asyncio.wait_for(self._camera.get_frame(), self._frame_timeout)
            else:
                pixels = await self._camera.get_frame()
        except asyncio.TimeoutError as exc:
            await self._fail(f"No frame received within {self._frame_timeout:g}s")
            raise SourceUnavailable(self._failure) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(summarise_exception(exc))
            raise SourceUnavailable(self._failure) from exc

        array = np.asarray(pixels)
        if array.size == 0:
            await self._fail("Camera returned an empty frame")
            raise SourceUnavailable(self._failure)
        array.setflags(write=False)
        timestamp = self._clock()
        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            timestamp = self._last_timestamp
        self._last_timestamp = timestamp
        self._sequence += 1
        return Frame(pixels=array, sequence=self._sequence, timestamp=timestamp)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._failure = self._failure or "Frame source is closed"
        try:
            await self._camera.close()
        except Exception:  # pragma: no cover - best-effort release
            logger.debug("Failed to close camera backend", exc_info=True)

    async def _fail(self, reason: str) -> None:
        logger.warning("Frame source lost: %s", reason)
        self._failure = reason
        await self.aclose()

    def __aiter__(self) -> "FrameSource":
        return self

    async def __anext__(self) -> Frame:
        if self._closed:
            raise StopAsyncIteration
        return await self.next_frame()


__all__ = [
    "BaseCamera",
    "CameraError",
    "Frame",
    "FrameSource",
    "OpenCVCamera",
    "SourceUnavailable",
    "SyntheticCamera",
    "create_camera",
    "summarise_exception",
]
