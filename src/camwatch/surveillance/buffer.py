"""Time-bounded ring buffer retaining recent frames for pre-roll."""
from __future__ import annotations

import logging
import math
from collections import deque
from datetime import datetime, timedelta
from typing import List

from ..camera import Frame

logger = logging.getLogger(__name__)


class FrameBuffer:
    """In-memory FIFO of recent frames.

    Two bounds apply after every :meth:`push`: the time span between the
    oldest and newest frame never exceeds ``window``, and the number of frames
    never exceeds ``capacity`` (``window × expected_fps`` capped at
    ``max_frames``). When a burst of frames hits the count bound the oldest
    frames are dropped even though they are still inside the window.

    The buffer belongs to a single camera pipeline and is not locked.
    """

    def __init__(
        self,
        window: timedelta,
        *,
        expected_fps: float = 15.0,
        max_frames: int = 900,
    ) -> None:
        if max_frames < 1:
            raise ValueError("max_frames must be positive")
        self._max_frames = int(max_frames)
        self._frames: deque[Frame] = deque()
        self._dropped = 0
        self._window = timedelta(0)
        self._expected_fps = 15.0
        self._capacity = 1
        self.configure(window, expected_fps=expected_fps)

    # ------------------------------------------------------------------
    @property
    def window(self) -> timedelta:
        return self._window

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        """Frames evicted by the count bound rather than by age."""

        return self._dropped

    @property
    def span(self) -> timedelta:
        if len(self._frames) < 2:
            return timedelta(0)
        return self._frames[-1].timestamp - self._frames[0].timestamp

    def __len__(self) -> int:
        return len(self._frames)

    # ------------------------------------------------------------------
    def configure(self, window: timedelta, *, expected_fps: float | None = None) -> None:
        if window < timedelta(0):
            raise ValueError("Pre-roll window must not be negative")
        if expected_fps is not None:
            if expected_fps <= 0:
                raise ValueError("expected_fps must be positive")
            self._expected_fps = float(expected_fps)
        self._window = window
        frames = math.ceil(window.total_seconds() * self._expected_fps) + 1
        self._capacity = max(1, min(self._max_frames, frames))
        self._prune()

    def clear(self) -> None:
        self._frames.clear()

    def push(self, frame: Frame) -> None:
        if self._frames and frame.timestamp < self._frames[-1].timestamp:
            raise ValueError("Frames must be pushed in timestamp order")
        self._frames.append(frame)
        self._prune()

    def drain_since(self, since: datetime) -> List[Frame]:
        """Remove and return every retained frame captured at or after *since*."""

        drained = [frame for frame in self._frames if frame.timestamp >= since]
        self._frames.clear()
        return drained

    def frames(self) -> List[Frame]:
        return list(self._frames)

    def _prune(self) -> None:
        frames = self._frames
        if not frames:
            return
        newest = frames[-1].timestamp
        while frames and newest - frames[0].timestamp > self._window:
            frames.popleft()
        overflow = len(frames) - self._capacity
        if overflow > 0:
            for _ in range(overflow):
                frames.popleft()
            self._dropped += overflow
            logger.debug("Pre-roll buffer over capacity; dropped %d frame(s)", overflow)


__all__ = ["FrameBuffer"]
