"""Background subtraction motion detector."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from ..camera import Frame

logger = logging.getLogger(__name__)

_MAX_ANALYSIS_WIDTH = 160
_MAX_ANALYSIS_HEIGHT = 90


@dataclass(frozen=True, slots=True)
class MotionSignal:
    """Outcome of analysing one frame."""

    score: float
    motion: bool
    warming_up: bool = False


@dataclass
class MotionDetector:
    """Compare frames to an exponential moving average of the scene.

    ``sensitivity`` is the fraction of analysed pixels (0.0–1.0) that must
    differ from the background by at least ``pixel_threshold`` intensity levels
    for a frame to count as motion. The background adapts on every call, so
    slow lighting changes fade into the model instead of tripping the alarm.
    """

    sensitivity: float = 0.02
    pixel_threshold: float = 25.0
    learning_rate: float = 0.05
    warmup_frames: int = 5
    _background: np.ndarray | None = field(init=False, default=None, repr=False)
    _source_shape: tuple[int, ...] | None = field(init=False, default=None)
    _frames_seen: int = field(init=False, default=0)
    _resets: int = field(init=False, default=0)
    _last_score: float = field(init=False, default=0.0)
    _motion_frames: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.sensitivity = self._normalise_sensitivity(self.sensitivity)
        self.pixel_threshold = self._normalise_pixel_threshold(self.pixel_threshold)
        self.learning_rate = self._normalise_learning_rate(self.learning_rate)
        self.warmup_frames = max(0, int(self.warmup_frames))

    # ------------------------------------------------------------------
    # Configuration

    def configure(
        self,
        *,
        sensitivity: float | None = None,
        pixel_threshold: float | None = None,
        learning_rate: float | None = None,
        warmup_frames: int | None = None,
    ) -> None:
        """Update detector settings, resetting the model when anything changed."""

        changed = False
        if sensitivity is not None:
            value = self._normalise_sensitivity(sensitivity)
            if value != self.sensitivity:
                self.sensitivity = value
                changed = True
        if pixel_threshold is not None:
            value = self._normalise_pixel_threshold(pixel_threshold)
            if value != self.pixel_threshold:
                self.pixel_threshold = value
                changed = True
        if learning_rate is not None:
            value = self._normalise_learning_rate(learning_rate)
            if value != self.learning_rate:
                self.learning_rate = value
                changed = True
        if warmup_frames is not None:
            frames = max(0, int(warmup_frames))
            if frames != self.warmup_frames:
                self.warmup_frames = frames
                changed = True
        if changed:
            self.reset()

    def reset(self) -> None:
        """Forget the background model; the next frames warm it up again."""

        self._background = None
        self._source_shape = None
        self._frames_seen = 0
        self._last_score = 0.0
        self._resets += 1

    # ------------------------------------------------------------------
    # Analysis

    def observe(self, frame: Frame | np.ndarray) -> MotionSignal:
        pixels = frame.pixels if isinstance(frame, Frame) else frame
        array = np.asarray(pixels)
        if array.size == 0 or array.ndim not in (2, 3):
            raise ValueError(f"Unsupported frame shape {array.shape!r}")

        if self._source_shape is not None and array.shape != self._source_shape:
            logger.info(
                "Frame layout changed from %s to %s; resetting background model",
                self._source_shape,
                array.shape,
            )
            self.reset()
        self._source_shape = tuple(array.shape)

        sample = self._prepare(array)
        background = self._background
        if background is None:
            self._background = sample
            self._frames_seen = 1
            self._last_score = 0.0
            return MotionSignal(score=0.0, motion=False, warming_up=self.warmup_frames > 0)

        changed = np.abs(sample - background) >= self.pixel_threshold
        score = float(np.count_nonzero(changed)) / float(changed.size)
        # The model adapts regardless of the decision below.
        background += self.learning_rate * (sample - background)
        self._frames_seen += 1
        self._last_score = score

        warming_up = self._frames_seen <= self.warmup_frames
        motion = not warming_up and score > self.sensitivity
        if motion:
            self._motion_frames += 1
        return MotionSignal(score=score, motion=motion, warming_up=warming_up)

    @staticmethod
    def _prepare(array: np.ndarray) -> np.ndarray:
        if array.ndim == 3:
            sample = np.mean(array.astype(np.float32), axis=2)
        else:
            sample = array.astype(np.float32)
        height, width = sample.shape
        step = max(
            1,
            math.ceil(height / _MAX_ANALYSIS_HEIGHT),
            math.ceil(width / _MAX_ANALYSIS_WIDTH),
        )
        if step > 1:
            sample = sample[::step, ::step]
        return np.ascontiguousarray(sample)

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the detector state."""

        return {
            "sensitivity": self.sensitivity,
            "pixel_threshold": self.pixel_threshold,
            "learning_rate": self.learning_rate,
            "warmup_frames": self.warmup_frames,
            "frames_seen": self._frames_seen,
            "warming_up": self._frames_seen <= self.warmup_frames,
            "last_score": self._last_score,
            "motion_frames": self._motion_frames,
            "resets": self._resets,
        }

    # ------------------------------------------------------------------
    # Normalisation helpers

    @staticmethod
    def _normalise_sensitivity(value: float | int) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            numeric = 0.02
        if not math.isfinite(numeric):
            numeric = 0.02
        return max(0.0, min(1.0, numeric))

    @staticmethod
    def _normalise_pixel_threshold(value: float | int) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            numeric = 25.0
        if not math.isfinite(numeric) or numeric <= 0:
            numeric = 25.0
        return min(255.0, numeric)

    @staticmethod
    def _normalise_learning_rate(value: float | int) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            numeric = 0.05
        if not math.isfinite(numeric) or numeric <= 0:
            numeric = 0.05
        return min(1.0, numeric)


__all__ = ["MotionDetector", "MotionSignal"]
