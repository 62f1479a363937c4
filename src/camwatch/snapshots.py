"""JPEG snapshots of the latest camera frame."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)

COUNTER_PLACEHOLDER = "$COUNTER$"


def _encode(frame: np.ndarray) -> bytes:
    array = np.asarray(frame)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim != 3 or array.size == 0:
        raise ValueError("Snapshots require a 2D or 3D frame")
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.shape[2] == 1:
        return simplejpeg.encode_jpeg(np.array(array, order="C"), quality=90, colorspace="GRAY")
    return simplejpeg.encode_jpeg(np.array(array[:, :, :3], order="C"), quality=90, colorspace="RGB")


class SnapshotUnavailable(RuntimeError):
    """Raised when no frame is available to save."""


class SnapshotRepo:
    """Writes snapshots into *directory* using a file name pattern.

    ``pattern`` accepts :func:`time.strftime` directives, evaluated against the
    capture time, and the ``$COUNTER$`` placeholder, which is replaced by a
    counter that increases with every saved image. Existing files are never
    overwritten; the counter is advanced until a free name is found.
    """

    def __init__(self, directory: Path | str, pattern: str = "%Y-%m-%d_%H-%M-%S_$COUNTER$.jpg") -> None:
        if not pattern.strip():
            raise ValueError("Snapshot pattern must not be empty")
        self._directory = Path(directory)
        self._pattern = pattern
        self._counter = 0
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def counter(self) -> int:
        return self._counter

    def _candidate(self, formatted: str, attempt: int) -> Path:
        if COUNTER_PLACEHOLDER in formatted:
            return self._directory / formatted.replace(COUNTER_PLACEHOLDER, str(self._counter))
        path = self._directory / formatted
        if attempt == 0:
            return path
        return path.with_name(f"{path.stem}_{attempt}{path.suffix}")

    def next_path(self, when: datetime | None = None) -> Path:
        """Return the next free file name; advances the counter on collisions."""

        moment = when or datetime.now(timezone.utc)
        formatted = moment.strftime(self._pattern)
        attempt = 0
        candidate = self._candidate(formatted, attempt)
        while candidate.exists():
            logger.warning("Snapshot %s already exists", candidate)
            self._counter += 1
            attempt += 1
            candidate = self._candidate(formatted, attempt)
        return candidate

    def save(self, frame: np.ndarray, *, when: datetime | None = None) -> Path:
        """Encode *frame* as JPEG and store it under the next free name."""

        payload = _encode(frame)
        with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            path = self.next_path(when)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("xb") as handle:
                handle.write(payload)
            self._counter += 1
        logger.info("Snapshot saved to %s", path)
        return path


__all__ = ["COUNTER_PLACEHOLDER", "SnapshotRepo", "SnapshotUnavailable"]
