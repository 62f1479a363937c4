"""Tests for camera backends and the frame source."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("numpy")
import numpy as np

from camwatch.camera import (
    BaseCamera,
    CameraError,
    FrameSource,
    SourceUnavailable,
    SyntheticCamera,
    create_camera,
    summarise_exception,
)


class ScriptedCamera(BaseCamera):
    """Return queued frames, raising queued exceptions in order."""

    def __init__(self, items: list[object]) -> None:
        self._items = list(items)
        self.closed = False

    async def get_frame(self) -> np.ndarray:
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        self.closed = True


class StalledCamera(BaseCamera):
    async def get_frame(self) -> np.ndarray:
        await asyncio.sleep(10)
        return np.zeros((2, 2, 3), dtype=np.uint8)


def _clock(start: datetime, step: timedelta, offsets: list[int] | None = None):
    ticks = iter(offsets) if offsets is not None else None
    state = {"n": 0}

    def now() -> datetime:
        if ticks is not None:
            return start + step * next(ticks)
        state["n"] += 1
        return start + step * state["n"]

    return now


START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_create_camera_returns_synthetic_backend() -> None:
    camera = create_camera("synthetic")
    assert isinstance(camera, SyntheticCamera)


def test_create_camera_parses_synthetic_resolution() -> None:
    camera = create_camera("synthetic:64x48", fps=30)
    frame = asyncio.run(camera.get_frame())
    assert frame.shape == (48, 64, 3)
    assert frame.dtype == np.uint8


@pytest.mark.parametrize("source", ["carrier-pigeon", "synthetic:64x0", "synthetic:axb"])
def test_create_camera_rejects_unknown_sources(source: str) -> None:
    with pytest.raises(CameraError):
        create_camera(source)


def test_summarise_exception_includes_cause() -> None:
    try:
        try:
            raise OSError("device busy")
        except OSError as inner:
            raise CameraError("open failed") from inner
    except CameraError as exc:
        assert summarise_exception(exc) == "open failed | device busy"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_frame_source_assigns_sequence_and_timestamps(anyio_backend) -> None:
    pixels = [np.full((4, 4, 3), value, dtype=np.uint8) for value in (10, 20, 30)]
    source = FrameSource(
        ScriptedCamera(pixels),
        clock=_clock(START, timedelta(milliseconds=100)),
    )

    frames = [await source.next_frame() for _ in range(3)]

    assert [frame.sequence for frame in frames] == [1, 2, 3]
    assert [frame.timestamp for frame in frames] == [
        START + timedelta(milliseconds=100 * n) for n in (1, 2, 3)
    ]
    assert not frames[0].pixels.flags.writeable


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_frame_source_timestamps_never_go_backwards(anyio_backend) -> None:
    pixels = [np.zeros((2, 2), dtype=np.uint8) for _ in range(3)]
    source = FrameSource(
        ScriptedCamera(pixels),
        clock=_clock(START, timedelta(seconds=1), offsets=[5, 3, 7]),
    )

    stamps = [(await source.next_frame()).timestamp for _ in range(3)]

    assert stamps == [START + timedelta(seconds=5)] * 2 + [START + timedelta(seconds=7)]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_frame_source_closes_after_backend_failure(anyio_backend) -> None:
    camera = ScriptedCamera([np.zeros((2, 2), dtype=np.uint8), CameraError("unplugged")])
    source = FrameSource(camera)

    await source.next_frame()
    with pytest.raises(SourceUnavailable):
        await source.next_frame()

    assert source.closed
    assert camera.closed
    assert source.failure == "unplugged"
    with pytest.raises(SourceUnavailable):
        await source.next_frame()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_frame_source_times_out_on_stall(anyio_backend) -> None:
    source = FrameSource(StalledCamera(), frame_timeout=0.05)

    with pytest.raises(SourceUnavailable):
        await source.next_frame()

    assert source.closed
    assert "No frame received" in (source.failure or "")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_frame_source_rejects_empty_frames(anyio_backend) -> None:
    source = FrameSource(ScriptedCamera([np.zeros((0,), dtype=np.uint8)]))

    with pytest.raises(SourceUnavailable):
        await source.next_frame()
    assert source.failure == "Camera returned an empty frame"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_iteration_stops_once_closed(anyio_backend) -> None:
    pixels = [np.zeros((2, 2), dtype=np.uint8) for _ in range(5)]
    source = FrameSource(ScriptedCamera(pixels))
    seen = []

    async for frame in source:
        seen.append(frame.sequence)
        if len(seen) == 2:
            await source.aclose()

    assert seen == [1, 2]
