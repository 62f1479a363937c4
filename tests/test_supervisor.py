"""Tests for the supervisor registry and notification queue."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

pytest.importorskip("numpy")
import numpy as np

from camwatch.camera import BaseCamera
from camwatch.config import CameraConfig, CameraDefinition, ConfigInvalid
from camwatch.snapshots import SnapshotUnavailable
from camwatch.surveillance.events import AlertEvent, StatusUpdate
from camwatch.surveillance.index import RecordingSegment, SegmentIndex
from camwatch.surveillance.supervisor import (
    CameraNotArmed,
    NotificationQueue,
    Supervisor,
    SystemLogSink,
    UnknownCamera,
)
from camwatch.system_log import SystemLog

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _status(kind: str = "state", *, critical: bool = False, detail: str | None = None) -> StatusUpdate:
    return StatusUpdate(
        camera_id="front", kind=kind, state="armed", timestamp=NOW, detail=detail, critical=critical
    )


def _alert(camera_id: str = "front") -> AlertEvent:
    return AlertEvent(camera_id=camera_id, trigger_timestamp=NOW, motion_score=0.4, segment_id="seg")


class _MemorySink:
    def __init__(self, path: Path) -> None:
        self.frames = 0

    def write(self, frame) -> None:
        self.frames += 1

    def close(self) -> None:
        return None


class _CollectingSink:
    def __init__(self) -> None:
        self.delivered: list = []

    async def deliver(self, notification) -> None:
        self.delivered.append(notification)


class _SlowSink(_CollectingSink):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def deliver(self, notification) -> None:
        self.started.set()
        await asyncio.sleep(0.2)
        self.delivered.append(notification)


class _AlternatingCamera(BaseCamera):
    """A few static frames followed by a block flipping between halves."""

    def __init__(self, quiet_frames: int = 6) -> None:
        self._count = 0
        self._quiet = quiet_frames

    async def get_frame(self) -> np.ndarray:
        await asyncio.sleep(0.005)
        self._count += 1
        frame = np.zeros((24, 32, 3), dtype=np.uint8)
        if self._count > self._quiet:
            if self._count % 2:
                frame[:, :16] = 255
            else:
                frame[:, 16:] = 255
        return frame


def _supervisor(tmp_path: Path, sink=None, **kwargs) -> Supervisor:
    return Supervisor(
        SegmentIndex(tmp_path / "index"),
        storage_root=tmp_path / "rec",
        sink=sink,
        system_log=SystemLog(),
        camera_factory=lambda definition: _AlternatingCamera(),
        recorder_sink_factory=_MemorySink,
        min_free_bytes=0,
        **kwargs,
    )


def _definition(camera_id: str = "front") -> CameraDefinition:
    return CameraDefinition(
        camera_id,
        config=CameraConfig(
            sensitivity=0.1,
            debounce=timedelta(0),
            pre_roll=timedelta(seconds=1),
            post_roll=timedelta(seconds=1),
        ),
    )


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ----------------------------------------------------------------------
# NotificationQueue


def test_queue_drops_oldest_routine_status_when_full() -> None:
    queue = NotificationQueue(capacity=2)
    first = _status(detail="first")
    second = _status(detail="second")
    third = _status(detail="third")

    assert queue.put_nowait(first)
    assert queue.put_nowait(second)
    assert queue.put_nowait(third)

    assert queue.drain() == [second, third]
    assert queue.dropped == 1


def test_queue_keeps_alerts_and_critical_updates() -> None:
    queue = NotificationQueue(capacity=2)
    alert = _alert()
    critical = _status("degraded", critical=True)
    queue.put_nowait(alert)
    queue.put_nowait(critical)

    assert queue.put_nowait(_status()) is False
    late_alert = _alert()
    assert queue.put_nowait(late_alert) is True

    assert queue.drain() == [alert, critical, late_alert]
    assert queue.dropped == 1


def test_queue_evicts_routine_status_for_alert() -> None:
    queue = NotificationQueue(capacity=2)
    routine = _status(detail="routine")
    alert = _alert()
    queue.put_nowait(routine)
    queue.put_nowait(alert)
    newer = _alert()

    queue.put_nowait(newer)

    assert queue.drain() == [alert, newer]


def test_queue_get_nowait_preserves_order() -> None:
    queue = NotificationQueue()
    items = [_status(), _alert(), _status("recovered")]
    for item in items:
        queue.put_nowait(item)
    assert [queue.get_nowait() for _ in items] == items
    with pytest.raises(asyncio.QueueEmpty):
        queue.get_nowait()


def test_queue_rejects_invalid_capacity() -> None:
    with pytest.raises(ValueError):
        NotificationQueue(capacity=0)


# ----------------------------------------------------------------------
# Registry


def test_register_and_query(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    status = supervisor.register(_definition())

    assert status.state == "idle"
    assert status.running is False
    assert supervisor.camera_ids == ["front"]
    assert [item.camera_id for item in supervisor.snapshot()] == ["front"]
    assert supervisor.details("front")["machine"]["state"] == "idle"
    assert supervisor.latest_frame("front") is None

    with pytest.raises(ConfigInvalid):
        supervisor.register(_definition())


def test_unknown_camera_is_reported(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    with pytest.raises(UnknownCamera) as excinfo:
        supervisor.status("garage")
    assert str(excinfo.value) == "Unknown camera 'garage'"
    assert isinstance(excinfo.value, KeyError)
    with pytest.raises(UnknownCamera):
        supervisor.alerts("garage")


def test_publish_tracks_degraded_and_recovery(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    supervisor.register(_definition())

    supervisor.publish(
        StatusUpdate("front", "degraded", "armed", NOW, detail="unplugged", critical=True)
    )
    status = supervisor.status("front")
    assert status.degraded is True
    assert status.error == "unplugged"
    assert status.state == "armed"

    supervisor.publish(StatusUpdate("front", "recovered", "armed", NOW))
    assert supervisor.status("front").degraded is False

    supervisor.publish(_alert())
    status = supervisor.status("front")
    assert status.last_alert_time == NOW
    assert status.state == "recording"
    assert len(supervisor.queue) == 3


def test_reconfigure_replaces_config(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    supervisor.register(_definition())
    updated = CameraConfig(sensitivity=0.5)

    status = supervisor.reconfigure("front", updated)

    assert status.config is updated
    assert supervisor.details("front")["machine"]["config"]["sensitivity"] == pytest.approx(0.5)


def test_trigger_requires_armed_camera(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    supervisor.register(_definition())
    with pytest.raises(CameraNotArmed):
        supervisor.trigger("front")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_snapshot_requires_a_frame(tmp_path: Path, anyio_backend) -> None:
    supervisor = _supervisor(tmp_path)
    supervisor.register(_definition())
    with pytest.raises(SnapshotUnavailable):
        await supervisor.save_snapshot("front")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_system_log_sink_records_notifications(anyio_backend) -> None:
    log = SystemLog()
    sink = SystemLogSink(log)

    await sink.deliver(_alert())
    await sink.deliver(_status("degraded", critical=True))

    entries = log.tail()
    assert [entry.category for entry in entries] == ["alert", "camera"]
    assert entries[0].camera_id == "front"
    assert entries[0].metadata["segment_id"] == "seg"
    assert entries[1].event == "degraded"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_closes_segments_left_open(tmp_path: Path, anyio_backend) -> None:
    supervisor = _supervisor(tmp_path)
    supervisor.index.open_segment(
        RecordingSegment("front", "stale", NOW, None, str(tmp_path / "stale.mp4"))
    )

    await supervisor.start()
    try:
        stale = supervisor.index.get_segment("stale")
        assert stale.failed is True
        assert stale.end_time == stale.start_time
    finally:
        await supervisor.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_armed_camera_raises_alert_and_disarms(tmp_path: Path, anyio_backend) -> None:
    sink = _CollectingSink()
    supervisor = _supervisor(tmp_path, sink=sink)
    supervisor.register(_definition())
    await supervisor.start()
    try:
        status = await supervisor.arm("front")
        assert status.state == "armed"
        assert status.running is True

        await _wait_for(lambda: any(isinstance(n, AlertEvent) for n in sink.delivered))

        status = supervisor.status("front")
        assert status.last_alert_time is not None
        records = supervisor.alerts("front")
        assert len(records) >= 1
        assert records[0].alert.camera_id == "front"
        assert supervisor.segments("front")

        path = await supervisor.save_snapshot("front")
        assert path.exists()
        assert path.parent == tmp_path / "rec" / "front" / "snapshots"

        supervisor.trigger("front")

        status = await supervisor.disarm("front")
        assert status.state == "idle"
        assert status.running is False
        assert supervisor.index.open_segments() == []

        status = await supervisor.disarm("front")
        assert status.state == "idle"
        with pytest.raises(CameraNotArmed):
            supervisor.trigger("front")
    finally:
        await supervisor.aclose()

    states = [n.state for n in sink.delivered if isinstance(n, StatusUpdate)]
    assert states[0] == "armed"
    assert states[-1] == "idle"
    assert supervisor.delivered == len(sink.delivered)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_start_arms_cameras_configured_as_armed(tmp_path: Path, anyio_backend) -> None:
    supervisor = _supervisor(tmp_path, sink=_CollectingSink())
    definition = _definition()
    supervisor.register(
        CameraDefinition("front", config=definition.config.updated({"armed": True}))
    )
    supervisor.register(_definition("back"))

    await supervisor.start()
    try:
        assert supervisor.status("front").running is True
        assert supervisor.status("back").running is False
    finally:
        await supervisor.aclose()

    assert supervisor.status("front").state == "idle"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_unregister_stops_pipeline(tmp_path: Path, anyio_backend) -> None:
    supervisor = _supervisor(tmp_path, sink=_CollectingSink())
    supervisor.register(_definition())
    await supervisor.arm("front")

    await supervisor.unregister("front")

    assert supervisor.camera_ids == []
    with pytest.raises(UnknownCamera):
        supervisor.status("front")
    await supervisor.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_aclose_completes_delivery_in_progress(tmp_path: Path, anyio_backend) -> None:
    sink = _SlowSink()
    supervisor = _supervisor(tmp_path, sink=sink)
    await supervisor.start()
    alert = _alert()
    queued = _status("degraded", critical=True)

    supervisor.publish(alert)
    await asyncio.wait_for(sink.started.wait(), timeout=5)
    supervisor.publish(queued)
    await supervisor.aclose()

    assert sink.delivered == [alert, queued]
    assert len(supervisor.queue) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_rearming_a_retrying_camera_keeps_it_degraded(tmp_path: Path, anyio_backend) -> None:
    supervisor = _supervisor(tmp_path, sink=_CollectingSink())
    supervisor.register(_definition())
    await supervisor.arm("front")
    try:
        supervisor.publish(
            StatusUpdate("front", "degraded", "armed", NOW, detail="unplugged", critical=True)
        )

        status = await supervisor.arm("front")

        assert status.running is True
        assert status.degraded is True
        assert status.error == "unplugged"
    finally:
        await supervisor.aclose()
