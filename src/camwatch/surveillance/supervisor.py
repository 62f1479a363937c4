"""Registry of camera pipelines and outward notification relay."""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Deque, Iterable, Protocol

from ..camera import BaseCamera, Frame, FrameSource, create_camera
from ..config import AgentConfig, CameraConfig, CameraDefinition, ConfigInvalid
from ..snapshots import SnapshotRepo, SnapshotUnavailable
from ..system_log import LogCategory, SystemLog
from .events import AlertEvent, Notification, StatusUpdate
from .index import AlertRecord, RecordingSegment, SegmentIndex
from .machine import CameraStateMachine
from .recorder import Recorder, SinkFactory
from .runtime import CameraPipeline
from .state import CameraPhase

logger = logging.getLogger(__name__)

CameraFactory = Callable[[CameraDefinition], BaseCamera]


class UnknownCamera(KeyError):
    """Raised when a command references a camera that is not registered."""

    def __init__(self, camera_id: str) -> None:
        super().__init__(camera_id)
        self.camera_id = camera_id

    def __str__(self) -> str:
        return f"Unknown camera {self.camera_id!r}"


class CameraNotArmed(RuntimeError):
    """Raised when an operation requires an armed camera."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Notification delivery
# ----------------------------------------------------------------------


class NotificationSink(Protocol):
    """Outward consumer of alerts and status updates."""

    async def deliver(self, notification: Notification) -> None:  # pragma: no cover - interface only
        ...


class SystemLogSink:
    """Default sink recording every notification in the :class:`SystemLog`."""

    def __init__(self, system_log: SystemLog) -> None:
        self._log = system_log

    async def deliver(self, notification: Notification) -> None:
        if isinstance(notification, AlertEvent):
            self._log.record(
                LogCategory.ALERT,
                notification.reason,
                f"Motion alert on {notification.camera_id}"
                if notification.reason == "motion"
                else f"Manual recording on {notification.camera_id}",
                camera_id=notification.camera_id,
                metadata={
                    "trigger_timestamp": notification.trigger_timestamp.isoformat(),
                    "motion_score": round(notification.motion_score, 4),
                    "segment_id": notification.segment_id,
                },
            )
            return
        self._log.record(
            LogCategory.CAMERA,
            notification.kind,
            f"Camera {notification.camera_id} is {notification.state}",
            camera_id=notification.camera_id,
            metadata={"detail": notification.detail, "critical": notification.critical or None},
        )


class NotificationQueue:
    """Bounded FIFO between camera pipelines and the relay task.

    ``put_nowait`` never blocks. When the queue is full the oldest pending
    non-critical status update is discarded to make room. Alerts and critical
    updates are never discarded; if nothing can be evicted they are queued
    beyond ``capacity``.
    """

    def __init__(self, capacity: int = 64) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = int(capacity)
        self._items: Deque[Notification] = deque()
        self._available = asyncio.Event()
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        return len(self._items)

    @staticmethod
    def _droppable(item: Notification) -> bool:
        return isinstance(item, StatusUpdate) and not item.critical

    def put_nowait(self, item: Notification) -> bool:
        """Queue *item*; returns ``False`` when it was discarded instead."""

        if len(self._items) >= self._capacity:
            for index, queued in enumerate(self._items):
                if self._droppable(queued):
                    del self._items[index]
                    self._dropped += 1
                    break
            else:
                if self._droppable(item):
                    self._dropped += 1
                    return False
                logger.warning(
                    "Notification queue over capacity (%d); keeping %s for %s",
                    self._capacity,
                    type(item).__name__,
                    item.camera_id,
                )
        self._items.append(item)
        self._available.set()
        return True

    def get_nowait(self) -> Notification:
        if not self._items:
            raise asyncio.QueueEmpty
        item = self._items.popleft()
        if not self._items:
            self._available.clear()
        return item

    async def get(self) -> Notification:
        while not self._items:
            await self._available.wait()
        return self.get_nowait()

    def drain(self) -> list[Notification]:
        items = list(self._items)
        self._items.clear()
        self._available.clear()
        return items


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CameraStatus:
    """Consistent view of one camera for status queries."""

    camera_id: str
    state: str
    last_alert_time: datetime | None
    source: str
    config: CameraConfig
    degraded: bool = False
    error: str | None = None
    running: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "state": self.state,
            "last_alert_time": self.last_alert_time.isoformat() if self.last_alert_time else None,
            "source": self.source,
            "degraded": self.degraded,
            "error": self.error,
            "running": self.running,
            "config": self.config.to_dict(),
        }


@dataclass(slots=True)
class _CameraEntry:
    definition: CameraDefinition
    config: CameraConfig
    machine: CameraStateMachine
    pipeline: CameraPipeline
    snapshots: SnapshotRepo
    state: str = CameraPhase.IDLE.value
    last_alert_time: datetime | None = None
    degraded: bool = False
    error: str | None = None
    alerts: int = field(default=0)


class Supervisor:
    """Own every camera pipeline and coordinate commands and notifications.

    The registry is the only structure touched from several directions
    (pipeline notifications and control commands); a single lock guards it
    and is only held for short, non-blocking updates.
    """

    def __init__(
        self,
        index: SegmentIndex,
        *,
        storage_root: Path | str | None = None,
        sink: NotificationSink | None = None,
        system_log: SystemLog | None = None,
        queue_size: int = 64,
        camera_factory: CameraFactory | None = None,
        recorder_sink_factory: SinkFactory | None = None,
        fps: int = 15,
        encoding: str = "h264",
        min_free_bytes: int = 64 * 1024 * 1024,
        retry_budget: int = 5,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        frame_timeout: float = 5.0,
        retention_days: int | None = None,
        snapshot_pattern: str = "%Y-%m-%d_%H-%M-%S_$COUNTER$.jpg",
    ) -> None:
        self._index = index
        self._storage_root = Path(storage_root) if storage_root is not None else index.base_path
        self._system_log = system_log or SystemLog()
        self._sink: NotificationSink = sink or SystemLogSink(self._system_log)
        self._queue = NotificationQueue(queue_size)
        self._camera_factory: CameraFactory = camera_factory or self._default_camera_factory
        self._recorder_sink_factory = recorder_sink_factory
        self._fps = max(1, int(fps))
        self._encoding = encoding
        self._min_free_bytes = int(min_free_bytes)
        self._retry_budget = retry_budget
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._frame_timeout = frame_timeout
        self._retention_days = retention_days
        self._snapshot_pattern = snapshot_pattern
        self._cameras: dict[str, _CameraEntry] = {}
        self._lock = threading.Lock()
        self._relay_task: asyncio.Task[None] | None = None
        self._delivery: asyncio.Future[None] | None = None
        self._delivered = 0
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        *,
        system_log: SystemLog | None = None,
        sink: NotificationSink | None = None,
        camera_factory: CameraFactory | None = None,
        recorder_sink_factory: SinkFactory | None = None,
    ) -> "Supervisor":
        supervisor = cls(
            SegmentIndex(config.storage_root),
            storage_root=config.storage_root,
            sink=sink,
            system_log=system_log,
            queue_size=config.alert_queue_size,
            camera_factory=camera_factory,
            recorder_sink_factory=recorder_sink_factory,
            fps=config.fps,
            encoding=config.encoding,
            min_free_bytes=int(config.min_free_mb * 1024 * 1024),
            retry_budget=config.source_retry_budget,
            backoff_initial=config.source_backoff_initial,
            backoff_max=config.source_backoff_max,
            frame_timeout=config.frame_timeout,
            retention_days=config.retention_days,
            snapshot_pattern=config.snapshot_pattern,
        )
        for definition in config.cameras:
            supervisor.register(definition)
        return supervisor

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def index(self) -> SegmentIndex:
        return self._index

    @property
    def system_log(self) -> SystemLog:
        return self._system_log

    @property
    def queue(self) -> NotificationQueue:
        return self._queue

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def camera_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._cameras)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def _default_camera_factory(self, definition: CameraDefinition) -> BaseCamera:
        return create_camera(definition.source, fps=self._fps)

    def register(self, definition: CameraDefinition) -> CameraStatus:
        camera_id = definition.camera_id
        with self._lock:
            if camera_id in self._cameras:
                raise ConfigInvalid(f"Camera {camera_id!r} is already registered")
        recorder = Recorder(
            camera_id,
            storage_root=self._storage_root,
            index=self._index,
            fps=self._fps,
            encoding=self._encoding,
            min_free_bytes=self._min_free_bytes,
            sink_factory=self._recorder_sink_factory,
        )
        machine = CameraStateMachine(camera_id, definition.config, recorder=recorder)

        def open_source() -> FrameSource:
            camera = self._camera_factory(definition)
            return FrameSource(camera, frame_timeout=self._frame_timeout)

        pipeline = CameraPipeline(
            camera_id,
            machine,
            source_factory=open_source,
            publish=self.publish,
            index=self._index,
            retry_budget=self._retry_budget,
            backoff_initial=self._backoff_initial,
            backoff_max=self._backoff_max,
        )
        entry = _CameraEntry(
            definition=definition,
            config=definition.config,
            machine=machine,
            pipeline=pipeline,
            snapshots=SnapshotRepo(
                self._storage_root / camera_id / "snapshots", self._snapshot_pattern
            ),
            last_alert_time=self._index.last_alert_time(camera_id),
        )
        with self._lock:
            self._cameras[camera_id] = entry
        logger.info("Registered camera %s (%s)", camera_id, definition.source)
        return self.status(camera_id)

    async def unregister(self, camera_id: str) -> None:
        entry = self._entry(camera_id)
        await entry.pipeline.stop()
        with self._lock:
            self._cameras.pop(camera_id, None)
        logger.info("Unregistered camera %s", camera_id)

    def _entry(self, camera_id: str) -> _CameraEntry:
        with self._lock:
            entry = self._cameras.get(camera_id)
        if entry is None:
            raise UnknownCamera(camera_id)
        return entry

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def arm(self, camera_id: str) -> CameraStatus:
        entry = self._entry(camera_id)
        for note in await asyncio.to_thread(entry.machine.arm):
            self.publish(note)
        if not entry.pipeline.running:
            with self._lock:
                entry.degraded = False
                entry.error = None
        entry.pipeline.start()
        self._system_log.record(LogCategory.CAMERA, "armed", f"Camera {camera_id} armed", camera_id=camera_id)
        return self.status(camera_id)

    async def disarm(self, camera_id: str) -> CameraStatus:
        """Stop the pipeline and return the camera to idle; idle cameras are left as they are."""

        entry = self._entry(camera_id)
        if entry.pipeline.running:
            await entry.pipeline.stop()
            self._system_log.record(
                LogCategory.CAMERA, "disarmed", f"Camera {camera_id} disarmed", camera_id=camera_id
            )
        elif entry.machine.state.phase is not CameraPhase.IDLE:
            notes = await asyncio.to_thread(entry.machine.disarm)
            for note in notes:
                self.publish(note)
        return self.status(camera_id)

    def reconfigure(self, camera_id: str, config: CameraConfig) -> CameraStatus:
        entry = self._entry(camera_id)
        with self._lock:
            entry.config = config
        entry.pipeline.request_config(config)
        logger.info("Camera %s reconfigured: %s", camera_id, config.to_dict())
        return self.status(camera_id)

    def trigger(self, camera_id: str) -> CameraStatus:
        """Request a manual recording on the next frame of an armed camera."""

        entry = self._entry(camera_id)
        if not entry.pipeline.running or entry.machine.state.phase is CameraPhase.IDLE:
            raise CameraNotArmed(f"Camera {camera_id!r} is not armed")
        entry.machine.manual_trigger()
        return self.status(camera_id)

    async def save_snapshot(self, camera_id: str) -> Path:
        entry = self._entry(camera_id)
        frame = entry.pipeline.latest_frame
        if frame is None:
            raise SnapshotUnavailable(f"No frame available from camera {camera_id!r}")
        path = await asyncio.to_thread(entry.snapshots.save, frame.pixels, when=frame.timestamp)
        self._system_log.record(
            LogCategory.CAMERA,
            "snapshot",
            f"Snapshot saved for {camera_id}",
            camera_id=camera_id,
            metadata={"path": str(path)},
        )
        return path

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def status(self, camera_id: str) -> CameraStatus:
        entry = self._entry(camera_id)
        with self._lock:
            return self._status_locked(entry)

    def _status_locked(self, entry: _CameraEntry) -> CameraStatus:
        return CameraStatus(
            camera_id=entry.definition.camera_id,
            state=entry.state,
            last_alert_time=entry.last_alert_time,
            source=entry.definition.source,
            config=entry.config,
            degraded=entry.degraded,
            error=entry.error,
            running=entry.pipeline.running,
        )

    def snapshot(self) -> list[CameraStatus]:
        """Return the status of every camera, taken under one lock."""

        with self._lock:
            return [self._status_locked(self._cameras[key]) for key in sorted(self._cameras)]

    def details(self, camera_id: str) -> dict[str, object]:
        entry = self._entry(camera_id)
        payload = self.status(camera_id).to_dict()
        payload["machine"] = entry.machine.status()
        payload["frames_processed"] = entry.pipeline.frames_processed
        return payload

    def latest_frame(self, camera_id: str) -> Frame | None:
        return self._entry(camera_id).pipeline.latest_frame

    def alerts(self, camera_id: str, since: datetime | None = None) -> list[AlertRecord]:
        self._entry(camera_id)
        return self._index.list_alerts(camera_id, since=since)

    def segments(
        self,
        camera_id: str,
        *,
        from_ts: datetime | None = None,
        to_ts: datetime | None = None,
    ) -> list[RecordingSegment]:
        self._entry(camera_id)
        return self._index.list_segments(camera_id, from_ts=from_ts, to_ts=to_ts)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def publish(self, notification: Notification) -> None:
        """Record *notification* in the registry and queue it for delivery.

        Called by camera pipelines; never blocks.
        """

        with self._lock:
            entry = self._cameras.get(notification.camera_id)
            if entry is not None:
                self._apply_locked(entry, notification)
        self._queue.put_nowait(notification)

    @staticmethod
    def _apply_locked(entry: _CameraEntry, notification: Notification) -> None:
        if isinstance(notification, AlertEvent):
            entry.alerts += 1
            if entry.last_alert_time is None or notification.trigger_timestamp > entry.last_alert_time:
                entry.last_alert_time = notification.trigger_timestamp
            entry.state = CameraPhase.RECORDING.value
            return
        entry.state = notification.state
        if notification.kind in {"degraded", "recording_failed", "source_failed"}:
            entry.degraded = True
            entry.error = notification.detail
        elif notification.kind == "recovered":
            entry.degraded = False
            entry.error = None

    async def _relay(self) -> None:
        while True:
            notification = await self._queue.get()
            # Cancelling the relay must not abandon a delivery in progress.
            self._delivery = asyncio.ensure_future(self._deliver(notification))
            await asyncio.shield(self._delivery)
            self._delivery = None

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._sink.deliver(notification)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Failed to deliver %s for camera %s",
                type(notification).__name__,
                notification.camera_id,
            )
        else:
            self._delivered += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, *, arm: Iterable[str] | None = None) -> None:
        """Start the relay, apply retention and arm cameras configured as armed."""

        if self._started:
            return
        self._started = True
        await asyncio.to_thread(self._index.mark_interrupted)
        if self._retention_days:
            cutoff = _utcnow() - timedelta(days=int(self._retention_days))
            removed = await asyncio.to_thread(self._index.purge_older_than, cutoff)
            if removed:
                self._system_log.record(
                    LogCategory.STORAGE,
                    "retention",
                    f"Removed {removed} expired segment(s)",
                    metadata={"cutoff": cutoff.isoformat()},
                )
        self._relay_task = asyncio.create_task(self._relay(), name="camwatch-relay")
        self._system_log.record(LogCategory.SYSTEM, "started", "Supervisor started")
        targets = list(arm) if arm is not None else [
            camera_id for camera_id in self.camera_ids if self._entry(camera_id).config.armed
        ]
        for camera_id in targets:
            await self.arm(camera_id)

    async def aclose(self) -> None:
        """Stop every pipeline, flush pending notifications and stop the relay."""

        with self._lock:
            entries = list(self._cameras.values())
        await asyncio.gather(*(entry.pipeline.stop() for entry in entries))
        task = self._relay_task
        self._relay_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        delivery = self._delivery
        self._delivery = None
        if delivery is not None:
            await delivery
        for notification in self._queue.drain():
            await self._deliver(notification)
        if self._started:
            self._system_log.record(LogCategory.SYSTEM, "stopped", "Supervisor stopped")
        self._started = False


__all__ = [
    "CameraNotArmed",
    "CameraStatus",
    "NotificationQueue",
    "NotificationSink",
    "Supervisor",
    "SystemLogSink",
    "UnknownCamera",
]
