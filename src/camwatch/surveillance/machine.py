"""Per-camera controller tying detector, pre-roll buffer and recorder together."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List

from ..camera import Frame
from ..config import CameraConfig
from .buffer import FrameBuffer
from .detector import MotionDetector, MotionSignal
from .events import AlertEvent, Notification, StatusUpdate
from .recorder import Recorder, SegmentWriter, SinkUnavailable
from .state import (
    Arm,
    Armed,
    CameraEvent,
    CameraState,
    Disarm,
    FrameObserved,
    Idle,
    ManualTrigger,
    Recording,
    transition,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CameraStateMachine:
    """Drive one camera through idle, armed, triggered, recording and cooldown.

    Frames enter through :meth:`process`, which runs the detector, feeds the
    pre-roll buffer, applies :func:`~camwatch.surveillance.state.transition`
    and performs the recorder side effects. Notifications for the supervisor
    are returned to the caller instead of being pushed anywhere.

    Commands may arrive from the event loop while a frame is processed in a
    worker thread, so every public method holds a short lock.
    """

    def __init__(
        self,
        camera_id: str,
        config: CameraConfig,
        *,
        recorder: Recorder,
        detector: MotionDetector | None = None,
        buffer: FrameBuffer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.camera_id = camera_id
        self._config = config
        self._recorder = recorder
        self._detector = detector or MotionDetector(
            sensitivity=config.sensitivity,
            pixel_threshold=config.pixel_threshold,
        )
        self._buffer = buffer or FrameBuffer(config.pre_roll, expected_fps=config.expected_fps)
        self._clock = clock
        self._state: CameraState = Idle()
        self._writer: SegmentWriter | None = None
        self._manual_requested = False
        self._last_alert: AlertEvent | None = None
        self._last_signal: MotionSignal | None = None
        self._last_frame_ts: datetime | None = None
        self._failure: str | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> CameraState:
        return self._state

    @property
    def config(self) -> CameraConfig:
        return self._config

    @property
    def last_alert(self) -> AlertEvent | None:
        return self._last_alert

    @property
    def writer(self) -> SegmentWriter | None:
        return self._writer

    @property
    def buffer(self) -> FrameBuffer:
        return self._buffer

    @property
    def detector(self) -> MotionDetector:
        return self._detector

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def arm(self) -> List[Notification]:
        with self._lock:
            notes: List[Notification] = []
            self._advance(Arm(), None, self._clock(), notes)
            return notes

    def disarm(self, at: datetime | None = None) -> List[Notification]:
        """Return to idle, finalising an open recording immediately."""

        with self._lock:
            notes: List[Notification] = []
            self._manual_requested = False
            self._advance(Disarm(), None, at or self._last_frame_ts or self._clock(), notes)
            self._buffer.clear()
            return notes

    def manual_trigger(self) -> None:
        """Start a recording on the next frame, bypassing the detector."""

        with self._lock:
            self._manual_requested = True

    def apply_config(self, config: CameraConfig) -> None:
        """Replace the configuration as a whole between two frames."""

        with self._lock:
            self._config = config
            self._detector.configure(
                sensitivity=config.sensitivity,
                pixel_threshold=config.pixel_threshold,
            )
            self._buffer.configure(config.pre_roll, expected_fps=config.expected_fps)

    def interrupt(self, reason: str, at: datetime | None = None) -> List[Notification]:
        """Abort an open recording after the frame source was lost.

        The camera stays armed so that monitoring resumes on the next source.
        """

        with self._lock:
            notes: List[Notification] = []
            timestamp = at or self._last_frame_ts or self._clock()
            if self._writer is not None:
                self._finish_writer(end_time=self._writer.last_timestamp or timestamp)
            if isinstance(self._state, Idle):
                return notes
            self._set_state(Armed(), timestamp, notes, kind="degraded", detail=reason, critical=True)
            self._buffer.clear()
            self._detector.reset()
            return notes

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------
    def process(self, frame: Frame) -> List[Notification]:
        with self._lock:
            notes: List[Notification] = []
            if self._last_frame_ts is not None and frame.timestamp < self._last_frame_ts:
                raise ValueError("Frames must be processed in capture order")
            self._last_frame_ts = frame.timestamp
            signal = self._detector.observe(frame)
            self._last_signal = signal

            if self._manual_requested:
                self._manual_requested = False
                if isinstance(self._state, Idle):
                    logger.info("Ignoring manual trigger for disarmed camera %s", self.camera_id)
                else:
                    self._advance(ManualTrigger(frame.timestamp), frame, frame.timestamp, notes)

            event = FrameObserved(frame.timestamp, signal.motion, signal.score)
            self._advance(event, frame, frame.timestamp, notes)
            return notes

    def _advance(
        self,
        event: CameraEvent,
        frame: Frame | None,
        timestamp: datetime,
        notes: List[Notification],
    ) -> None:
        previous = self._state
        new_state = transition(previous, event, self._config, camera_id=self.camera_id)
        was_recording = isinstance(previous, Recording)
        is_recording = isinstance(new_state, Recording)

        if was_recording and self._writer is not None:
            if frame is not None and isinstance(event, FrameObserved):
                if not self._write(frame, notes):
                    return
            if not is_recording or new_state.segment_id != previous.segment_id:
                end_time = self._writer.last_timestamp if frame is None else None
                self._finish_writer(end_time=end_time or timestamp)

        if is_recording and not was_recording:
            if frame is not None and isinstance(event, FrameObserved):
                self._buffer.push(frame)
            if not self._start_recording(new_state, timestamp, notes):
                return
        elif not is_recording and frame is not None and isinstance(event, FrameObserved):
            self._buffer.push(frame)

        if new_state != previous:
            self._set_state(new_state, timestamp, notes)

    def _start_recording(
        self,
        state: Recording,
        timestamp: datetime,
        notes: List[Notification],
    ) -> bool:
        since = state.started - self._config.pre_roll
        preroll = self._buffer.drain_since(since)
        reason = "manual" if state.manual else "motion"
        try:
            self._writer = self._recorder.begin(
                state.segment_id,
                preroll,
                started=state.started,
                reason=reason,
            )
        except SinkUnavailable as exc:
            logger.error("Camera %s could not start recording: %s", self.camera_id, exc)
            self._writer = None
            self._failure = str(exc)
            self._set_state(
                Armed(), timestamp, notes, kind="recording_failed", detail=str(exc), critical=True
            )
            return False

        alert = AlertEvent(
            camera_id=self.camera_id,
            trigger_timestamp=state.triggered_at,
            motion_score=state.peak_score,
            segment_id=state.segment_id,
            reason=reason,
        )
        if self._last_alert is not None and alert.trigger_timestamp < self._last_alert.trigger_timestamp:
            alert = AlertEvent(
                camera_id=alert.camera_id,
                trigger_timestamp=self._last_alert.trigger_timestamp,
                motion_score=alert.motion_score,
                segment_id=alert.segment_id,
                reason=alert.reason,
            )
        self._last_alert = alert
        self._failure = None
        notes.append(alert)
        logger.info(
            "Camera %s alert (%s, score %.3f) -> segment %s",
            self.camera_id,
            reason,
            alert.motion_score,
            state.segment_id,
        )
        return True

    def _write(self, frame: Frame, notes: List[Notification]) -> bool:
        writer = self._writer
        assert writer is not None
        try:
            writer.write(frame)
        except SinkUnavailable as exc:
            self._finish_writer(end_time=frame.timestamp)
            self._failure = str(exc)
            self._set_state(
                Armed(),
                frame.timestamp,
                notes,
                kind="recording_failed",
                detail=str(exc),
                critical=True,
            )
            return False
        return True

    def _finish_writer(self, *, end_time: datetime | None) -> None:
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.end(end_time=end_time)

    def _set_state(
        self,
        state: CameraState,
        timestamp: datetime,
        notes: List[Notification],
        *,
        kind: str = "state",
        detail: str | None = None,
        critical: bool = False,
    ) -> None:
        previous = self._state
        self._state = state
        if previous.phase is not state.phase or kind != "state":
            logger.debug(
                "Camera %s: %s -> %s", self.camera_id, previous.phase.value, state.phase.value
            )
            notes.append(
                StatusUpdate(
                    camera_id=self.camera_id,
                    kind=kind,
                    state=state.phase.value,
                    timestamp=timestamp,
                    detail=detail,
                    critical=critical,
                )
            )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def status(self) -> dict[str, object]:
        with self._lock:
            state = self._state
            payload: dict[str, object] = {
                "camera_id": self.camera_id,
                "state": state.phase.value,
                "last_alert_time": (
                    self._last_alert.trigger_timestamp.isoformat() if self._last_alert else None
                ),
                "buffered_frames": len(self._buffer),
                "buffer_dropped": self._buffer.dropped,
                "detector": self._detector.snapshot(),
                "config": self._config.to_dict(),
            }
            if isinstance(state, Recording):
                payload["segment_id"] = state.segment_id
                payload["recording_started"] = state.started.isoformat()
            if self._writer is not None:
                payload["recorded_frames"] = self._writer.frame_count
            if self._failure:
                payload["recorder_error"] = self._failure
            if self._last_signal is not None:
                payload["motion_score"] = self._last_signal.score
            return payload


__all__ = ["CameraStateMachine"]
