"""Motion detection, recording and camera supervision for CamWatch."""

from .buffer import FrameBuffer
from .detector import MotionDetector, MotionSignal
from .events import AlertEvent, Notification, StatusUpdate
from .index import AlertRecord, RecordingSegment, SegmentIndex
from .machine import CameraStateMachine
from .recorder import Recorder, SegmentWriter, SinkUnavailable
from .runtime import CameraPipeline
from .state import CameraPhase, transition
from .supervisor import (
    CameraNotArmed,
    CameraStatus,
    NotificationQueue,
    Supervisor,
    SystemLogSink,
    UnknownCamera,
)

__all__ = [
    "AlertEvent",
    "AlertRecord",
    "CameraNotArmed",
    "CameraPhase",
    "CameraPipeline",
    "CameraStateMachine",
    "CameraStatus",
    "FrameBuffer",
    "MotionDetector",
    "MotionSignal",
    "Notification",
    "NotificationQueue",
    "Recorder",
    "RecordingSegment",
    "SegmentIndex",
    "SegmentWriter",
    "SinkUnavailable",
    "StatusUpdate",
    "Supervisor",
    "SystemLogSink",
    "UnknownCamera",
    "transition",
]
