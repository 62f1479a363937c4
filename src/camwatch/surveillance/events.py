"""Notifications emitted by camera state machines."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union


@dataclass(frozen=True, slots=True)
class AlertEvent:
    """Raised once for every transition into recording."""

    camera_id: str
    trigger_timestamp: datetime
    motion_score: float
    segment_id: str | None
    reason: str = "motion"

    critical = True

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "alert",
            "camera_id": self.camera_id,
            "trigger_timestamp": self.trigger_timestamp.isoformat(),
            "motion_score": self.motion_score,
            "segment_id": self.segment_id,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    """State change or health report for one camera.

    ``kind`` is one of ``state``, ``recording_failed``, ``degraded``,
    ``recovered``, ``source_failed`` or ``stopped``.
    """

    camera_id: str
    kind: str
    state: str
    timestamp: datetime
    detail: str | None = None
    critical: bool = False

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "type": "status",
            "camera_id": self.camera_id,
            "kind": self.kind,
            "state": self.state,
            "timestamp": self.timestamp.isoformat(),
            "critical": self.critical,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


Notification = Union[AlertEvent, StatusUpdate]


__all__ = ["AlertEvent", "Notification", "StatusUpdate"]
