"""Camera state variants and the transition function driving them.

A camera is always in exactly one of :class:`Idle`, :class:`Armed`,
:class:`Triggered`, :class:`Recording` or :class:`Cooldown`. The only way to
move between them is :func:`transition`, which is pure: it receives the
current state, an event and the active :class:`CameraConfig` and returns the
next state. Timers are deadline comparisons against capture timestamps so the
behaviour does not depend on the frame rate.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import ClassVar, Union

from ..config import CameraConfig


class CameraPhase(str, Enum):
    """Names reported for each state variant."""

    IDLE = "idle"
    ARMED = "armed"
    TRIGGERED = "triggered"
    RECORDING = "recording"
    COOLDOWN = "cooldown"


@dataclass(frozen=True, slots=True)
class Idle:
    phase: ClassVar[CameraPhase] = CameraPhase.IDLE


@dataclass(frozen=True, slots=True)
class Armed:
    phase: ClassVar[CameraPhase] = CameraPhase.ARMED


@dataclass(frozen=True, slots=True)
class Triggered:
    """Motion seen but not yet sustained past the debounce interval."""

    since: datetime
    peak_score: float = 0.0
    phase: ClassVar[CameraPhase] = CameraPhase.TRIGGERED


@dataclass(frozen=True, slots=True)
class Recording:
    """An open segment is being written."""

    started: datetime
    segment_id: str
    last_motion: datetime
    triggered_at: datetime
    peak_score: float = 0.0
    manual: bool = False
    phase: ClassVar[CameraPhase] = CameraPhase.RECORDING


@dataclass(frozen=True, slots=True)
class Cooldown:
    """Refractory period after a recording; motion is ignored until ``until``."""

    until: datetime
    phase: ClassVar[CameraPhase] = CameraPhase.COOLDOWN


CameraState = Union[Idle, Armed, Triggered, Recording, Cooldown]


@dataclass(frozen=True, slots=True)
class Arm:
    pass


@dataclass(frozen=True, slots=True)
class Disarm:
    pass


@dataclass(frozen=True, slots=True)
class FrameObserved:
    timestamp: datetime
    motion: bool
    score: float = 0.0


@dataclass(frozen=True, slots=True)
class ManualTrigger:
    timestamp: datetime


CameraEvent = Union[Arm, Disarm, FrameObserved, ManualTrigger]


def segment_id_for(camera_id: str, started: datetime) -> str:
    """Return the storage key for a segment opened at *started*."""

    return f"{camera_id}-{started.strftime('%Y%m%dT%H%M%S%f')}Z"


def transition(
    state: CameraState,
    event: CameraEvent,
    config: CameraConfig,
    *,
    camera_id: str,
) -> CameraState:
    """Return the state that follows *state* after *event*."""

    if isinstance(event, Disarm):
        return Idle()
    if isinstance(event, Arm):
        return Armed() if isinstance(state, Idle) else state
    if isinstance(event, ManualTrigger):
        return _on_manual_trigger(state, event, camera_id)
    if isinstance(event, FrameObserved):
        return _on_frame(state, event, config, camera_id)
    raise TypeError(f"Unsupported camera event {event!r}")


def _start_recording(
    camera_id: str,
    timestamp: datetime,
    triggered_at: datetime,
    peak_score: float,
    *,
    manual: bool = False,
) -> Recording:
    return Recording(
        started=timestamp,
        segment_id=segment_id_for(camera_id, triggered_at),
        last_motion=timestamp,
        triggered_at=triggered_at,
        peak_score=peak_score,
        manual=manual,
    )


def _on_manual_trigger(state: CameraState, event: ManualTrigger, camera_id: str) -> CameraState:
    if isinstance(state, (Armed, Triggered)):
        peak = state.peak_score if isinstance(state, Triggered) else 0.0
        return _start_recording(camera_id, event.timestamp, event.timestamp, peak, manual=True)
    if isinstance(state, Recording):
        return replace(state, last_motion=max(state.last_motion, event.timestamp))
    return state


def _on_frame(
    state: CameraState,
    event: FrameObserved,
    config: CameraConfig,
    camera_id: str,
) -> CameraState:
    timestamp = event.timestamp
    if isinstance(state, Idle):
        return state

    if isinstance(state, Cooldown):
        if timestamp < state.until:
            return state
        # Deadline passed; the same observation is evaluated as armed.
        state = Armed()

    if isinstance(state, Recording):
        if event.motion:
            return replace(
                state,
                last_motion=timestamp,
                peak_score=max(state.peak_score, event.score),
            )
        if timestamp - state.last_motion >= config.post_roll:
            until = timestamp + config.post_roll
            alert_gate = state.triggered_at + config.min_alert_interval
            return Cooldown(until=max(until, alert_gate))
        return state

    if isinstance(state, Armed):
        if not event.motion:
            return state
        state = Triggered(since=timestamp, peak_score=event.score)
    elif isinstance(state, Triggered):
        if not event.motion:
            return Armed()
        state = replace(state, peak_score=max(state.peak_score, event.score))

    if timestamp - state.since >= config.debounce:
        return _start_recording(camera_id, timestamp, state.since, state.peak_score)
    return state


__all__ = [
    "Arm",
    "Armed",
    "CameraEvent",
    "CameraPhase",
    "CameraState",
    "Cooldown",
    "Disarm",
    "FrameObserved",
    "Idle",
    "ManualTrigger",
    "Recording",
    "Triggered",
    "segment_id_for",
    "transition",
]
