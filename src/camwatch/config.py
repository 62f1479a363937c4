"""Configuration management for CamWatch."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

from .durations import DurationParseError, format_duration, parse_duration


class ConfigInvalid(ValueError):
    """Raised when configuration values are missing or out of range."""


DEFAULT_STORAGE_ROOT = Path("data/recordings")
DEFAULT_SNAPSHOT_PATTERN = "%Y-%m-%d_%H-%M-%S_$COUNTER$.jpg"

_DURATION_FIELDS = ("pre_roll", "post_roll", "debounce", "min_alert_interval")
_DURATION_ALIASES = {"cooldown": "post_roll", "post_roll_duration": "post_roll"}


def _coerce_duration(name: str, value: Any) -> timedelta:
    try:
        return parse_duration(value)
    except DurationParseError as exc:
        raise ConfigInvalid(f"{name}: {exc}") from exc


def _coerce_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigInvalid(f"{name} must be numeric")
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigInvalid(f"{name} must be numeric") from exc
    if not math.isfinite(numeric):
        raise ConfigInvalid(f"{name} must be finite")
    return numeric


@dataclass(frozen=True, slots=True)
class CameraConfig:
    """Per-camera detection and recording settings.

    Instances are immutable; reconfiguration builds a new object and hands it
    to the camera as a whole.
    """

    sensitivity: float = 0.02
    pre_roll: timedelta = timedelta(seconds=5)
    post_roll: timedelta = timedelta(seconds=10)
    debounce: timedelta = timedelta(milliseconds=500)
    min_alert_interval: timedelta = timedelta(0)
    armed: bool = False
    pixel_threshold: float = 25.0
    expected_fps: float = 15.0

    def __post_init__(self) -> None:
        sensitivity = _coerce_float("sensitivity", self.sensitivity)
        if not (0.0 <= sensitivity <= 1.0):
            raise ConfigInvalid("Sensitivity must be between 0 and 1")
        object.__setattr__(self, "sensitivity", sensitivity)
        for name in _DURATION_FIELDS:
            object.__setattr__(self, name, _coerce_duration(name, getattr(self, name)))
        pixel_threshold = _coerce_float("pixel_threshold", self.pixel_threshold)
        if not (0.0 < pixel_threshold <= 255.0):
            raise ConfigInvalid("Pixel threshold must be between 0 and 255")
        object.__setattr__(self, "pixel_threshold", pixel_threshold)
        expected_fps = _coerce_float("expected_fps", self.expected_fps)
        if not (0.0 < expected_fps <= 240.0):
            raise ConfigInvalid("Expected frame rate must be between 0 and 240 fps")
        object.__setattr__(self, "expected_fps", expected_fps)
        object.__setattr__(self, "armed", bool(self.armed))

    def to_dict(self) -> dict[str, object]:
        return {
            "sensitivity": float(self.sensitivity),
            "pre_roll": format_duration(self.pre_roll),
            "post_roll": format_duration(self.post_roll),
            "debounce": format_duration(self.debounce),
            "min_alert_interval": format_duration(self.min_alert_interval),
            "armed": bool(self.armed),
            "pixel_threshold": float(self.pixel_threshold),
            "expected_fps": float(self.expected_fps),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "CameraConfig":
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ConfigInvalid("Camera configuration must be an object")
        data = _normalise_keys(payload)
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigInvalid(f"Unknown camera settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def updated(self, changes: Mapping[str, Any]) -> "CameraConfig":
        """Return a new configuration with *changes* applied."""

        data = _normalise_keys(changes)
        unknown = set(data) - set(self.__dataclass_fields__)
        if unknown:
            raise ConfigInvalid(f"Unknown camera settings: {', '.join(sorted(unknown))}")
        return replace(self, **data)


def _normalise_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        name = _DURATION_ALIASES.get(str(key), str(key))
        data[name] = value
    return data


@dataclass(frozen=True, slots=True)
class CameraDefinition:
    """Identifies a camera feed and its initial configuration."""

    camera_id: str
    source: str = "synthetic"
    config: CameraConfig = field(default_factory=CameraConfig)

    def __post_init__(self) -> None:
        camera_id = str(self.camera_id).strip() if self.camera_id is not None else ""
        if not camera_id:
            raise ConfigInvalid("Camera id must not be empty")
        if "/" in camera_id or "\\" in camera_id:
            raise ConfigInvalid("Camera id must not contain path separators")
        object.__setattr__(self, "camera_id", camera_id)
        source = str(self.source).strip() if self.source is not None else ""
        if not source:
            raise ConfigInvalid(f"Camera {camera_id!r} has no source")
        object.__setattr__(self, "source", source)

    def to_dict(self) -> dict[str, object]:
        return {"id": self.camera_id, "source": self.source, "config": self.config.to_dict()}


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Process wide settings handed to the supervisor at startup."""

    storage_root: Path = DEFAULT_STORAGE_ROOT
    cameras: tuple[CameraDefinition, ...] = ()
    retention_days: int | None = 14
    alert_queue_size: int = 64
    source_retry_budget: int = 5
    source_backoff_initial: float = 1.0
    source_backoff_max: float = 30.0
    frame_timeout: float = 5.0
    fps: int = 15
    encoding: str = "h264"
    min_free_mb: float = 64.0
    snapshot_pattern: str = DEFAULT_SNAPSHOT_PATTERN

    def __post_init__(self) -> None:
        object.__setattr__(self, "storage_root", Path(self.storage_root))
        cameras = tuple(self.cameras)
        seen: set[str] = set()
        for camera in cameras:
            if camera.camera_id in seen:
                raise ConfigInvalid(f"Duplicate camera id {camera.camera_id!r}")
            seen.add(camera.camera_id)
        object.__setattr__(self, "cameras", cameras)
        if self.retention_days is not None and int(self.retention_days) <= 0:
            raise ConfigInvalid("Retention days must be positive")
        if int(self.alert_queue_size) < 1:
            raise ConfigInvalid("Alert queue size must be positive")
        if int(self.source_retry_budget) < 0:
            raise ConfigInvalid("Source retry budget must not be negative")
        if self.source_backoff_initial < 0 or self.source_backoff_max < self.source_backoff_initial:
            raise ConfigInvalid("Source backoff must be non-negative and ordered")
        if self.frame_timeout <= 0:
            raise ConfigInvalid("Frame timeout must be positive")
        if self.fps < 1 or self.fps > 60:
            raise ConfigInvalid("Recording fps must be between 1 and 60")
        if self.min_free_mb < 0:
            raise ConfigInvalid("Minimum free space must not be negative")
        if not self.snapshot_pattern.strip():
            raise ConfigInvalid("Snapshot pattern must not be empty")

    def camera(self, camera_id: str) -> CameraDefinition | None:
        for camera in self.cameras:
            if camera.camera_id == camera_id:
                return camera
        return None


def _parse_camera_definition(value: Any) -> CameraDefinition:
    if not isinstance(value, Mapping):
        raise ConfigInvalid("Camera entries must be objects")
    camera_id = value.get("id", value.get("camera_id"))
    return CameraDefinition(
        camera_id=camera_id,
        source=value.get("source", "synthetic"),
        config=CameraConfig.from_mapping(value.get("config")),
    )


def _parse_cameras(value: Any) -> tuple[CameraDefinition, ...]:
    if value is None:
        return ()
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ConfigInvalid("'cameras' must be a list")
    return tuple(_parse_camera_definition(item) for item in value)


def parse_agent_config(payload: Mapping[str, Any]) -> AgentConfig:
    """Build an :class:`AgentConfig` from a decoded JSON object."""

    if not isinstance(payload, Mapping):
        raise ConfigInvalid("Configuration must be a JSON object")
    storage_root = os.getenv("CAMWATCH_STORAGE_ROOT") or payload.get("storage_root", DEFAULT_STORAGE_ROOT)
    options: Dict[str, Any] = {}
    for key in (
        "retention_days",
        "alert_queue_size",
        "source_retry_budget",
        "source_backoff_initial",
        "source_backoff_max",
        "frame_timeout",
        "fps",
        "encoding",
        "min_free_mb",
        "snapshot_pattern",
    ):
        if key in payload:
            options[key] = payload[key]
    try:
        return AgentConfig(
            storage_root=Path(storage_root),
            cameras=_parse_cameras(payload.get("cameras")),
            **options,
        )
    except TypeError as exc:  # pragma: no cover - defensive branch
        raise ConfigInvalid(str(exc)) from exc


class ConfigManager:
    """Loads the agent configuration from disk and persists camera updates."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._raw, self._config = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> tuple[dict[str, Any], AgentConfig]:
        if not self._path.exists():
            return {}, parse_agent_config({})
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigInvalid(f"Failed to load configuration: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigInvalid("Configuration file must contain a JSON object")
        return payload, parse_agent_config(payload)

    def _save(self) -> None:
        self._path.write_text(json.dumps(self._raw, indent=2, sort_keys=True), encoding="utf-8")

    def get_agent_config(self) -> AgentConfig:
        with self._lock:
            return self._config

    def set_camera_config(self, camera_id: str, config: CameraConfig) -> None:
        """Persist *config* for *camera_id* if it is defined in the file."""

        with self._lock:
            cameras = self._raw.get("cameras")
            if not isinstance(cameras, list):
                return
            for entry in cameras:
                if isinstance(entry, dict) and entry.get("id", entry.get("camera_id")) == camera_id:
                    entry["config"] = config.to_dict()
                    break
            else:
                return
            self._config = parse_agent_config(self._raw)
            self._save()


__all__ = [
    "AgentConfig",
    "CameraConfig",
    "CameraDefinition",
    "ConfigInvalid",
    "ConfigManager",
    "DEFAULT_SNAPSHOT_PATTERN",
    "DEFAULT_STORAGE_ROOT",
    "parse_agent_config",
]
