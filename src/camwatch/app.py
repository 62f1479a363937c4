"""FastAPI application exposing the CamWatch control surface."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .config import ConfigInvalid, ConfigManager
from .snapshots import SnapshotUnavailable
from .surveillance.recorder import SinkFactory
from .surveillance.supervisor import (
    CameraFactory,
    CameraNotArmed,
    CameraStatus,
    Supervisor,
    UnknownCamera,
)
from .system_log import LogCategory, SystemLog
from .version import APP_VERSION


class CameraConfigPayload(BaseModel):
    sensitivity: str | float | None = None
    pre_roll: str | float | None = None
    cooldown: str | float | None = None
    post_roll: str | float | None = None
    debounce: str | float | None = None
    min_alert_interval: str | float | None = None
    pixel_threshold: str | float | None = None
    armed: bool | None = None


def parse_timestamp(value: str) -> datetime:
    """Interpret *value* as epoch seconds or an ISO-8601 timestamp (UTC if naive)."""

    text = value.strip()
    if not text:
        raise ValueError("Timestamp must not be empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"Invalid timestamp {value!r}")
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    supervisor: Supervisor | None = None,
    camera_factory: CameraFactory | None = None,
    recorder_sink_factory: SinkFactory | None = None,
    system_log: SystemLog | None = None,
) -> FastAPI:
    app = FastAPI(title="CamWatch", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    agent_config = config_manager.get_agent_config()

    if supervisor is None:
        if system_log is None:
            system_log = SystemLog(agent_config.storage_root / "system_log.jsonl")
        supervisor = Supervisor.from_config(
            agent_config,
            system_log=system_log,
            camera_factory=camera_factory,
            recorder_sink_factory=recorder_sink_factory,
        )
    shared_system_log = supervisor.system_log
    app.state.supervisor = supervisor
    app.state.config_manager = config_manager

    def _status(camera_id: str) -> CameraStatus:
        try:
            return supervisor.status(camera_id)
        except UnknownCamera as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    def _parse_query_timestamp(name: str, value: str | None) -> datetime | None:
        if value is None:
            return None
        try:
            return parse_timestamp(value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid '{name}': {exc}") from exc

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        shared_system_log.record(LogCategory.SYSTEM, "startup", "CamWatch starting up.")
        await supervisor.start()
        shared_system_log.record(
            LogCategory.SYSTEM,
            "startup_complete",
            "CamWatch startup sequence completed.",
            metadata={"cameras": supervisor.camera_ids},
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        shared_system_log.record(LogCategory.SYSTEM, "shutdown", "CamWatch shutting down.")
        await supervisor.aclose()

    @app.get("/cameras")
    async def list_cameras() -> list[dict[str, object]]:
        return [status.to_dict() for status in supervisor.snapshot()]

    @app.get("/cameras/{camera_id}")
    async def get_camera(camera_id: str) -> dict[str, object]:
        try:
            return supervisor.details(camera_id)
        except UnknownCamera as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/cameras/{camera_id}/arm")
    async def arm_camera(camera_id: str) -> dict[str, object]:
        _status(camera_id)
        status = await supervisor.arm(camera_id)
        return status.to_dict()

    @app.post("/cameras/{camera_id}/disarm")
    async def disarm_camera(camera_id: str) -> dict[str, object]:
        _status(camera_id)
        status = await supervisor.disarm(camera_id)
        return status.to_dict()

    @app.put("/cameras/{camera_id}/config")
    async def update_camera_config(camera_id: str, payload: CameraConfigPayload) -> dict[str, object]:
        current = _status(camera_id).config
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No configuration values provided")
        if "cooldown" in changes and "post_roll" in changes:
            raise HTTPException(status_code=400, detail="Provide either 'cooldown' or 'post_roll', not both")
        try:
            config = current.updated(changes)
        except ConfigInvalid as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        status = supervisor.reconfigure(camera_id, config)
        try:
            config_manager.set_camera_config(camera_id, config)
        except OSError as exc:
            logger.warning("Unable to persist configuration for %s: %s", camera_id, exc)
        shared_system_log.record(
            LogCategory.CAMERA,
            "reconfigured",
            f"Configuration updated for {camera_id}",
            camera_id=camera_id,
            metadata=config.to_dict(),
        )
        return status.to_dict()

    @app.get("/cameras/{camera_id}/alerts")
    async def list_alerts(camera_id: str, since: str | None = None) -> list[dict[str, object]]:
        since_ts = _parse_query_timestamp("since", since)
        _status(camera_id)
        return [record.to_dict() for record in supervisor.alerts(camera_id, since_ts)]

    @app.get("/cameras/{camera_id}/segments")
    async def list_segments(
        camera_id: str,
        from_: str | None = Query(default=None, alias="from"),
        to: str | None = None,
    ) -> list[dict[str, object]]:
        from_ts = _parse_query_timestamp("from", from_)
        to_ts = _parse_query_timestamp("to", to)
        if from_ts is not None and to_ts is not None and to_ts < from_ts:
            raise HTTPException(status_code=400, detail="'to' must not precede 'from'")
        _status(camera_id)
        segments = supervisor.segments(camera_id, from_ts=from_ts, to_ts=to_ts)
        return [segment.to_dict() for segment in segments]

    @app.post("/cameras/{camera_id}/trigger")
    async def trigger_camera(camera_id: str) -> dict[str, object]:
        _status(camera_id)
        try:
            status = supervisor.trigger(camera_id)
        except CameraNotArmed as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        shared_system_log.record(
            LogCategory.CAMERA, "manual_trigger", f"Manual trigger requested for {camera_id}", camera_id=camera_id
        )
        return status.to_dict()

    @app.post("/cameras/{camera_id}/snapshot")
    async def save_snapshot(camera_id: str) -> dict[str, object]:
        _status(camera_id)
        try:
            path = await supervisor.save_snapshot(camera_id)
        except SnapshotUnavailable as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"Unable to save snapshot: {exc}") from exc
        return {"camera_id": camera_id, "path": str(path)}

    @app.get("/system-log")
    async def get_system_log(limit: int = 100, category: str | None = None) -> dict[str, object]:
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        try:
            entries = shared_system_log.tail(limit, category=category)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["CameraConfigPayload", "create_app", "parse_timestamp"]
