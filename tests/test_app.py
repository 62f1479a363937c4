"""HTTP control surface tests."""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

pytest.importorskip("httpx")

from fastapi import FastAPI
from fastapi.testclient import TestClient

from camwatch.app import create_app, parse_timestamp
from camwatch.camera import SyntheticCamera
from camwatch.surveillance import AlertEvent, RecordingSegment, Supervisor

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _MemorySink:
    def __init__(self, path: Path) -> None:
        self.frames = 0

    def write(self, frame) -> None:
        self.frames += 1

    def close(self) -> None:
        return None


def build_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[FastAPI, Supervisor, Path]:
    monkeypatch.delenv("CAMWATCH_STORAGE_ROOT", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "storage_root": str(tmp_path / "rec"),
                "min_free_mb": 0,
                "retention_days": None,
                "cameras": [
                    {"id": "front", "source": "synthetic", "config": {"sensitivity": 0.05}},
                    {"id": "back", "source": "synthetic"},
                ],
            }
        ),
        encoding="utf-8",
    )
    app = create_app(
        config_path=config_path,
        camera_factory=lambda definition: SyntheticCamera(32, 24, fps=30),
        recorder_sink_factory=_MemorySink,
    )
    return app, app.state.supervisor, config_path


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


def test_parse_timestamp_accepts_epoch_and_iso() -> None:
    assert parse_timestamp("0") == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T12:00:00Z") == T0
    assert parse_timestamp("2024-05-01T12:00:00") == T0
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == T0
    for value in ("", "yesterday", "nan"):
        with pytest.raises(ValueError):
            parse_timestamp(value)


def test_list_and_describe_cameras(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _, _ = build_app(tmp_path, monkeypatch)
    with TestClient(app) as client:
        response = client.get("/cameras")
        assert response.status_code == 200
        cameras = response.json()
        assert [camera["camera_id"] for camera in cameras] == ["back", "front"]
        assert all(camera["state"] == "idle" for camera in cameras)
        assert cameras[1]["config"]["sensitivity"] == pytest.approx(0.05)

        response = client.get("/cameras/front")
        assert response.status_code == 200
        assert response.json()["machine"]["state"] == "idle"

        for method, url in (
            ("get", "/cameras/garage"),
            ("post", "/cameras/garage/arm"),
            ("post", "/cameras/garage/disarm"),
            ("post", "/cameras/garage/trigger"),
            ("post", "/cameras/garage/snapshot"),
            ("get", "/cameras/garage/alerts"),
            ("get", "/cameras/garage/segments"),
        ):
            response = getattr(client, method)(url)
            assert response.status_code == 404, url


def test_arm_trigger_snapshot_and_disarm(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, supervisor, _ = build_app(tmp_path, monkeypatch)
    with TestClient(app) as client:
        assert client.post("/cameras/front/trigger").status_code == 409
        assert client.post("/cameras/front/snapshot").status_code == 409

        response = client.post("/cameras/front/arm")
        assert response.status_code == 200
        assert response.json()["state"] == "armed"
        assert response.json()["running"] is True

        _wait_for(lambda: supervisor.latest_frame("front") is not None)

        response = client.post("/cameras/front/trigger")
        assert response.status_code == 200

        response = client.post("/cameras/front/snapshot")
        assert response.status_code == 200
        path = Path(response.json()["path"])
        assert path.exists()
        assert path.suffix == ".jpg"

        response = client.post("/cameras/front/disarm")
        assert response.status_code == 200
        assert response.json()["state"] == "idle"
        assert response.json()["running"] is False

        response = client.post("/cameras/front/disarm")
        assert response.status_code == 200
        assert response.json()["state"] == "idle"

        assert client.post("/cameras/front/trigger").status_code == 409
        assert supervisor.index.open_segments() == []


def test_update_camera_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, supervisor, config_path = build_app(tmp_path, monkeypatch)
    with TestClient(app) as client:
        response = client.put(
            "/cameras/front/config", json={"sensitivity": 0.5, "cooldown": "30s", "pre_roll": 2}
        )
        assert response.status_code == 200
        config = response.json()["config"]
        assert config["sensitivity"] == pytest.approx(0.5)
        assert config["post_roll"] == "30s"
        assert config["pre_roll"] == "2s"
        assert supervisor.status("front").config.post_roll == timedelta(seconds=30)

        saved = json.loads(config_path.read_text(encoding="utf-8"))
        front = next(camera for camera in saved["cameras"] if camera["id"] == "front")
        assert front["config"]["post_roll"] == "30s"

        for payload in (
            {},
            {"cooldown": "1s", "post_roll": "2s"},
            {"sensitivity": 2},
            {"sensitivity": "high"},
            {"pixel_threshold": "bright"},
            {"pre_roll": "soon"},
            {"debounce": "-1s"},
        ):
            response = client.put("/cameras/front/config", json=payload)
            assert response.status_code == 400, payload

        assert supervisor.status("front").config.sensitivity == pytest.approx(0.5)
        assert client.put("/cameras/garage/config", json={"sensitivity": 0.1}).status_code == 404


def test_alert_and_segment_queries(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, supervisor, _ = build_app(tmp_path, monkeypatch)
    index = supervisor.index
    segment = RecordingSegment("front", "front-seg", T0, T0 + timedelta(seconds=20), "/clips/a.mp4")
    index.open_segment(segment)
    index.close_segment(segment)
    index.record_alert(AlertEvent("front", T0 + timedelta(seconds=2), 0.3, "front-seg"))

    with TestClient(app) as client:
        response = client.get("/cameras/front/alerts")
        assert response.status_code == 200
        alerts = response.json()
        assert len(alerts) == 1
        assert alerts[0]["segment_id"] == "front-seg"
        assert alerts[0]["segment"]["path"] == "/clips/a.mp4"

        response = client.get("/cameras/front/alerts", params={"since": "2024-05-01T12:00:03Z"})
        assert response.status_code == 200
        assert response.json() == []
        assert client.get("/cameras/front/alerts", params={"since": "later"}).status_code == 400

        response = client.get(
            "/cameras/front/segments",
            params={"from": "2024-05-01T12:00:10Z", "to": "2024-05-01T12:01:00Z"},
        )
        assert response.status_code == 200
        assert [item["segment_id"] for item in response.json()] == ["front-seg"]
        assert response.json()[0]["duration_s"] == pytest.approx(20.0)

        response = client.get("/cameras/front/segments", params={"from": str(T0.timestamp() + 60)})
        assert response.json() == []

        response = client.get(
            "/cameras/front/segments",
            params={"from": "2024-05-01T13:00:00Z", "to": "2024-05-01T12:00:00Z"},
        )
        assert response.status_code == 400
        assert client.get("/cameras/front/segments", params={"to": "soon"}).status_code == 400
        assert client.get("/cameras/back/segments").json() == []


def test_system_log_endpoint(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    app, _, _ = build_app(tmp_path, monkeypatch)
    with TestClient(app) as client:
        client.post("/cameras/front/arm")
        client.post("/cameras/front/disarm")

        response = client.get("/system-log", params={"category": "system"})
        assert response.status_code == 200
        events = [entry["event"] for entry in response.json()["entries"]]
        assert "startup" in events

        response = client.get("/system-log", params={"limit": 1})
        assert len(response.json()["entries"]) == 1

        assert client.get("/system-log", params={"limit": 0}).status_code == 400
        assert client.get("/system-log", params={"category": "weather"}).status_code == 400

    assert (tmp_path / "rec" / "system_log.jsonl").exists()
