import json
from datetime import timedelta
from pathlib import Path

import pytest

from camwatch.config import (
    AgentConfig,
    CameraConfig,
    CameraDefinition,
    ConfigInvalid,
    ConfigManager,
    DEFAULT_STORAGE_ROOT,
    parse_agent_config,
)


def test_camera_config_defaults():
    config = CameraConfig()
    assert config.sensitivity == pytest.approx(0.02)
    assert config.pre_roll == timedelta(seconds=5)
    assert config.post_roll == timedelta(seconds=10)
    assert config.armed is False


def test_camera_config_from_mapping_parses_durations():
    config = CameraConfig.from_mapping(
        {"sensitivity": 0.1, "pre_roll": "3s", "cooldown": "1m", "debounce": 0.25}
    )
    assert config.sensitivity == pytest.approx(0.1)
    assert config.pre_roll == timedelta(seconds=3)
    assert config.post_roll == timedelta(minutes=1)
    assert config.debounce == timedelta(milliseconds=250)


@pytest.mark.parametrize(
    "payload",
    [
        {"sensitivity": 1.5},
        {"sensitivity": -0.1},
        {"sensitivity": "high"},
        {"pre_roll": "soon"},
        {"cooldown": "-3s"},
        {"pixel_threshold": 0},
        {"colour": "red"},
    ],
)
def test_camera_config_rejects_invalid_values(payload):
    with pytest.raises(ConfigInvalid):
        CameraConfig.from_mapping(payload)


def test_config_invalid_is_value_error():
    assert issubclass(ConfigInvalid, ValueError)


def test_updated_returns_new_instance():
    original = CameraConfig()
    updated = original.updated({"sensitivity": 0.3, "post_roll": "30s", "debounce": None})
    assert updated is not original
    assert updated.sensitivity == pytest.approx(0.3)
    assert updated.post_roll == timedelta(seconds=30)
    assert updated.debounce == original.debounce
    assert original.sensitivity == pytest.approx(0.02)


def test_to_dict_round_trips_through_from_mapping():
    config = CameraConfig(pre_roll=timedelta(seconds=3), post_roll=timedelta(minutes=1))
    payload = config.to_dict()
    assert payload["pre_roll"] == "3s"
    assert payload["post_roll"] == "1m"
    assert CameraConfig.from_mapping(payload) == config


@pytest.mark.parametrize("camera_id", ["", "   ", "a/b", "a\\b"])
def test_camera_definition_rejects_bad_ids(camera_id):
    with pytest.raises(ConfigInvalid):
        CameraDefinition(camera_id)


def test_agent_config_rejects_duplicate_cameras():
    with pytest.raises(ConfigInvalid):
        AgentConfig(cameras=(CameraDefinition("front"), CameraDefinition("front")))


def test_parse_agent_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.delenv("CAMWATCH_STORAGE_ROOT", raising=False)
    config = parse_agent_config(
        {
            "storage_root": str(tmp_path),
            "retention_days": 3,
            "cameras": [
                {"id": "front", "source": "synthetic", "config": {"armed": True}},
                {"id": "back", "source": "opencv:1"},
            ],
        }
    )
    assert config.storage_root == tmp_path
    assert config.retention_days == 3
    assert [camera.camera_id for camera in config.cameras] == ["front", "back"]
    assert config.camera("front").config.armed is True
    assert config.camera("missing") is None


def test_storage_root_environment_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("CAMWATCH_STORAGE_ROOT", str(tmp_path / "override"))
    config = parse_agent_config({"storage_root": "elsewhere"})
    assert config.storage_root == tmp_path / "override"


def test_config_manager_defaults_when_missing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.delenv("CAMWATCH_STORAGE_ROOT", raising=False)
    manager = ConfigManager(tmp_path / "config.json")
    config = manager.get_agent_config()
    assert config.cameras == ()
    assert config.storage_root == DEFAULT_STORAGE_ROOT


def test_config_manager_rejects_invalid_file(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigInvalid):
        ConfigManager(config_file)


def test_set_camera_config_persists(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text(
        json.dumps({"cameras": [{"id": "front", "source": "synthetic"}]}),
        encoding="utf-8",
    )
    manager = ConfigManager(config_file)
    manager.set_camera_config("front", CameraConfig(sensitivity=0.4))

    reloaded = ConfigManager(config_file)
    assert reloaded.get_agent_config().camera("front").config.sensitivity == pytest.approx(0.4)
    raw = json.loads(config_file.read_text(encoding="utf-8"))
    assert raw["cameras"][0]["config"]["sensitivity"] == pytest.approx(0.4)
