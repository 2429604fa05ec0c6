from __future__ import annotations

import json
from pathlib import Path

from drift_images.settings_manager import SettingsManager


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    sm = SettingsManager(str(tmp_path / "settings.json"))
    assert sm.cache_cost_limit == 100 * 1024 * 1024
    assert sm.device_scale == 3.0
    assert sm.disk_cache_enabled is False
    assert sm.get("fetch_workers") == 4


def test_set_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "cfg" / "settings.json"
    sm = SettingsManager(str(path))
    sm.set("cache_cost_limit", 1234)
    sm.set("disk_cache_enabled", True)

    reloaded = SettingsManager(str(path))
    assert reloaded.cache_cost_limit == 1234
    assert reloaded.disk_cache_enabled is True
    assert json.loads(path.read_text(encoding="utf-8"))["cache_cost_limit"] == 1234


def test_corrupt_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")
    sm = SettingsManager(str(path))
    assert sm.data == {}
    assert sm.device_scale == 3.0


def test_env_overrides_file(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"device_scale": 2.0}), encoding="utf-8")
    monkeypatch.setenv("DRIFT_IMAGES_DEVICE_SCALE", "1.5")
    monkeypatch.setenv("DRIFT_IMAGES_CACHE_COST_LIMIT", "not-a-number")

    sm = SettingsManager(str(path))
    assert sm.device_scale == 1.5
    assert sm.cache_cost_limit == 100 * 1024 * 1024


def test_non_positive_scale_falls_back(tmp_path: Path) -> None:
    sm = SettingsManager(str(tmp_path / "settings.json"))
    sm.set("device_scale", 0)
    assert sm.device_scale == 1.0


def test_disk_cache_path_default_and_override(tmp_path: Path) -> None:
    sm = SettingsManager(str(tmp_path / "settings.json"))
    assert sm.disk_cache_path.name == "images.db"
    sm.set("disk_cache_path", str(tmp_path / "bytes.db"))
    assert sm.disk_cache_path == tmp_path / "bytes.db"
