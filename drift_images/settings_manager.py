from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .logger import get_logger

_logger = get_logger("settings")

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "cache_cost_limit": ("DRIFT_IMAGES_CACHE_COST_LIMIT", int),
    "device_scale": ("DRIFT_IMAGES_DEVICE_SCALE", float),
}


class SettingsManager:
    def __init__(self, settings_path: str):
        self.settings_path = settings_path
        self._settings: dict[str, Any] = {}
        self.load()

    DEFAULTS: dict[str, Any] = {
        "cache_cost_limit": 100 * 1024 * 1024,
        "device_scale": 3.0,
        "fetch_workers": 4,
        "decode_workers": 2,
        "http_timeout": 15.0,
        "http_headers": {},
        "disk_cache_enabled": False,
        "disk_cache_path": "",
        "disk_cache_max_bytes": 256 * 1024 * 1024,
    }

    def load(self) -> None:
        try:
            if os.path.exists(self.settings_path):
                with open(self.settings_path, encoding="utf-8") as f:
                    data = json.load(f)
                    if isinstance(data, dict):
                        self._settings = data
                        _logger.debug("settings loaded: %s", self.settings_path)
                        return
        except Exception as e:
            _logger.warning("settings load failed: %s", e)
        self._settings = {}

    def save(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.settings_path) or ".", exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, ensure_ascii=False, indent=2)
            _logger.debug("settings saved: %s", self.settings_path)
        except Exception as e:
            _logger.error("settings save failed: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        override = _ENV_OVERRIDES.get(key)
        if override is not None:
            env_name, cast = override
            raw = (os.getenv(env_name) or "").strip()
            if raw:
                try:
                    return cast(raw)
                except ValueError:
                    _logger.warning("ignoring invalid %s=%r", env_name, raw)
        if key in self._settings:
            return self._settings[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def has(self, key: str) -> bool:
        return key in self._settings

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self.save()

    @property
    def data(self) -> dict[str, Any]:
        return self._settings

    @property
    def cache_cost_limit(self) -> int:
        return max(0, int(self.get("cache_cost_limit")))

    @property
    def device_scale(self) -> float:
        scale = float(self.get("device_scale"))
        if scale <= 0:
            _logger.warning("device_scale must be positive, got %s; using 1.0", scale)
            return 1.0
        return scale

    @property
    def disk_cache_enabled(self) -> bool:
        return bool(self.get("disk_cache_enabled", False))

    @property
    def disk_cache_path(self) -> Path:
        val = self.get("disk_cache_path")
        if isinstance(val, str) and val.strip():
            return Path(val).expanduser()
        return Path.home() / ".cache" / "drift_images" / "images.db"
