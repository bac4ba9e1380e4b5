"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "LANDSCAPE_MINI_SETTINGS_PATH",
        Path.cwd() / "build.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_IMAGE_SIZE_MB = 2048
DEFAULT_ESP_SIZE_MB = 200
DEFAULT_ROOT_PASSWORD = "landscape"

DEFAULT_SETTINGS: dict[str, Any] = {
    "base_system": "debian",
    "landscape_version": "latest",
    "landscape_repo": "https://github.com/ThisSeanZhang/landscape",
    "include_docker": False,
    "output_format": "raw",
    "compress_output": False,
    "image_size_mb": DEFAULT_IMAGE_SIZE_MB,
    "esp_size_mb": DEFAULT_ESP_SIZE_MB,
    "root_password": DEFAULT_ROOT_PASSWORD,
    "timezone": "Asia/Shanghai",
    "locale": "en_US.UTF-8",
    "debian_release": "trixie",
    "apt_mirror": "http://deb.debian.org/debian",
    "alpine_release": "v3.21",
    "alpine_mirror": "https://dl-cdn.alpinelinux.org/alpine",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    value = get_setting(key, default)
    # build.env used "yes"/"no" strings
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def all_settings() -> dict[str, Any]:
    return dict(settings_store.values)


load_settings()
