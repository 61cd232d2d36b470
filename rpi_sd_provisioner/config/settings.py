"""Settings storage for provisioning configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_SD_PROVISIONER_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-sd-provisioner" / "settings.json",
    )
)

GIB = 1024**3

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "rpi-sd-provisioner" / "images"
DEFAULT_MIN_DEVICE_BYTES = 16 * GIB
DEFAULT_MIN_CACHE_FREE_BYTES = 8 * GIB
DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_POLL_TIMEOUT_SECONDS = 20 * 60

DEFAULT_SETTINGS: dict[str, Any] = {
    "cache_dir": str(DEFAULT_CACHE_DIR),
    "boot_mount_point": "/mnt/sdcard_boot",
    "root_mount_point": "/mnt/sdcard_root",
    "min_device_bytes": DEFAULT_MIN_DEVICE_BYTES,
    "min_cache_free_bytes": DEFAULT_MIN_CACHE_FREE_BYTES,
    "write_block_size": "4M",
    "catalog_base_url": "https://downloads.raspberrypi.org",
    "probe_host": "8.8.8.8",
    "probe_timeout_seconds": 2,
    "http_timeout_seconds": 60,
    "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
    "poll_timeout_seconds": DEFAULT_POLL_TIMEOUT_SECONDS,
    "wlan_country": "GB",
    "keymap": "gb",
    "timezone": "Europe/London",
    "default_hostname": "raspberrypi",
    "default_username": "pi",
    "default_ssid": "home",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


@dataclass(frozen=True)
class ProvisionerConfig:
    """Immutable snapshot of the settings for one provisioning run."""

    cache_dir: Path
    boot_mount_point: Path
    root_mount_point: Path
    min_device_bytes: int
    min_cache_free_bytes: int
    write_block_size: str
    catalog_base_url: str
    probe_host: str
    probe_timeout_seconds: float
    http_timeout_seconds: float
    poll_interval_seconds: float
    poll_timeout_seconds: float
    wlan_country: str
    keymap: str
    timezone: str
    default_hostname: str
    default_username: str
    default_ssid: str


_PATH_FIELDS = {"cache_dir", "boot_mount_point", "root_mount_point"}
_INT_FIELDS = {"min_device_bytes", "min_cache_free_bytes"}
_FLOAT_FIELDS = {
    "probe_timeout_seconds",
    "http_timeout_seconds",
    "poll_interval_seconds",
    "poll_timeout_seconds",
}


def build_config(overrides: dict[str, Any] | None = None) -> ProvisionerConfig:
    """Freeze the current settings, plus non-None overrides, into a config."""
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    kwargs: dict[str, Any] = {}
    for config_field in fields(ProvisionerConfig):
        name = config_field.name
        value = overrides.get(name, get_setting(name, DEFAULT_SETTINGS[name]))
        if name in _PATH_FIELDS:
            value = Path(value).expanduser()
        elif name in _INT_FIELDS:
            value = int(value)
        elif name in _FLOAT_FIELDS:
            value = float(value)
        else:
            value = str(value)
        kwargs[name] = value
    return ProvisionerConfig(**kwargs)


load_settings()
