"""Settings storage for image geometry and filesystem parameters."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from rpi_image_builder.storage.exceptions import InvalidInputError


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_IMAGE_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-image-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SECTOR_SIZE = 512
DEFAULT_TABLE_RESERVE_MB = 1
DEFAULT_FIRMWARE_SIZE_MB = 128
DEFAULT_ROOT_OVERHEAD_PERCENT = 25
DEFAULT_FIRMWARE_MOUNT_SUBDIR = "boot/firmware"

DEFAULT_SETTINGS: dict[str, Any] = {
    "sector_size": DEFAULT_SECTOR_SIZE,
    "table_reserve_mb": DEFAULT_TABLE_RESERVE_MB,
    "firmware_size_mb": DEFAULT_FIRMWARE_SIZE_MB,
    "root_overhead_percent": DEFAULT_ROOT_OVERHEAD_PERCENT,
    "firmware_label": "bootfs",
    "root_label": "rootfs",
    "firmware_mount_subdir": DEFAULT_FIRMWARE_MOUNT_SUBDIR,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None, *, required: bool = False) -> None:
    """Reset the store to defaults and merge the JSON file at ``path``.

    A missing or unreadable file leaves the defaults in place, unless
    ``required`` is set (a file named on the command line).

    Raises:
        InvalidInputError: If ``required`` and the file is missing, unreadable
            or not a JSON object
    """
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        if required:
            raise InvalidInputError(f"Settings file does not exist: {path}")
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        if required:
            raise InvalidInputError(f"Cannot read settings file {path}: {error}") from error
        return
    if isinstance(data, dict):
        settings_store.values.update(data)
    elif required:
        raise InvalidInputError(f"Settings file {path} must contain a JSON object")


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


@dataclass(frozen=True)
class ImageSettings:
    """Resolved parameters for one build.

    Geometry values are validated by the geometry calculator, not here, so a
    bad settings file surfaces as an input error at plan time.
    """

    sector_size: int = DEFAULT_SECTOR_SIZE
    table_reserve_mb: int = DEFAULT_TABLE_RESERVE_MB
    firmware_size_mb: int = DEFAULT_FIRMWARE_SIZE_MB
    root_overhead_percent: int = DEFAULT_ROOT_OVERHEAD_PERCENT
    firmware_label: str = "bootfs"
    root_label: str = "rootfs"
    firmware_mount_subdir: str = DEFAULT_FIRMWARE_MOUNT_SUBDIR

    @property
    def root_offset_mb(self) -> int:
        return self.table_reserve_mb + self.firmware_size_mb

    @classmethod
    def from_store(cls, **overrides: Any) -> ImageSettings:
        """Build settings from the store, letting non-None overrides win."""
        names = {f.name for f in fields(cls)}
        values = {
            key: value for key, value in settings_store.values.items() if key in names
        }
        values.update(
            {key: value for key, value in overrides.items() if value is not None}
        )
        return cls(**values)


load_settings()
