"""Settings storage for build configuration."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pi_image_builder.domain import GIB, MIB, SizingPolicy


SETTINGS_PATH = Path(
    os.environ.get(
        "PI_IMAGE_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "pi-image-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_RELEASE_URL = "https://cdimage.ubuntu.com/releases/20.04/release"
DEFAULT_IMAGE_NAME = "ubuntu-20.04.5-preinstalled-server-arm64+raspi.img.xz"
DEFAULT_CHECKSUM_NAME = "SHA256SUMS"
DEFAULT_MINIMUM_IMAGE_BYTES = 4 * GIB
DEFAULT_IMAGE_PADDING_BYTES = 1000 * MIB
DEFAULT_COMMAND_TIMEOUT_SECONDS = 600.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "work_dir": ".",
    "release_url": DEFAULT_RELEASE_URL,
    "image_name": DEFAULT_IMAGE_NAME,
    "checksum_name": DEFAULT_CHECKSUM_NAME,
    "flash_image_name": "image-to-be-flashed.img",
    "output_prefix": "ubuntu-20-04-arm64",
    "minimum_image_bytes": DEFAULT_MINIMUM_IMAGE_BYTES,
    "image_padding_bytes": DEFAULT_IMAGE_PADDING_BYTES,
    "volume_group": "rootvg",
    "root_volume": "rootlv",
    "csi_volume": "csilv",
    "container_runtime_volume": "containerdlv",
    "sizing": {
        "reserve_bytes": 2 * 256 * MIB,
        "root_bytes": 10 * GIB,
        "container_runtime_bytes": 30 * GIB,
        "csi_floor_bytes": 5 * GIB,
    },
    "image_mount_dir": "mnt",
    "media_mount_dir": "media-mnt",
    "host_resolv_conf": "/etc/resolv.conf",
    "upload_url": None,
    "image_store_url": None,
    "download_timeout_seconds": 1800,
    "configure_command_timeout_seconds": DEFAULT_COMMAND_TIMEOUT_SECONDS,
    "guest_packages": [
        "openssh-server",
        "ca-certificates",
        "curl",
        "gnupg",
        "sudo",
        "apt-transport-https",
        "nftables",
        "conntrack",
    ],
    "kernel_modules": ["br_netfilter", "overlay"],
}


@dataclass
class BuildSettings:
    values: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_SETTINGS))

    def get(self, key: str, default: Any | None = None) -> Any:
        return self.values.get(key, default)

    @property
    def work_dir(self) -> Path:
        return Path(self.values["work_dir"]).resolve()

    @property
    def image_mount_dir(self) -> Path:
        return self.work_dir / self.values["image_mount_dir"]

    @property
    def media_mount_dir(self) -> Path:
        return self.work_dir / self.values["media_mount_dir"]

    @property
    def extract_name(self) -> str:
        """Name of the decompressed image (the .xz suffix removed)."""
        name = self.values["image_name"]
        return name[: -len(".xz")] if name.endswith(".xz") else name

    @property
    def sizing_policy(self) -> SizingPolicy:
        return SizingPolicy.from_settings(self.values.get("sizing") or {})

    @property
    def command_timeout(self) -> float | None:
        value = self.values.get("configure_command_timeout_seconds")
        if value is None:
            return None
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            return None
        if timeout <= 0:
            return None
        return timeout


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(path: Path | None = None) -> BuildSettings:
    """Load settings from JSON, falling back to defaults for missing keys.

    An unreadable or non-object settings file is ignored, like a missing one.
    """
    path = path or SETTINGS_PATH
    values = copy.deepcopy(DEFAULT_SETTINGS)
    if not path.exists():
        return BuildSettings(values)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return BuildSettings(values)
    if isinstance(data, dict):
        values = _merge(values, data)
    return BuildSettings(values)


def save_settings(settings: BuildSettings, path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )
