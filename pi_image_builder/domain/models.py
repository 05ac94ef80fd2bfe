"""Domain model for image build operations.

Type-safe records for the structured output of losetup, parted and vgs, plus
the sizing policy and build state. Tool output is converted into these objects
at the edge so the rest of the code never handles raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

MIB = 1024 * 1024
GIB = MIB * 1024


def parse_byte_size(value: Any) -> int:
    """Parse a byte count as reported with ``unit B`` / ``--units B``.

    Accepts ints and strings like ``"31394365440B"`` or ``"4194304"``.

    Raises:
        ValueError: If the value is not a whole number of bytes
    """
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.endswith("B"):
        text = text[:-1]
    return int(text)


# ==============================================================================
# Media Domain
# ==============================================================================


@dataclass(frozen=True)
class MediaArtifact:
    """The downloaded base image and the digest it was verified against."""

    name: str  # e.g., "ubuntu-20.04.5-preinstalled-server-arm64+raspi.img.xz"
    url: str
    path: Path
    expected_sha256: str | None = None

    @property
    def verified(self) -> bool:
        return self.expected_sha256 is not None


# ==============================================================================
# Loop Device Domain
# ==============================================================================


@dataclass(frozen=True)
class LoopDeviceEntry:
    """A loop device as listed by ``losetup -l -J``."""

    name: str  # e.g., "/dev/loop8"
    back_file: str
    size_limit: int = 0
    offset: int = 0
    autoclear: bool = False
    read_only: bool = False
    direct_io: bool = False
    log_sec: int = 512

    @classmethod
    def from_losetup_dict(cls, entry: dict[str, Any]) -> LoopDeviceEntry:
        """Convert one ``loopdevices`` element to a LoopDeviceEntry.

        Raises:
            KeyError: If ``name`` is missing
        """
        return cls(
            name=entry["name"],
            back_file=entry.get("back-file") or "",
            size_limit=int(entry.get("sizelimit") or 0),
            offset=int(entry.get("offset") or 0),
            autoclear=bool(entry.get("autoclear")),
            read_only=bool(entry.get("ro")),
            direct_io=bool(entry.get("dio")),
            log_sec=int(entry.get("log-sec") or 512),
        )


# ==============================================================================
# Partition Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionRecord:
    """One partition table entry. Offsets and sizes are in bytes."""

    number: int  # 1-based, table order
    start: int
    end: int
    size: int
    filesystem: str = ""
    flags: tuple[str, ...] = ()

    @classmethod
    def from_parted_json(cls, entry: dict[str, Any]) -> PartitionRecord:
        flags = entry.get("flags") or []
        return cls(
            number=int(entry["number"]),
            start=parse_byte_size(entry["start"]),
            end=parse_byte_size(entry["end"]),
            size=parse_byte_size(entry["size"]),
            filesystem=entry.get("filesystem") or "",
            flags=tuple(flags),
        )

    @property
    def lvm_enabled(self) -> bool:
        return "lvm" in self.flags


@dataclass(frozen=True)
class DiskRecord:
    """Disk metadata and its partitions in table order."""

    path: str
    size: int
    label: str = ""
    partitions: tuple[PartitionRecord, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.partitions

    @classmethod
    def from_parted_json(cls, data: dict[str, Any]) -> DiskRecord:
        disk = data["disk"]
        size = disk.get("size")
        return cls(
            path=disk.get("path", ""),
            size=parse_byte_size(size) if size else 0,
            label=disk.get("label") or "",
            partitions=tuple(
                PartitionRecord.from_parted_json(entry)
                for entry in disk.get("partitions") or []
            ),
        )


# ==============================================================================
# Volume Group Domain
# ==============================================================================


@dataclass(frozen=True)
class VolumeGroupSnapshot:
    """Capacity of a volume group at one point in time, in bytes.

    Free capacity changes after every lvcreate, so a snapshot is only valid for
    the sizing decision it was captured for.
    """

    name: str
    pv_count: int
    lv_count: int
    size: int
    free: int

    @classmethod
    def from_vgs_dict(cls, entry: dict[str, Any]) -> VolumeGroupSnapshot:
        return cls(
            name=entry["vg_name"],
            pv_count=int(entry.get("pv_count") or 0),
            lv_count=int(entry.get("lv_count") or 0),
            size=parse_byte_size(entry["vg_size"]),
            free=parse_byte_size(entry["vg_free"]),
        )


@dataclass(frozen=True)
class SizingPolicy:
    """Logical volume sizing inputs."""

    reserve_bytes: int = 2 * 256 * MIB
    root_bytes: int = 10 * GIB
    container_runtime_bytes: int = 30 * GIB
    csi_floor_bytes: int = 5 * GIB

    @classmethod
    def from_settings(cls, values: dict[str, Any]) -> SizingPolicy:
        defaults = cls()
        return cls(
            reserve_bytes=int(values.get("reserve_bytes", defaults.reserve_bytes)),
            root_bytes=int(values.get("root_bytes", defaults.root_bytes)),
            container_runtime_bytes=int(
                values.get("container_runtime_bytes", defaults.container_runtime_bytes)
            ),
            csi_floor_bytes=int(values.get("csi_floor_bytes", defaults.csi_floor_bytes)),
        )


@dataclass(frozen=True)
class LogicalVolumeSizing:
    """Computed logical volume sizes in bytes."""

    root: int
    csi: int
    container_runtime: int

    @property
    def total(self) -> int:
        return self.root + self.csi + self.container_runtime


# ==============================================================================
# Mount Domain
# ==============================================================================


@dataclass(frozen=True)
class MountPoint:
    source: str
    target: Path


# ==============================================================================
# Build State
# ==============================================================================


class BuildState(Enum):
    """State of a build or flash session."""

    IDLE = "idle"
    MEDIA_ACQUIRED = "media_acquired"
    EXTRACTED = "extracted"
    SIZE_EXPANDED = "size_expanded"
    DEVICE_ATTACHED = "device_attached"
    FILESYSTEM_EXPANDED = "filesystem_expanded"
    TARGET_PARTITIONED = "target_partitioned"
    MOUNTED = "mounted"
    CONFIGURED = "configured"
    UNMOUNTED = "unmounted"
    COMPRESSED = "compressed"
    UPLOADED = "uploaded"
    FLASHED_TO_TARGET = "flashed_to_target"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BuildSession:
    """Everything one build owns. Mutable, lives for one build."""

    job_id: str
    state: BuildState = BuildState.IDLE
    artifact: MediaArtifact | None = None
    image_path: Path | None = None
    loop_device: LoopDeviceEntry | None = None
    snapshot: VolumeGroupSnapshot | None = None
    sizing: LogicalVolumeSizing | None = None
    output_path: Path | None = None
    history: list[BuildState] = field(default_factory=list)

    def advance(self, state: BuildState) -> None:
        self.history.append(self.state)
        self.state = state
