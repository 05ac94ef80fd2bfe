"""Block device naming.

Partition node names depend on the kind of device: SCSI/virtio disks append
the number directly (``/dev/sdb2``) while loop, NVMe and MMC devices, whose
names already end in a digit, insert a ``p`` (``/dev/loop8p2``,
``/dev/nvme0n1p2``, ``/dev/mmcblk0p2``).
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class DeviceKind(Enum):
    LOOP = "loop"
    NVME = "nvme"
    MMC = "mmc"
    SCSI = "scsi"


def device_kind(device: str) -> DeviceKind:
    name = Path(device).name
    if name.startswith("loop"):
        return DeviceKind.LOOP
    if name.startswith("nvme"):
        return DeviceKind.NVME
    if name.startswith("mmcblk"):
        return DeviceKind.MMC
    return DeviceKind.SCSI


def partition_path(device: str, number: int) -> str:
    """Return the device node of partition ``number`` on ``device``.

    Example:
        >>> partition_path("/dev/loop8", 2)
        '/dev/loop8p2'
        >>> partition_path("/dev/sdb", 1)
        '/dev/sdb1'
    """
    if number < 1:
        raise ValueError(f"Partition numbers start at 1, got {number}")
    kind = device_kind(device)
    if kind is DeviceKind.SCSI and not device[-1:].isdigit():
        return f"{device}{number}"
    return f"{device}p{number}"


def mapper_path(volume_group: str, logical_volume: str) -> str:
    """Return the device-mapper node of a logical volume.

    Dashes inside names are doubled the way device-mapper escapes them.
    """
    vg = volume_group.replace("-", "--")
    lv = logical_volume.replace("-", "--")
    return f"/dev/mapper/{vg}-{lv}"


def trailing_slash(path: str | Path) -> str:
    text = str(path)
    return text if text.endswith("/") else f"{text}/"
