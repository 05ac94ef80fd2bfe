"""LVM layout for the target device.

The second partition becomes the only physical volume of a volume group that
is carved into three logical volumes: root, CSI storage and container runtime.
Root and container runtime have fixed sizes; CSI storage gets what is left
after a reserve is held back, and must not fall below a floor.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

from pi_image_builder.domain import LogicalVolumeSizing, SizingPolicy, VolumeGroupSnapshot
from pi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import CommandFailedError, InsufficientCapacityError
from .naming import mapper_path

if TYPE_CHECKING:
    from loguru import Logger

BOOT_LABEL = "system-boot"
ROOT_LABEL = "writable"


def to_lvm_argument(size: int) -> str:
    return f"{size}B"


def parse_vgs_report(output: str) -> VolumeGroupSnapshot:
    """Parse ``vgs --reportformat json --units B`` output for one volume group.

    Raises:
        ValueError: If the report holds no volume group
    """
    try:
        data = json.loads(output)
        entries = data["report"][0]["vg"]
    except (json.JSONDecodeError, KeyError, IndexError, TypeError) as error:
        raise ValueError(f"Unable to parse vgs report: {error}") from error
    if not entries:
        raise ValueError("vgs report contains no volume group")
    return VolumeGroupSnapshot.from_vgs_dict(entries[0])


def plan_logical_volume_sizes(
    snapshot: VolumeGroupSnapshot, policy: Optional[SizingPolicy] = None
) -> LogicalVolumeSizing:
    """Size the root, CSI and container runtime volumes from free capacity.

    Raises:
        InsufficientCapacityError: If the CSI volume would fall below the floor
    """
    policy = policy or SizingPolicy()
    available = snapshot.free - policy.reserve_bytes
    csi = available - policy.root_bytes - policy.container_runtime_bytes
    if csi < policy.csi_floor_bytes:
        required = (
            policy.root_bytes
            + policy.container_runtime_bytes
            + policy.csi_floor_bytes
            + policy.reserve_bytes
        )
        raise InsufficientCapacityError(snapshot.name, snapshot.free, required)
    return LogicalVolumeSizing(
        root=policy.root_bytes,
        csi=csi,
        container_runtime=policy.container_runtime_bytes,
    )


class VolumeGroupSizer:
    """Create and size the volume group and its logical volumes."""

    def __init__(
        self,
        volume_group: str = "rootvg",
        *,
        root_volume: str = "rootlv",
        csi_volume: str = "csilv",
        container_runtime_volume: str = "containerdlv",
        policy: Optional[SizingPolicy] = None,
        log: Logger | None = None,
    ):
        self.volume_group = volume_group
        self.root_volume = root_volume
        self.csi_volume = csi_volume
        self.container_runtime_volume = container_runtime_volume
        self.policy = policy or SizingPolicy()
        self.log = log or LoggerFactory.for_lvm()

    def volume_path(self, logical_volume: str) -> str:
        return mapper_path(self.volume_group, logical_volume)

    @property
    def root_path(self) -> str:
        return self.volume_path(self.root_volume)

    def create_volume_group(self, partition: str) -> None:
        self.log.info(f"Creating volume group {self.volume_group} on {partition}")
        run_checked_command(["pvcreate", partition])
        run_checked_command(["vgcreate", self.volume_group, partition])

    def snapshot(self) -> VolumeGroupSnapshot:
        command = ["vgs", self.volume_group, "--reportformat", "json", "--units", "B"]
        output = run_checked_command(command)
        try:
            snapshot = parse_vgs_report(output)
        except ValueError as error:
            raise CommandFailedError(command, 0, str(error)) from error
        self.log.debug(
            f"Volume group {snapshot.name}: {snapshot.free} of {snapshot.size} bytes free"
        )
        return snapshot

    def plan_sizes(self, snapshot: VolumeGroupSnapshot) -> LogicalVolumeSizing:
        plan = plan_logical_volume_sizes(snapshot, self.policy)
        self.log.info(
            f"Planned volumes: root={plan.root}B csi={plan.csi}B "
            f"container_runtime={plan.container_runtime}B"
        )
        return plan

    def create_logical_volumes(self, plan: LogicalVolumeSizing) -> None:
        """Create root, CSI and container runtime volumes in that order.

        Free capacity is re-queried before each creation.

        Raises:
            InsufficientCapacityError: If the group cannot hold the next volume
        """
        for name, size in (
            (self.root_volume, plan.root),
            (self.csi_volume, plan.csi),
            (self.container_runtime_volume, plan.container_runtime),
        ):
            snapshot = self.snapshot()
            if snapshot.free < size:
                raise InsufficientCapacityError(snapshot.name, snapshot.free, size)
            self.log.info(f"Creating logical volume {name} ({size} bytes)")
            run_checked_command(
                [
                    "lvcreate",
                    "--size",
                    to_lvm_argument(size),
                    self.volume_group,
                    "-n",
                    name,
                    "--wipesignatures",
                    "y",
                ]
            )

    def create_filesystems(self, boot_partition: str) -> None:
        """Format the boot partition as FAT32, then every logical volume as ext4."""
        self.log.info(f"Creating filesystems on {boot_partition} and {self.volume_group}")
        run_checked_command(["mkfs.vfat", "-F", "32", "-n", BOOT_LABEL, boot_partition])
        run_checked_command(["mkfs.ext4", "-L", ROOT_LABEL, self.volume_path(self.root_volume)])
        run_checked_command(["mkfs.ext4", self.volume_path(self.csi_volume)])
        run_checked_command(["mkfs.ext4", self.volume_path(self.container_runtime_volume)])

    def deactivate(self) -> None:
        """Deactivate every logical volume so the device can be removed."""
        run_checked_command(["vgchange", "-a", "n", self.volume_group])
        self.log.info(f"Deactivated volume group {self.volume_group}")
