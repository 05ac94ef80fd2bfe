"""Partition table inspection, creation and growth using parted.

Two parted output formats are consumed:

- JSON (``parted -j``) for the empty-table guard and for verifying a freshly
  created table.
- Machine format (``parted -m``), one ``:``-separated record per line, for
  locating the ext4 root partition of a base image before growing it.

Sizes are always requested in bytes (``unit B``). Partition records are read
from disk again after every table mutation.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Iterable, Optional

from pi_image_builder.domain import DiskRecord, PartitionRecord, parse_byte_size
from pi_image_builder.logging import LoggerFactory

from .commands import run_checked_command, run_command
from .exceptions import CommandFailedError, NonEmptyPartitionTableError
from .naming import partition_path
from .validation import validate_device_path

if TYPE_CHECKING:
    from loguru import Logger

BOOT_PARTITION_START = "2048s"
BOOT_PARTITION_END = "257MiB"
MACHINE_PARTITION_FIELDS = 7
MACHINE_DISK_FIELDS = 8


def parted_command(device: str, *options: str) -> list[str]:
    return ["parted", "-s", device, *options]


def parse_parted_json(output: str) -> DiskRecord:
    """Parse ``parted -j ... unit B print`` output.

    Raises:
        ValueError: If the output is not a parted JSON document
    """
    try:
        data = json.loads(output)
        return DiskRecord.from_parted_json(data)
    except (json.JSONDecodeError, KeyError, TypeError) as error:
        raise ValueError(f"Unable to parse parted JSON output: {error}") from error


def _parse_flags(field: str) -> tuple[str, ...]:
    return tuple(flag.strip() for flag in field.split(",") if flag.strip())


def parse_machine_output(output: str) -> tuple[Optional[DiskRecord], list[PartitionRecord]]:
    """Parse ``parted -m ... unit B print`` output.

    Example input::

        BYT;
        /dev/loop8:4294967296B:loopback:512:512:msdos:Loopback device:;
        1:1048576B:269484031B:268435456B:fat32::lba;
        2:269484032B:3496001535B:3226517504B:ext4::;

    Returns:
        The disk record (or None if no disk line was present) and the
        partition records in table order
    """
    disk: Optional[DiskRecord] = None
    partitions: list[PartitionRecord] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line == "BYT;":
            continue
        fields = line.rstrip(";").split(":")
        if len(fields) == MACHINE_DISK_FIELDS and fields[0].startswith("/"):
            disk = DiskRecord(
                path=fields[0],
                size=parse_byte_size(fields[1]),
                label=fields[5],
            )
            continue
        if len(fields) != MACHINE_PARTITION_FIELDS or not fields[0].isdigit():
            continue
        partitions.append(
            PartitionRecord(
                number=int(fields[0]),
                start=parse_byte_size(fields[1]),
                end=parse_byte_size(fields[2]),
                size=parse_byte_size(fields[3]),
                filesystem=fields[4],
                flags=_parse_flags(fields[6]),
            )
        )
    if disk is not None:
        disk = DiskRecord(
            path=disk.path, size=disk.size, label=disk.label, partitions=tuple(partitions)
        )
    return disk, partitions


def find_partition(
    partitions: Iterable[PartitionRecord], filesystem: str = "ext4"
) -> Optional[PartitionRecord]:
    """Return the first partition carrying ``filesystem`` in table order."""
    for partition in partitions:
        if partition.filesystem == filesystem:
            return partition
    return None


def check_filesystem(node: str) -> None:
    """Run a forced, non-interactive e2fsck.

    Exit code 1 means errors were found and corrected, which is success.
    """
    command = ["e2fsck", "-p", "-f", node]
    result = run_command(command)
    if result.returncode not in (0, 1):
        output = "\n".join(part.strip() for part in (result.stderr, result.stdout) if part)
        raise CommandFailedError(command, result.returncode, output)


class PartitionPlanner:
    """Guarded partition table operations for a single device."""

    def __init__(self, log: Logger | None = None):
        self.log = log or LoggerFactory.for_partition()

    def get_partition_table(self, device: str) -> DiskRecord:
        """Read the partition table as JSON.

        A device without a recognised disk label is reported by parted with a
        non-zero exit code; it is returned as an empty table.
        """
        validate_device_path(device)
        command = ["parted", "-s", "-j", device, "unit", "B", "print"]
        result = run_command(command)
        try:
            table = parse_parted_json(result.stdout or "")
        except ValueError:
            output = "\n".join(part for part in (result.stderr, result.stdout) if part)
            raise CommandFailedError(command, result.returncode, output.strip()) from None
        if result.returncode != 0 and table.label not in ("", "unknown"):
            raise CommandFailedError(command, result.returncode, (result.stderr or "").strip())
        return table

    def require_empty_table(self, device: str) -> DiskRecord:
        """Fail unless ``device`` has no partitions.

        Raises:
            NonEmptyPartitionTableError: If any partition entry exists
        """
        table = self.get_partition_table(device)
        if not table.is_empty:
            raise NonEmptyPartitionTableError(device, len(table.partitions))
        self.log.debug(f"{device} has an empty partition table")
        return table

    def create_table(self, device: str) -> DiskRecord:
        """Create an MBR table with a FAT32 boot partition and an LVM partition.

        The empty-table guard runs first; nothing is written to a device that
        already holds partitions.

        Raises:
            NonEmptyPartitionTableError: If the device already has partitions
            CommandFailedError: If parted fails or the result is not the
                expected two-partition layout
        """
        self.require_empty_table(device)
        self.log.info(f"Creating msdos partition table on {device}")

        run_checked_command(parted_command(device, "mktable", "msdos"))
        run_checked_command(
            parted_command(
                device, "mkpart", "primary", "fat32", BOOT_PARTITION_START, BOOT_PARTITION_END
            )
        )
        run_checked_command(
            parted_command(device, "mkpart", "primary", "ext4", BOOT_PARTITION_END, "100%")
        )
        run_checked_command(parted_command(device, "set", "2", "lvm", "on"))

        table = self.get_partition_table(device)
        numbers = [partition.number for partition in table.partitions]
        if numbers != [1, 2] or not table.partitions[1].lvm_enabled:
            raise CommandFailedError(
                ["parted", device, "print"],
                0,
                f"unexpected layout after partitioning: {table.partitions}",
            )
        self.log.info(f"Created boot and LVM partitions on {device}")
        return table

    def read_machine_table(self, device: str) -> tuple[Optional[DiskRecord], list[PartitionRecord]]:
        output = run_checked_command(parted_command(device, "-m", "unit", "B", "print"))
        return parse_machine_output(output)

    def grow_last_partition(self, device: str) -> Optional[PartitionRecord]:
        """Grow the ext4 partition and its filesystem to the end of the disk.

        Runs resizepart, then e2fsck, then resize2fs. A table without an ext4
        partition is left alone.

        Returns:
            The partition as re-read after the resize, or None when there was
            nothing to resize
        """
        disk, partitions = self.read_machine_table(device)
        partition = find_partition(partitions, "ext4")
        if partition is None:
            self.log.warning(f"No ext4 partition found on {device}, nothing to resize")
            return None
        if disk is None:
            raise CommandFailedError(
                ["parted", device, "print"], 0, "disk line missing from parted output"
            )

        disk_end = disk.size - 1
        if partition.end < disk_end:
            self.log.info(
                f"Resizing partition {partition.number} on {device} "
                f"from {partition.end}B to {disk_end}B"
            )
            run_checked_command(
                parted_command(device, "resizepart", str(partition.number), f"{disk_end}B")
            )
        else:
            self.log.info(f"Partition {partition.number} on {device} already ends at disk end")

        node = partition_path(device, partition.number)
        check_filesystem(node)
        run_checked_command(["resize2fs", node])

        _, resized = self.read_machine_table(device)
        grown = next((p for p in resized if p.number == partition.number), None)
        if grown is not None:
            self.log.info(f"{node} is now {grown.size} bytes")
        return grown
