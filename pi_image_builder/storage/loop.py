"""Loop device management using losetup.

The kernel picks which /dev/loopN node is used for an image, so after
attaching, the device is resolved by listing all loop devices as JSON and
matching the backing file path, never by guessing a node name.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

from pi_image_builder.domain import LoopDeviceEntry
from pi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import CommandFailedError, LoopDeviceError

if TYPE_CHECKING:
    from loguru import Logger


def parse_losetup_output(output: str) -> list[LoopDeviceEntry]:
    """Parse ``losetup -l -J`` output.

    Empty output means no loop devices are in use.

    Raises:
        LoopDeviceError: If the output is not the expected JSON document
    """
    if not output.strip():
        return []
    try:
        data = json.loads(output)
        return [
            LoopDeviceEntry.from_losetup_dict(entry)
            for entry in data.get("loopdevices", [])
        ]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
        raise LoopDeviceError(f"Unable to parse losetup output: {error}") from error


class BlockDeviceMapper:
    """Attach disk images to loop devices and release them."""

    def __init__(self, log: Logger | None = None):
        self.log = log or LoggerFactory.for_loop()

    def list_devices(self) -> list[LoopDeviceEntry]:
        return parse_losetup_output(run_checked_command(["losetup", "-l", "-J"]))

    def find_by_backing_file(self, image_path: str | Path) -> LoopDeviceEntry | None:
        """Return the loop device backed by ``image_path``.

        Raises:
            LoopDeviceError: If more than one loop device uses the file
        """
        path = os.path.abspath(image_path)
        matches = [entry for entry in self.list_devices() if entry.back_file == path]
        if len(matches) > 1:
            names = ", ".join(entry.name for entry in matches)
            raise LoopDeviceError(f"{path} is attached to multiple loop devices: {names}")
        return matches[0] if matches else None

    def attach(self, image_path: str | Path) -> LoopDeviceEntry:
        """Attach ``image_path`` to the next free loop device with partition scan.

        Raises:
            LoopDeviceError: If the image is missing, already attached, or the
                new device cannot be resolved
            CommandFailedError: If losetup fails
        """
        path = os.path.abspath(image_path)
        if not os.path.isfile(path):
            raise LoopDeviceError(f"Image file not found: {path}")

        existing = self.find_by_backing_file(path)
        if existing is not None:
            raise LoopDeviceError(f"{path} is already attached to {existing.name}")

        self.log.info(f"Attaching {path} to a loop device")
        run_checked_command(["losetup", "-P", "-f", path])

        entry = self.find_by_backing_file(path)
        if entry is None:
            raise LoopDeviceError(f"No loop device found for {path} after attach")
        self.log.info(f"Attached {path} to {entry.name}")
        return entry

    def detach(self, entry: LoopDeviceEntry) -> None:
        """Release the loop binding.

        Raises:
            LoopDeviceError: If the device is not attached or losetup fails
        """
        attached = {device.name for device in self.list_devices()}
        if entry.name not in attached:
            raise LoopDeviceError(f"Loop device {entry.name} is not attached")
        try:
            run_checked_command(["losetup", "--detach", entry.name])
        except CommandFailedError as error:
            raise LoopDeviceError(f"Failed to detach {entry.name}: {error.output}") from error
        self.log.info(f"Detached {entry.name} ({entry.back_file})")
