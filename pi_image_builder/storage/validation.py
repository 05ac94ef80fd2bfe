"""Safety validation run before destructive operations.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from pi_image_builder.storage.validation import validate_device_path

    validate_device_path("/dev/sdb")  # Safe to partition
"""

from __future__ import annotations

import os
import stat

from .exceptions import InvalidDevicePathError

SHELL_METACHARACTERS = (";", "&", "|", "$", "`", "\n", "\r", " ")


def validate_device_path(device: str) -> None:
    """Validate a device path string.

    Raises:
        InvalidDevicePathError: If the path is not an absolute /dev/ path or
            contains shell metacharacters
    """
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise InvalidDevicePathError(str(device), "must start with /dev/")

    if any(char in device for char in SHELL_METACHARACTERS):
        raise InvalidDevicePathError(device, "contains invalid characters")

    if os.path.basename(device) in ("", ".", ".."):
        raise InvalidDevicePathError(device, "missing device name")


def validate_block_device(device: str) -> None:
    """Validate that a path names an existing block device.

    Raises:
        InvalidDevicePathError: If the path is invalid, missing, or not a
            block device
    """
    validate_device_path(device)
    try:
        mode = os.stat(device).st_mode
    except FileNotFoundError:
        raise InvalidDevicePathError(device, "does not exist") from None
    if not stat.S_ISBLK(mode):
        raise InvalidDevicePathError(device, "not a block device")
