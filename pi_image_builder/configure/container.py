"""Commands executed inside the mounted guest with systemd-nspawn."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pi_image_builder.storage.commands import run_checked_command


def container_command(root: str | Path, *args: str) -> list[str]:
    return ["systemd-nspawn", "-D", str(root), *args]


def run_in_container(root: str | Path, *args: str, timeout: Optional[float] = None) -> str:
    """Run ``args`` inside the guest rooted at ``root``.

    Raises:
        CommandTimeoutError: If the command runs longer than ``timeout`` seconds
        CommandFailedError: If the command exits non-zero
    """
    return run_checked_command(container_command(root, *args), timeout=timeout)
