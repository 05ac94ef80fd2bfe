"""Mount sessions for image and target filesystems.

A session mounts a root filesystem on ``<root_dir>`` and the boot partition on
``<root_dir>/boot/firmware``. Every mount and the optional resolver
substitution are recorded in order, and teardown undoes them in reverse:
resolver restore, boot unmount, root unmount.

Example:
    with MountSession(Path("mnt")) as session:
        session.attach("/dev/loop8p2", "/dev/loop8p1", allow_overwrite_resolv=True)
        configurator.apply(session.root_dir)
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pi_image_builder.domain import MountPoint
from pi_image_builder.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import CleanupError, CommandFailedError, MountError
from .naming import trailing_slash

if TYPE_CHECKING:
    from loguru import Logger

BOOT_SUBDIR = Path("boot") / "firmware"
GUEST_RESOLV = Path("etc") / "resolv.conf"
GUEST_RESOLV_BACKUP = Path("etc") / "resolv.conf.bak"


def is_mountpoint_active(mountpoint: str | Path) -> bool:
    mountpoint = os.path.abspath(mountpoint)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def unmount(target: str | Path) -> None:
    """Unmount ``target``.

    Raises:
        MountError: If umount fails
    """
    try:
        run_checked_command(["umount", str(target)])
    except CommandFailedError as error:
        raise MountError("", str(target), error.output or str(error)) from error


class MountSession:
    """Ordered mount ledger for one root directory."""

    def __init__(
        self,
        root_dir: str | Path,
        *,
        host_resolv_conf: str | Path = "/etc/resolv.conf",
        log: Logger | None = None,
    ):
        self.root_dir = Path(root_dir).resolve()
        self.host_resolv_conf = Path(host_resolv_conf)
        self.log = log or LoggerFactory.for_mount()
        self.mounts: list[MountPoint] = []
        self.resolv_substituted = False
        self._guest_had_resolv = False

    @property
    def boot_dir(self) -> Path:
        return self.root_dir / BOOT_SUBDIR

    @property
    def active(self) -> bool:
        return bool(self.mounts) or self.resolv_substituted

    def __enter__(self) -> MountSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.active:
            return
        try:
            self.teardown()
        except CleanupError as error:
            if exc is None:
                raise
            # the in-flight error wins; teardown failures are only logged
            self.log.error(f"Teardown of {self.root_dir} failed: {error}")

    def _mount(self, source: str, target: Path) -> None:
        try:
            run_checked_command(["mount", source, str(target)])
        except CommandFailedError as error:
            raise MountError(source, str(target), error.output or str(error)) from error
        self.mounts.append(MountPoint(source=source, target=target))
        self.log.info(f"Mounted {source} on {target}")

    def attach(
        self, root_source: str, boot_source: str, *, allow_overwrite_resolv: bool = False
    ) -> None:
        """Mount root then boot, then optionally substitute the guest resolver.

        Raises:
            MountError: If a mount fails. Mounts made before the failure stay
                recorded so teardown can release them.
        """
        if self.mounts:
            raise MountError(root_source, str(self.root_dir), "session already attached")
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self._mount(root_source, self.root_dir)
        self.boot_dir.mkdir(parents=True, exist_ok=True)
        self._mount(boot_source, self.boot_dir)
        if allow_overwrite_resolv:
            self.substitute_resolver()

    def substitute_resolver(self) -> None:
        """Move the guest resolv.conf aside and copy the host's in its place.

        The guest entry is renamed, so a symlink stays a symlink. A backup
        left by an interrupted run is the guest's original entry; it is kept
        and the current file, a stale host copy, is replaced.
        """
        guest = self.root_dir / GUEST_RESOLV
        backup = self.root_dir / GUEST_RESOLV_BACKUP
        if os.path.lexists(backup):
            self.log.warning(f"Found {backup} from an earlier run, keeping it as the original")
            self._guest_had_resolv = True
            if os.path.lexists(guest):
                os.remove(guest)
        else:
            self._guest_had_resolv = os.path.lexists(guest)
            if self._guest_had_resolv:
                os.rename(guest, backup)
        # restore must run from here on, even if the copy below fails
        self.resolv_substituted = True
        guest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.host_resolv_conf, guest)
        shutil.copymode(self.host_resolv_conf, guest)
        self.resolv_substituted = True
        self.log.debug(f"Copied {self.host_resolv_conf} into {guest}")

    def restore_resolver(self) -> None:
        guest = self.root_dir / GUEST_RESOLV
        backup = self.root_dir / GUEST_RESOLV_BACKUP
        if os.path.lexists(guest):
            os.remove(guest)
        if self._guest_had_resolv:
            os.rename(backup, guest)
        self.resolv_substituted = False
        self.log.debug(f"Restored guest resolver at {guest}")

    def teardown(self) -> None:
        """Undo the session in reverse order, attempting every step.

        Raises:
            CleanupError: Listing every step that failed
        """
        failures: list[Exception] = []
        if self.resolv_substituted:
            try:
                self.restore_resolver()
            except OSError as error:
                failures.append(error)
        for mount_point in reversed(list(self.mounts)):
            try:
                unmount(mount_point.target)
            except MountError as error:
                failures.append(error)
                continue
            self.mounts.remove(mount_point)
            self.log.info(f"Unmounted {mount_point.target}")
        if failures:
            raise CleanupError(failures)

    def flash_to(self, target: MountSession, timeout: Optional[float] = None) -> None:
        """Copy boot then root onto another mounted session with rsync.

        Both sessions must be attached. ``-x`` keeps rsync on the root
        filesystem so boot is not copied twice.
        """
        if not self.mounts or not target.mounts:
            raise MountError(
                str(self.root_dir), str(target.root_dir), "both sessions must be mounted"
            )
        for source, destination in (
            (self.boot_dir, target.boot_dir),
            (self.root_dir, target.root_dir),
        ):
            self.log.info(f"Copying {source} to {destination}")
            run_checked_command(
                [
                    "rsync",
                    "--progress",
                    "-axv",
                    trailing_slash(source),
                    trailing_slash(destination),
                ],
                timeout=timeout,
            )
