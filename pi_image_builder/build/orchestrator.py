"""Build and flash pipelines.

Each pipeline is a linear sequence of named steps run inside
``operation_context``. Every host resource (loop device, mount session,
active volume group) is pushed onto a ResourceLedger when acquired. When a
step fails the session moves to FAILED, the ledger is released newest first,
and a BuildStepError carrying the original error and any cleanup errors is
raised. An interrupt (Ctrl-C, SystemExit) releases the ledger the same way
and then propagates unchanged. Nothing is retried.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from pi_image_builder.configure import GuestConfigurator
from pi_image_builder.domain import BuildSession, BuildState
from pi_image_builder.logging import LoggerFactory, new_job_id, operation_context
from pi_image_builder.media.fetcher import MediaFetcher
from pi_image_builder.media.image import (
    compress_image,
    decompress_image,
    expand_image,
    extract_image,
)
from pi_image_builder.media.transfer import ImageStore
from pi_image_builder.storage.exceptions import (
    BuildStepError,
    CleanupError,
    CommandFailedError,
    LoopDeviceError,
    MountError,
    PreconditionError,
)
from pi_image_builder.storage.loop import BlockDeviceMapper
from pi_image_builder.storage.lvm import VolumeGroupSizer
from pi_image_builder.storage.mount import (
    GUEST_RESOLV,
    GUEST_RESOLV_BACKUP,
    MountSession,
    is_mountpoint_active,
    unmount,
)
from pi_image_builder.storage.naming import partition_path
from pi_image_builder.storage.partition import PartitionPlanner
from pi_image_builder.storage.validation import validate_block_device

from .ledger import ResourceLedger

if TYPE_CHECKING:
    from loguru import Logger

    from pi_image_builder.config.settings import BuildSettings

BOOT_PARTITION = 1
ROOT_PARTITION = 2


class BuildOrchestrator:
    """Drive one build or flash session at a time."""

    def __init__(
        self,
        settings: BuildSettings,
        *,
        fetcher: Optional[MediaFetcher] = None,
        mapper: Optional[BlockDeviceMapper] = None,
        planner: Optional[PartitionPlanner] = None,
        sizer: Optional[VolumeGroupSizer] = None,
        configurator: Optional[GuestConfigurator] = None,
        image_store: Optional[ImageStore] = None,
        job_id: Optional[str] = None,
        log: Logger | None = None,
    ):
        self.settings = settings
        self.job_id = job_id or new_job_id()
        self.log = log or LoggerFactory.for_build(self.job_id)
        self.fetcher = fetcher or MediaFetcher(
            settings.get("release_url"),
            settings.work_dir,
            timeout_seconds=settings.get("download_timeout_seconds"),
        )
        self.mapper = mapper or BlockDeviceMapper()
        self.planner = planner or PartitionPlanner()
        self.sizer = sizer or VolumeGroupSizer(
            settings.get("volume_group"),
            root_volume=settings.get("root_volume"),
            csi_volume=settings.get("csi_volume"),
            container_runtime_volume=settings.get("container_runtime_volume"),
            policy=settings.sizing_policy,
        )
        self.configurator = configurator or GuestConfigurator.from_settings(settings)
        self.image_store = image_store
        self.session = BuildSession(job_id=self.job_id)
        self.current_step: Optional[str] = None

    def _image_store(self, url_key: str) -> Optional[ImageStore]:
        if self.image_store is not None:
            return self.image_store
        url = self.settings.get(url_key)
        if not url:
            return None
        return ImageStore(url, timeout_seconds=self.settings.get("download_timeout_seconds"))

    def _mount_session(self, root_dir: Path) -> MountSession:
        return MountSession(root_dir, host_resolv_conf=self.settings.get("host_resolv_conf"))

    @contextmanager
    def _step(self, name: str) -> Iterator[Logger]:
        self.current_step = name
        with operation_context(name, self.log, job_id=self.job_id) as step_log:
            yield step_log

    def _release(self, ledger: ResourceLedger) -> list[Exception]:
        step = self.current_step or "start"
        self.session.advance(BuildState.FAILED)
        cleanup_errors = ledger.release_all()
        for cleanup_error in cleanup_errors:
            self.log.critical(f"Leaked host resource after '{step}' failed: {cleanup_error}")
        return cleanup_errors

    def _fail(self, ledger: ResourceLedger, error: Exception) -> BuildStepError:
        cleanup_errors = self._release(ledger)
        return BuildStepError(self.current_step or "start", error, cleanup_errors)

    def _abort(self, ledger: ResourceLedger) -> None:
        step = self.current_step or "start"
        self.log.warning(f"Interrupted during '{step}', releasing host resources")
        self._release(ledger)

    def _attach_image(self, ledger: ResourceLedger, image_path: Path):
        entry = self.mapper.attach(image_path)
        ledger.push(f"loop device {entry.name}", lambda: self.mapper.detach(entry))
        self.session.loop_device = entry
        return entry

    def build(self, upload: bool = True) -> BuildSession:
        """Build, configure and compress a node image, then optionally upload it.

        Raises:
            BuildStepError: If any step fails
        """
        settings = self.settings
        ledger = ResourceLedger(self.log)
        self.log.info(f"Starting build {self.job_id}")
        try:
            with self._step("acquire media"):
                artifact = self.fetcher.acquire(
                    settings.get("image_name"), settings.get("checksum_name")
                )
                self.session.artifact = artifact
                self.session.advance(BuildState.MEDIA_ACQUIRED)

            with self._step("extract image"):
                image_path = extract_image(
                    artifact.path, settings.work_dir / settings.extract_name
                )
                self.session.image_path = image_path
                self.session.advance(BuildState.EXTRACTED)

            with self._step("expand image"):
                expand_image(
                    image_path,
                    settings.get("minimum_image_bytes"),
                    settings.get("image_padding_bytes"),
                )
                self.session.advance(BuildState.SIZE_EXPANDED)

            with self._step("attach loop device"):
                entry = self._attach_image(ledger, image_path)
                self.session.advance(BuildState.DEVICE_ATTACHED)

            with self._step("expand filesystem"):
                self.planner.grow_last_partition(entry.name)
                self.session.advance(BuildState.FILESYSTEM_EXPANDED)

            with self._step("mount image"):
                mount = self._mount_session(settings.image_mount_dir)
                ledger.push(f"mounts under {mount.root_dir}", mount.teardown)
                mount.attach(
                    partition_path(entry.name, ROOT_PARTITION),
                    partition_path(entry.name, BOOT_PARTITION),
                    allow_overwrite_resolv=True,
                )
                self.session.advance(BuildState.MOUNTED)

            with self._step("configure guest"):
                self.configurator.apply(mount.root_dir)
                self.session.advance(BuildState.CONFIGURED)

            with self._step("unmount image"):
                ledger.close()
                self.session.advance(BuildState.UNMOUNTED)

            with self._step("compress image"):
                output = compress_image(image_path, settings.get("output_prefix"))
                self.session.output_path = output
                self.session.advance(BuildState.COMPRESSED)

            if upload:
                store = self._image_store("upload_url")
                if store is None:
                    self.log.warning("No upload_url configured, skipping upload")
                else:
                    with self._step("upload image"):
                        store.upload(output)
                        self.session.advance(BuildState.UPLOADED)
        except Exception as error:
            raise self._fail(ledger, error) from error
        except BaseException:
            self._abort(ledger)
            raise

        self.session.advance(BuildState.DONE)
        self.log.success(f"Build {self.job_id} finished: {self.session.output_path}")
        return self.session

    def flash(self, image_name: str, device: str) -> BuildSession:
        """Lay out ``device`` with the LVM scheme and copy a stored image onto it.

        The device must have an empty partition table.

        Raises:
            BuildStepError: If any step fails, including the safety checks
        """
        settings = self.settings
        ledger = ResourceLedger(self.log)
        self.log.info(f"Starting flash of {image_name} to {device}")
        try:
            with self._step("validate target"):
                validate_block_device(device)

            with self._step("fetch stored image"):
                compressed = settings.work_dir / image_name
                if not compressed.exists():
                    store = self._image_store("image_store_url")
                    if store is None:
                        raise PreconditionError(
                            f"{compressed} not found and no image_store_url configured"
                        )
                    store.download(image_name, compressed)
                self.session.advance(BuildState.MEDIA_ACQUIRED)

            with self._step("decompress image"):
                image_path = decompress_image(
                    compressed, settings.work_dir / settings.get("flash_image_name")
                )
                self.session.image_path = image_path
                self.session.advance(BuildState.EXTRACTED)

            with self._step("partition target"):
                self.planner.create_table(device)
                self.session.advance(BuildState.TARGET_PARTITIONED)

            with self._step("create volumes"):
                self.sizer.create_volume_group(partition_path(device, ROOT_PARTITION))
                ledger.push(f"volume group {self.sizer.volume_group}", self.sizer.deactivate)
                snapshot = self.sizer.snapshot()
                self.session.snapshot = snapshot
                plan = self.sizer.plan_sizes(snapshot)
                self.session.sizing = plan
                self.sizer.create_logical_volumes(plan)
                self.sizer.create_filesystems(partition_path(device, BOOT_PARTITION))

            with self._step("attach loop device"):
                entry = self._attach_image(ledger, image_path)
                self.session.advance(BuildState.DEVICE_ATTACHED)

            with self._step("mount image and target"):
                image_mount = self._mount_session(settings.image_mount_dir)
                ledger.push(f"mounts under {image_mount.root_dir}", image_mount.teardown)
                image_mount.attach(
                    partition_path(entry.name, ROOT_PARTITION),
                    partition_path(entry.name, BOOT_PARTITION),
                )
                media_mount = self._mount_session(settings.media_mount_dir)
                ledger.push(f"mounts under {media_mount.root_dir}", media_mount.teardown)
                media_mount.attach(
                    self.sizer.root_path, partition_path(device, BOOT_PARTITION)
                )
                self.session.advance(BuildState.MOUNTED)

            with self._step("copy image to target"):
                image_mount.flash_to(media_mount)

            with self._step("release devices"):
                ledger.close()
                self.session.advance(BuildState.UNMOUNTED)
            self.session.advance(BuildState.FLASHED_TO_TARGET)
        except Exception as error:
            raise self._fail(ledger, error) from error
        except BaseException:
            self._abort(ledger)
            raise

        self.session.advance(BuildState.DONE)
        self.log.success(f"Flashed {image_name} to {device}")
        return self.session

    def recover(self) -> list[str]:
        """Release mounts and loop devices left behind by a crashed run.

        Returns:
            A description of each action taken

        Raises:
            CleanupError: If any leftover resource could not be released
        """
        settings = self.settings
        actions: list[str] = []
        failures: list[Exception] = []

        for root_dir in (settings.media_mount_dir, settings.image_mount_dir):
            backup = root_dir / GUEST_RESOLV_BACKUP
            if is_mountpoint_active(root_dir) and os.path.lexists(backup):
                guest = root_dir / GUEST_RESOLV
                try:
                    if os.path.lexists(guest):
                        os.remove(guest)
                    os.rename(backup, guest)
                    actions.append(f"restored {guest}")
                except OSError as error:
                    failures.append(error)
            for target in (root_dir / "boot" / "firmware", root_dir):
                if not is_mountpoint_active(target):
                    continue
                try:
                    unmount(target)
                    actions.append(f"unmounted {target}")
                except MountError as error:
                    failures.append(error)

        for name in (settings.extract_name, settings.get("flash_image_name")):
            image_path = settings.work_dir / name
            try:
                entry = self.mapper.find_by_backing_file(image_path)
                if entry is None:
                    continue
                self.mapper.detach(entry)
                actions.append(f"detached {entry.name}")
            except (LoopDeviceError, CommandFailedError) as error:
                failures.append(error)

        for action in actions:
            self.log.info(f"Recovery: {action}")
        if failures:
            raise CleanupError(failures)
        if not actions:
            self.log.info("Nothing to recover")
        return actions
