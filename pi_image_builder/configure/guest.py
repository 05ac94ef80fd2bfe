"""Kubernetes node configuration of a mounted guest root.

Boot firmware settings, kernel modules, sysctls and fstab are rendered from
templates and written only when changed; packages are installed inside the
guest with systemd-nspawn, each command under its own deadline.
"""

from __future__ import annotations

import gzip
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

from pi_image_builder.logging import LoggerFactory
from pi_image_builder.storage.lvm import BOOT_LABEL, ROOT_LABEL
from pi_image_builder.storage.naming import mapper_path

from .container import run_in_container
from .files import RenderRequest, guest_path, idempotent_write
from .templates import TemplateRepository

if TYPE_CHECKING:
    from loguru import Logger

    from pi_image_builder.config.settings import BuildSettings

KERNEL_ARGUMENTS = (
    "dwc_otg.lpm_enable=0",
    "console=serial0,115200",
    "console=tty1",
    f"root=LABEL={ROOT_LABEL}",
    "rootfstype=ext4",
    "elevator=deadline",
    "rootwait",
    "fixrtc",
    "quiet",
    "splash",
    "cgroup_enable=memory",
    "swapaccount=1",
    "cgroup_memory=1",
    "cgroup_enable=cpuset",
)

KUBERNETES_SYSCTLS = {
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.ipv4.ip_forward": "1",
}

CILIUM_SYSCTLS = {
    "net.ipv4.conf.lxc*.rp_filter": "0",
    "net.ipv4.conf.all.rp_filter": "0",
    "net.ipv4.conf.default.rp_filter": "0",
}

DECOMPRESS_SCRIPT = "boot/auto_decompress_kernel"
COMPRESSED_KERNEL = "boot/firmware/vmlinuz"
DECOMPRESSED_KERNEL = "boot/firmware/vmlinux"


def decompress_kernel(root: str | Path) -> bool:
    """Write an uncompressed copy of the guest kernel next to vmlinuz.

    Returns:
        True if vmlinux was written, False if the guest has no compressed
        kernel or vmlinux is already current
    """
    source = guest_path(root, COMPRESSED_KERNEL)
    if not source.exists():
        return False
    with gzip.open(source, "rb") as compressed:
        kernel = compressed.read()
    return idempotent_write(guest_path(root, DECOMPRESSED_KERNEL), kernel)


class GuestConfigurator:
    """Apply node configuration to a mounted guest root."""

    def __init__(
        self,
        templates: Optional[TemplateRepository] = None,
        *,
        packages: Sequence[str] = (),
        kernel_modules: Sequence[str] = ("br_netfilter", "overlay"),
        volume_group: str = "rootvg",
        root_volume: str = "rootlv",
        csi_volume: str = "csilv",
        container_runtime_volume: str = "containerdlv",
        command_timeout: Optional[float] = None,
        log: Logger | None = None,
    ):
        self.templates = templates or TemplateRepository()
        self.packages = list(packages)
        self.kernel_modules = list(kernel_modules)
        self.volume_group = volume_group
        self.root_volume = root_volume
        self.csi_volume = csi_volume
        self.container_runtime_volume = container_runtime_volume
        self.command_timeout = command_timeout
        self.log = log or LoggerFactory.for_configure()

    @classmethod
    def from_settings(cls, settings: BuildSettings, **kwargs) -> GuestConfigurator:
        return cls(
            packages=settings.get("guest_packages") or [],
            kernel_modules=settings.get("kernel_modules") or [],
            volume_group=settings.get("volume_group"),
            root_volume=settings.get("root_volume"),
            csi_volume=settings.get("csi_volume"),
            container_runtime_volume=settings.get("container_runtime_volume"),
            command_timeout=settings.command_timeout,
            **kwargs,
        )

    def render_requests(self) -> list[RenderRequest]:
        return [
            RenderRequest(
                "cmdline.txt.j2",
                "boot/firmware/cmdline.txt",
                {"kernel_arguments": KERNEL_ARGUMENTS},
            ),
            RenderRequest(
                "usercfg.txt.j2", "boot/firmware/usercfg.txt", {"firmware_options": []}
            ),
            RenderRequest("auto_decompress_kernel.j2", DECOMPRESS_SCRIPT, mode=0o544),
            RenderRequest(
                "999_decompress_rpi_kernel.j2",
                "etc/apt/apt.conf.d/999_decompress_rpi_kernel",
                {"decompress_script": f"/{DECOMPRESS_SCRIPT}"},
            ),
            RenderRequest(
                "modules-load-k8s.conf.j2",
                "etc/modules-load.d/k8s.conf",
                {"kernel_modules": self.kernel_modules},
            ),
            RenderRequest(
                "sysctl.conf.j2",
                "etc/sysctl.d/10-kubernetes.conf",
                {"sysctls": KUBERNETES_SYSCTLS},
            ),
            RenderRequest(
                "sysctl.conf.j2",
                "etc/sysctl.d/99-override_cilium_rp_filter.conf",
                {"sysctls": CILIUM_SYSCTLS},
            ),
            RenderRequest(
                "fstab.j2",
                "etc/fstab",
                {
                    "root_device": mapper_path(self.volume_group, self.root_volume),
                    "boot_label": BOOT_LABEL,
                    "container_runtime_device": mapper_path(
                        self.volume_group, self.container_runtime_volume
                    ),
                    "container_runtime_mount": "/var/lib/containerd",
                    "csi_device": mapper_path(self.volume_group, self.csi_volume),
                    "csi_mount": "/var/lib/csi",
                },
            ),
        ]

    def write_files(self, root: str | Path) -> list[Path]:
        """Render every request into ``root``.

        Returns:
            The files whose content changed
        """
        changed = []
        for request in self.render_requests():
            path = guest_path(root, request.destination)
            data = self.templates.render(request.template, request.data)
            if idempotent_write(path, data, request.mode):
                self.log.debug(f"Wrote {request.destination}")
                changed.append(path)
        return changed

    def install_packages(self, root: str | Path) -> None:
        if not self.packages:
            return
        self.log.info(f"Installing {len(self.packages)} package(s) in guest")
        run_in_container(root, "apt-get", "update", timeout=self.command_timeout)
        run_in_container(
            root,
            "apt-get",
            "install",
            "-y",
            *self.packages,
            timeout=self.command_timeout,
        )

    def apply(self, root: str | Path) -> None:
        changed = self.write_files(root)
        self.log.info(f"Guest configuration written ({len(changed)} file(s) changed)")
        if decompress_kernel(root):
            self.log.info("Decompressed guest kernel")
        self.install_packages(root)
