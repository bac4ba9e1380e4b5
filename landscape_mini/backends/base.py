"""Backend capability interface shared by the Debian and Alpine builds.

A backend knows how to turn an empty, mounted root filesystem into a
bootable system for one distribution. The orchestrator only talks to this
interface; the shared plumbing (chroot execution, confined file writes,
fstab, hostname, credentials, GRUB) lives here so both variants produce the
same layout.

Every file written into the image goes through ``session.rootfs_path()``,
which refuses paths outside the mounted root filesystem.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from landscape_mini.domain import BuildConfig
from landscape_mini.exceptions import DependencyMissingError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import missing_commands, run_command
from landscape_mini.storage.filesystem import read_uuid


if TYPE_CHECKING:
    from landscape_mini.build.session import BuildSession


ASSETS_DIR = Path(__file__).resolve().parent.parent / "rootfs"

HOSTNAME = "landscape"
EXTRA_USER = "ld"
FALLBACK_NAMESERVER = "114.114.114.114"

# Host tools every build needs, whatever the base system
COMMON_TOOLS = (
    "chroot",
    "losetup",
    "parted",
    "sfdisk",
    "sgdisk",
    "mkfs.vfat",
    "mkfs.ext4",
    "blkid",
    "e2fsck",
    "resize2fs",
    "dumpe2fs",
    "mount",
    "umount",
    "strip",
)

GRUB_EFI_INSTALL = (
    "grub-install --target=x86_64-efi --efi-directory=/boot/efi "
    "--bootloader-id=landscape --removable --no-nvram"
)

DOCKER_DAEMON_CONFIG = {
    "bip": "172.18.1.1/24",
    "dns": ["172.18.1.1"],
}

LOOPBACK_INTERFACES = """\
# All network functions are managed by Landscape Router
auto lo
iface lo inet loopback
"""


class Backend(ABC):
    """Distribution-specific build steps.

    Subclasses set ``name`` and ``chroot_shell`` and implement the five
    capability operations. Any exception they raise is wrapped by the
    orchestrator into a BackendOperationError naming the operation.
    """

    name: str = ""
    chroot_shell: str = "/bin/sh"
    extra_tools: tuple[str, ...] = ()

    def __init__(self, config: BuildConfig):
        self.config = config
        self.log = LoggerFactory.for_backend(self.name)

    # ------------------------------------------------------------------
    # Capability operations
    # ------------------------------------------------------------------

    @property
    def required_tools(self) -> tuple[str, ...]:
        tools = COMMON_TOOLS + self.extra_tools
        if self.config.output_format.wants_vmdk:
            tools += ("qemu-img",)
        return tools

    def check_dependencies(self) -> None:
        """Verify every host tool this backend drives is on PATH.

        Raises:
            DependencyMissingError: Listing every missing tool
        """
        missing = missing_commands(self.required_tools)
        if missing:
            raise DependencyMissingError(missing, self.name)
        self.log.debug(f"All {len(self.required_tools)} host tools present")

    @abstractmethod
    def bootstrap(self, session: BuildSession) -> None:
        """Populate the empty mounted rootfs with a minimal base system."""

    @abstractmethod
    def configure(self, session: BuildSession) -> None:
        """Make the image independently bootable."""

    @abstractmethod
    def install_services(self, session: BuildSession) -> None:
        """Register the payload service and the first-boot expansion service."""

    @abstractmethod
    def install_docker(self, session: BuildSession) -> None:
        """Install and enable the container runtime."""

    @abstractmethod
    def cleanup(self, session: BuildSession) -> None:
        """Variant-specific trimming before the image is shrunk."""

    # ------------------------------------------------------------------
    # Chroot and file helpers
    # ------------------------------------------------------------------

    def run_in_chroot(
        self,
        session: BuildSession,
        script: str,
        check: bool = True,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run a shell script inside the image root filesystem.

        The script runs under ``set -e`` so a failing command aborts it;
        best-effort commands end in ``|| true``.

        Raises:
            subprocess.CalledProcessError: If check is True and the script fails
        """
        env = dict(os.environ)
        env.update({"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8"})
        return run_command(
            ["chroot", str(session.paths.rootfs_dir), self.chroot_shell, "-c", "set -e\n" + script],
            check=check,
            input_text=input_text,
            env=env,
        )

    def write_file(
        self,
        session: BuildSession,
        relative: str,
        content: str,
        mode: Optional[int] = None,
    ) -> Path:
        """Write a text file inside the rootfs, replacing any symlink there."""
        path = session.rootfs_path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_symlink():
            path.unlink()
        path.write_text(content, encoding="utf-8")
        if mode is not None:
            path.chmod(mode)
        return path

    def append_line(self, session: BuildSession, relative: str, line: str) -> Path:
        path = session.rootfs_path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line.rstrip("\n") + "\n")
        return path

    def install_asset(
        self,
        session: BuildSession,
        asset: str,
        relative: Optional[str] = None,
        mode: Optional[int] = None,
    ) -> Path:
        """Copy a packaged rootfs asset to the same (or given) path in the image."""
        source = ASSETS_DIR / asset
        target = session.rootfs_path(relative or asset)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink():
            target.unlink()
        shutil.copyfile(source, target)
        if mode is not None:
            target.chmod(mode)
        self.log.debug(f"Installed {asset}")
        return target

    def remove_paths(self, session: BuildSession, *relatives: str) -> None:
        """Delete files or trees inside the rootfs; missing paths are ignored."""
        for relative in relatives:
            path = session.rootfs_path(relative)
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path, ignore_errors=True)
            elif path.exists() or path.is_symlink():
                path.unlink()

    # ------------------------------------------------------------------
    # Shared configuration steps
    # ------------------------------------------------------------------

    def write_hostname(self, session: BuildSession) -> None:
        self.write_file(session, "etc/hostname", f"{HOSTNAME}\n")
        self.write_file(
            session,
            "etc/hosts",
            "127.0.0.1   localhost\n"
            f"127.0.1.1   {HOSTNAME}\n"
            "::1         localhost ip6-localhost ip6-loopback\n",
        )

    def write_fstab(self, session: BuildSession) -> None:
        binding = session.require_loop()
        root_uuid = read_uuid(binding.partition_device(3))
        efi_uuid = read_uuid(binding.partition_device(2))
        self.log.info(f"Writing /etc/fstab (root={root_uuid}, efi={efi_uuid})")
        self.write_file(
            session,
            "etc/fstab",
            "# <filesystem>                          <mount>     <type>  <options>           <dump>  <pass>\n"
            f"UUID={root_uuid}   /           ext4    errors=remount-ro   0       1\n"
            f"UUID={efi_uuid}    /boot/efi   vfat    umask=0077          0       2\n",
        )

    def write_grub_defaults(self, session: BuildSession, cmdline_default: str, cmdline: str) -> None:
        self.write_file(
            session,
            "etc/default/grub",
            "GRUB_DEFAULT=0\n"
            "GRUB_TIMEOUT=3\n"
            'GRUB_DISTRIBUTOR="Landscape"\n'
            f'GRUB_CMDLINE_LINUX_DEFAULT="{cmdline_default}"\n'
            f'GRUB_CMDLINE_LINUX="{cmdline}"\n'
            "GRUB_TERMINAL=console\n",
        )

    def install_grub(self, session: BuildSession, config_command: str) -> None:
        """Install GRUB for UEFI (removable path) and legacy BIOS boot."""
        binding = session.require_loop()
        self.log.info("Installing GRUB (x86_64-efi + i386-pc)")
        self.run_in_chroot(
            session,
            f"{GRUB_EFI_INSTALL}\n"
            f"grub-install --target=i386-pc {binding.device}\n"
            f"{config_command}\n",
        )

    def set_password(self, session: BuildSession, user: str) -> None:
        # chpasswd reads stdin so the credential never appears in a command line
        self.run_in_chroot(session, "chpasswd", input_text=f"{user}:{self.config.root_password}\n")

    def allow_root_ssh_login(self, session: BuildSession) -> None:
        self.write_file(session, "etc/ssh/sshd_config.d/root-login.conf", "PermitRootLogin yes\n")

    def write_resolv_conf(self, session: BuildSession) -> None:
        self.write_file(session, "etc/resolv.conf", f"nameserver {FALLBACK_NAMESERVER}\n")

    def write_docker_daemon_config(self, session: BuildSession) -> None:
        self.write_file(
            session, "etc/docker/daemon.json", json.dumps(DOCKER_DAEMON_CONFIG, indent=4) + "\n"
        )

    def kernel_version_script(self, filter_pattern: str = "") -> str:
        """Shell snippet setting $KVER to the installed kernel version."""
        listing = "ls /lib/modules/ 2>/dev/null"
        if filter_pattern:
            return (
                f"KVER=$({listing} | grep {filter_pattern} | head -1)\n"
                f'if [ -z "$KVER" ]; then KVER=$({listing} | head -1); fi\n'
            )
        return f"KVER=$({listing} | head -1)\n"
