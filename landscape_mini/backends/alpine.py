"""Alpine backend: apk.static, OpenRC and mkinitfs.

Differences from the Debian backend:
    - apk instead of apt, OpenRC instead of systemd
    - The payload is the musl build of the web server
    - mkinitfs builds the initramfs, busybox getty drives the serial console
    - bpftool drags in perf, python3 and binutils; cleanup force-deletes them
"""

from __future__ import annotations

import os
import tarfile
from pathlib import Path
from typing import TYPE_CHECKING

from landscape_mini.backends.base import EXTRA_USER, LOOPBACK_INTERFACES, Backend
from landscape_mini.build.download import download_apk_tools
from landscape_mini.exceptions import DownloadError
from landscape_mini.storage.commands import run_command


if TYPE_CHECKING:
    from landscape_mini.build.session import BuildSession


APK_STATIC_MEMBER = "sbin/apk.static"

PACKAGES = (
    "linux-lts", "linux-firmware-none",
    "grub-efi", "grub-bios",
    "mkinitfs",
    "e2fsprogs", "e2fsprogs-extra",
    "zstd",
    "iproute2",
    "iptables", "ip6tables",
    "bpftool",
    "ppp",
    "tcpdump",
    "curl",
    "ca-certificates",
    "unzip",
    "sudo",
    "openssh",
    "sgdisk",
    "cloud-utils-growpart",
    "iputils", "bind-tools", "mtr",
    "libgcc", "zlib", "zstd-libs",
    "openrc", "busybox-openrc", "busybox-mdev-openrc",
    "losetup",
    "findutils",
    "dosfstools",
    "util-linux",
    "nano",
    "iperf3",
)

DOCKER_PACKAGES = ("docker", "docker-cli-compose", "docker-cli-buildx")

MKINITFS_FEATURES = "ata base ext4 nvme scsi virtio xen"

RUNLEVELS = {
    "sysinit": ("devfs", "dmesg", "mdev", "hwdrivers"),
    "boot": ("hwclock", "modules", "sysctl", "hostname", "bootmisc", "syslog", "networking"),
    "shutdown": ("mount-ro", "killprocs", "savecache"),
}
OPTIONAL_SERVICES = frozenset({"syslog"})

SERIAL_GETTY = "ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100"

INITTAB = f"""\
::sysinit:/sbin/openrc sysinit
::sysinit:/sbin/openrc boot
::wait:/sbin/openrc default
tty1::respawn:/sbin/getty 38400 tty1
{SERIAL_GETTY}
::ctrlaltdel:/sbin/reboot
::shutdown:/sbin/openrc shutdown
"""

DHCP_FALLBACK = """\

# Fallback DHCP on eth0 keeps SSH reachable before landscape-router has
# configured the interfaces (first boot with --auto).
auto eth0
iface eth0 inet dhcp
"""

# perf, binutils, python3 and slang come in with bpftool and are not needed
BPFTOOL_BLOAT = (
    "usr/bin/perf", "usr/bin/trace", "usr/bin/cpupower",
    "usr/share/perf-core", "usr/libexec/perf-core",
    "usr/bin/dwp", "usr/bin/ld", "usr/bin/ld.bfd", "usr/bin/as",
    "usr/bin/readelf", "usr/bin/objdump", "usr/bin/objcopy",
    "usr/bin/strip", "usr/bin/strings", "usr/bin/nm", "usr/bin/addr2line",
    "usr/bin/size", "usr/bin/ranlib", "usr/bin/ar", "usr/bin/elfedit",
    "usr/bin/gprof", "usr/bin/c++filt",
    "usr/x86_64-alpine-linux-musl",
    "usr/share/slsh",
)
BPFTOOL_BLOAT_GLOBS = (
    "usr/lib/python3*", "usr/lib/libpython3*", "usr/bin/python3*", "usr/lib/libslang.so*",
)

GRUB_SBIN_TOOLS = (
    "mkrescue", "fstest", "render-label", "file", "syslinux2cfg",
    "sparc64-setup", "macbless", "ofpathname", "mkstandalone",
)


def extract_apk_static(package: Path, dest: Path) -> Path:
    """Pull sbin/apk.static out of an apk-tools-static package.

    An .apk is a series of concatenated gzip'd tar segments, so the archive
    is read with ignore_zeros to get past the first segment.

    Raises:
        DownloadError: If the package has no apk.static member
    """
    try:
        with tarfile.open(package, "r:gz", ignore_zeros=True) as archive:
            member = archive.getmember(APK_STATIC_MEMBER)
            source = archive.extractfile(member)
            if source is None:
                raise KeyError(APK_STATIC_MEMBER)
            dest.parent.mkdir(parents=True, exist_ok=True)
            with source, open(dest, "wb") as handle:
                handle.write(source.read())
    except (KeyError, tarfile.TarError, OSError) as error:
        raise DownloadError(str(package), f"cannot extract {APK_STATIC_MEMBER}: {error}") from error
    dest.chmod(0o755)
    return dest


class AlpineBackend(Backend):
    """Alpine alpine-base with OpenRC."""

    name = "alpine"
    chroot_shell = "/bin/sh"

    @property
    def repositories(self) -> str:
        base = f"{self.config.alpine_mirror}/{self.config.alpine_release}"
        return f"{base}/main\n{base}/community\n"

    def apk_static_path(self, session: BuildSession) -> Path:
        return session.paths.download_dir / "apk-tools" / APK_STATIC_MEMBER

    def ensure_apk_static(self, session: BuildSession) -> Path:
        apk_static = self.apk_static_path(session)
        if apk_static.is_file() and os.access(apk_static, os.X_OK):
            self.log.info("[OK] apk-tools-static already cached")
            return apk_static
        package = apk_static.parent.parent / "apk-tools-static.apk"
        download_apk_tools(self.config, package)
        return extract_apk_static(package, apk_static)

    def bootstrap(self, session: BuildSession) -> None:
        apk_static = self.ensure_apk_static(session)
        repositories = self.write_file(session, "etc/apk/repositories", self.repositories)

        self.log.info(f"Running apk.static --initdb add alpine-base ({self.config.alpine_release})")
        run_command(
            [
                str(apk_static),
                "--root", str(session.paths.rootfs_dir),
                "--initdb",
                "--update-cache",
                "--allow-untrusted",
                "--repositories-file", str(repositories),
                "add", "alpine-base",
            ]
        )

    def configure(self, session: BuildSession) -> None:
        config = self.config
        session.mount_pseudo_filesystems()

        # apk needs working DNS inside the chroot while packages install
        host_resolv = Path("/etc/resolv.conf")
        try:
            resolv = host_resolv.read_text(encoding="utf-8")
        except OSError:
            resolv = "nameserver 8.8.8.8\n"
        self.write_file(session, "etc/resolv.conf", resolv)

        self.write_file(session, "etc/apk/repositories", self.repositories)
        self.write_hostname(session)
        self.write_fstab(session)

        self.log.info(f"Installing {len(PACKAGES)} packages (this may take a while)")
        self.run_in_chroot(session, f"apk update\napk add --no-cache {' '.join(PACKAGES)}\n")

        self.write_file(session, "etc/mkinitfs/mkinitfs.conf", f'features="{MKINITFS_FEATURES}"\n')
        self.rebuild_initramfs(session)

        self.write_grub_defaults(
            session,
            cmdline_default="quiet console=ttyS0,115200n8 console=tty0",
            cmdline=(
                "rootfstype=ext4 modules=ext4,sd_mod,vmw_pvscsi,mptspi,mptbase,mptscsih "
                "net.ifnames=0 biosdevname=0 nomodeset"
            ),
        )
        self.install_grub(session, "grub-mkconfig -o /boot/grub/grub.cfg")

        self.log.info(f"Setting timezone to {config.timezone}, locale {config.locale}")
        self.run_in_chroot(
            session,
            "apk add tzdata 2>/dev/null || true\n"
            f"cp /usr/share/zoneinfo/{config.timezone} /etc/localtime 2>/dev/null || true\n"
            "apk del tzdata 2>/dev/null || true\n",
        )
        self.write_file(session, "etc/timezone", f"{config.timezone}\n")
        self.write_file(
            session,
            "etc/profile.d/locale.sh",
            f"export LANG={config.locale}\nexport LC_ALL={config.locale}\n",
        )

        self.log.info(f"Setting root password and creating user '{EXTRA_USER}'")
        self.set_password(session, "root")
        self.run_in_chroot(
            session, f"id {EXTRA_USER} >/dev/null 2>&1 || adduser -D -s /bin/sh -G wheel {EXTRA_USER}"
        )
        self.set_password(session, EXTRA_USER)
        self.write_file(session, "etc/sudoers.d/wheel", "%wheel ALL=(ALL) ALL\n", mode=0o440)

        self.run_in_chroot(session, "rc-update add sshd default")
        self.allow_root_ssh_login(session)
        self.enable_runlevels(session)

        # nf_conntrack must be loaded before sysctl applies the conntrack tuning
        self.append_line(session, "etc/modules", "nf_conntrack")

        self.write_file(session, "etc/network/interfaces", LOOPBACK_INTERFACES + DHCP_FALLBACK)
        self.write_resolv_conf(session)
        self.enable_serial_console(session)

    def enable_runlevels(self, session: BuildSession) -> None:
        self.log.info("Enabling OpenRC services")
        lines = []
        for level, services in RUNLEVELS.items():
            for service in services:
                command = f"rc-update add {service} {level}"
                if service in OPTIONAL_SERVICES:
                    command += " 2>/dev/null || true"
                lines.append(command)
        self.run_in_chroot(session, "\n".join(lines) + "\n")

    def enable_serial_console(self, session: BuildSession) -> None:
        inittab = session.rootfs_path("etc/inittab")
        if not inittab.is_file():
            self.write_file(session, "etc/inittab", INITTAB)
            return
        lines = inittab.read_text(encoding="utf-8").splitlines()
        lines = [line[1:] if line.startswith("#ttyS0::respawn") else line for line in lines]
        if not any(line.startswith("ttyS0::") for line in lines):
            lines.append(SERIAL_GETTY)
        inittab.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def rebuild_initramfs(self, session: BuildSession) -> None:
        self.log.info("Building initramfs")
        self.run_in_chroot(
            session,
            self.kernel_version_script("lts")
            + 'if [ -n "$KVER" ]; then mkinitfs -c /etc/mkinitfs/mkinitfs.conf "$KVER"; fi\n',
        )

    def install_services(self, session: BuildSession) -> None:
        for service, runlevel in (("landscape-router", "default"), ("expand-rootfs", "boot")):
            self.install_asset(session, f"etc/init.d/{service}", mode=0o755)
            self.log.info(f"Enabling {service} service")
            self.run_in_chroot(session, f"rc-update add {service} {runlevel}")

    def install_docker(self, session: BuildSession) -> None:
        self.log.info("Installing Docker packages")
        self.run_in_chroot(session, f"apk add {' '.join(DOCKER_PACKAGES)}")
        self.write_docker_daemon_config(session)
        self.run_in_chroot(session, "rc-update add docker default")

    def cleanup(self, session: BuildSession) -> None:
        self.log.info("Removing bloated bpftool dependencies")
        self.remove_paths(session, *BPFTOOL_BLOAT)
        root = session.rootfs_path(".")
        for pattern in BPFTOOL_BLOAT_GLOBS:
            self.remove_paths(session, *(str(p.relative_to(root)) for p in root.glob(pattern)))

        self.log.info("Removing unnecessary boot files and GRUB utilities")
        for pattern in ("boot/System.map-*", "boot/config-*", "usr/bin/grub-*"):
            self.remove_paths(session, *(str(p.relative_to(root)) for p in root.glob(pattern)))
        self.remove_paths(
            session,
            "boot/grub/fonts",
            "usr/share/grub",
            *(f"usr/sbin/grub-{tool}" for tool in GRUB_SBIN_TOOLS),
        )

        self.rebuild_initramfs(session)

        self.log.info("Cleaning apk cache")
        self.run_in_chroot(session, "apk cache clean 2>/dev/null || true\nrm -rf /var/cache/apk/*\n")
