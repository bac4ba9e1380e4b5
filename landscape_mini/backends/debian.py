"""Debian backend: debootstrap, apt and systemd."""

from __future__ import annotations

from typing import TYPE_CHECKING

from landscape_mini.backends.base import EXTRA_USER, LOOPBACK_INTERFACES, Backend
from landscape_mini.storage.commands import run_command


if TYPE_CHECKING:
    from landscape_mini.build.session import BuildSession


BOOTSTRAP_INCLUDE = ("systemd", "systemd-sysv", "dbus")

PACKAGES = (
    "linux-image-amd64",
    "grub-efi-amd64",
    "grub-pc-bin",
    "initramfs-tools",
    "e2fsprogs",
    "zstd",
    "iproute2",
    "iptables",
    "bpftool",
    "ppp",
    "tcpdump",
    "curl",
    "ca-certificates",
    "unzip",
    "sudo",
    "openssh-server",
    "gdisk",
    "cloud-guest-utils",
    "iputils-ping",
    "traceroute",
    "dnsutils",
    "mtr-tiny",
    "nano",
    "vim-tiny",
    "wget",
    "iperf3",
)

DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

# Purged after install; initramfs-tools must stay or linux-image breaks apt
BUILD_ONLY_PACKAGES = (
    "grub-efi-amd64",
    "grub-efi-amd64-bin",
    "grub-efi-amd64-unsigned",
    "grub-pc-bin",
    "grub-common",
    "grub2-common",
    "unzip",
)

MASKED_SERVICES = ("systemd-resolved", "NetworkManager", "wpa_supplicant")

DPKG_NODOC = """\
path-exclude /usr/share/doc/*
path-exclude /usr/share/man/*
path-exclude /usr/share/info/*
path-exclude /usr/share/lintian/*
path-exclude /usr/share/locale/*
path-include /usr/share/locale/en*
"""

INITRAMFS_MODULES = """\
# Storage drivers (virtio for QEMU/KVM, ahci/ata for bare metal)
ext4
virtio_pci
virtio_blk
virtio_scsi
sd_mod
ahci
ata_piix
ata_generic
# EFI partition
vfat
nls_cp437
nls_ascii
# VMware / ESXi storage drivers
vmw_pvscsi
mptspi
# NVMe storage
nvme
# Hyper-V (Azure)
hv_vmbus
hv_storvsc
# Xen (AWS, Oracle Cloud)
xen_blkfront
"""

LOCALE_CLEANUP = """\
apt-get purge -y --auto-remove libc-l10n 2>/dev/null || true
find /usr/share/locale -mindepth 1 -maxdepth 1 \\
    ! -name 'en_US' ! -name 'en' ! -name 'locale-archive' \\
    -exec rm -rf {} + 2>/dev/null || true
find /usr/share/i18n/charmaps -type f ! -name 'UTF-8.gz' -delete 2>/dev/null || true
find /usr/share/i18n/locales -type f \\
    ! -name 'en_US' ! -name 'en_GB' ! -name 'i18n*' ! -name 'iso*' \\
    ! -name 'translit_*' ! -name 'POSIX' \\
    -delete 2>/dev/null || true
GCONV_DIR=/usr/lib/x86_64-linux-gnu/gconv
if [ -d "$GCONV_DIR" ]; then
    find "$GCONV_DIR" -name '*.so' \\
        ! -name 'UTF*' ! -name 'UNICODE*' ! -name 'ASCII*' \\
        ! -name 'ISO8859*' ! -name 'LATIN*' \\
        -delete 2>/dev/null || true
    iconvconfig 2>/dev/null || true
fi
"""

APT_ENV = "export DEBIAN_FRONTEND=noninteractive\n"


class DebianBackend(Backend):
    """Debian minbase with systemd."""

    name = "debian"
    chroot_shell = "/bin/bash"
    extra_tools = ("debootstrap",)

    def bootstrap(self, session: BuildSession) -> None:
        config = self.config
        self.log.info(f"Running debootstrap --variant=minbase ({config.debian_release})")
        run_command(
            [
                "debootstrap",
                "--variant=minbase",
                f"--include={','.join(BOOTSTRAP_INCLUDE)}",
                config.debian_release,
                str(session.paths.rootfs_dir),
                config.apt_mirror,
            ]
        )

    def configure(self, session: BuildSession) -> None:
        config = self.config
        session.mount_pseudo_filesystems()

        mirror, release = config.apt_mirror, config.debian_release
        components = "main contrib non-free non-free-firmware"
        self.write_file(
            session,
            "etc/apt/sources.list",
            "".join(
                f"deb {mirror} {suite} {components}\n"
                for suite in (release, f"{release}-updates", f"{release}-backports")
            ),
        )
        self.write_hostname(session)
        self.write_fstab(session)

        self.log.info("Configuring dpkg path exclusions and initramfs modules")
        self.write_file(session, "etc/dpkg/dpkg.cfg.d/01-nodoc", DPKG_NODOC)
        self.write_file(session, "etc/initramfs-tools/conf.d/modules-dep", "MODULES=dep\n")
        self.write_file(session, "etc/initramfs-tools/modules", INITRAMFS_MODULES)

        self.log.info(f"Installing {len(PACKAGES)} packages (this may take a while)")
        self.run_in_chroot(
            session,
            APT_ENV
            + "apt-get update -y\n"
            + f"apt-get install -y --no-install-recommends {' '.join(PACKAGES)}\n",
        )

        self.write_grub_defaults(
            session,
            cmdline_default="quiet console=tty0 console=ttyS0,115200n8",
            cmdline="net.ifnames=0 biosdevname=0 nomodeset",
        )
        self.install_grub(session, "update-grub")

        self.log.info(f"Setting timezone to {config.timezone}, locale {config.locale}")
        self.run_in_chroot(session, f"ln -sf /usr/share/zoneinfo/{config.timezone} /etc/localtime")
        self.write_file(session, "etc/default/locale", f"LANG={config.locale}\n")

        self.log.info(f"Setting root password and creating user '{EXTRA_USER}'")
        self.set_password(session, "root")
        self.run_in_chroot(
            session, f"id {EXTRA_USER} >/dev/null 2>&1 || useradd -m -s /bin/bash -G sudo {EXTRA_USER}"
        )
        self.set_password(session, EXTRA_USER)

        self.run_in_chroot(session, "systemctl enable ssh.service")
        self.allow_root_ssh_login(session)

        self.log.info("Masking conflicting network services")
        self.run_in_chroot(
            session,
            "systemctl disable systemd-resolved 2>/dev/null || true\n"
            + "".join(f"systemctl mask {unit} 2>/dev/null || true\n" for unit in MASKED_SERVICES),
        )

        self.write_file(session, "etc/network/interfaces", LOOPBACK_INTERFACES)
        self.write_resolv_conf(session)

    def install_services(self, session: BuildSession) -> None:
        for unit in ("landscape-router.service", "expand-rootfs.service"):
            self.install_asset(session, f"etc/systemd/system/{unit}")
            self.log.info(f"Enabling {unit}")
            self.run_in_chroot(session, f"systemctl enable {unit}")

    def install_docker(self, session: BuildSession) -> None:
        release = self.config.debian_release
        self.log.info("Adding Docker apt repository")
        self.run_in_chroot(
            session,
            APT_ENV
            + "apt-get install -y --no-install-recommends ca-certificates curl\n"
            + "install -m 0755 -d /etc/apt/keyrings\n"
            + "curl -fsSL https://download.docker.com/linux/debian/gpg -o /etc/apt/keyrings/docker.asc\n"
            + "chmod a+r /etc/apt/keyrings/docker.asc\n",
        )
        arch = self.run_in_chroot(session, "dpkg --print-architecture").stdout.strip() or "amd64"
        self.write_file(
            session,
            "etc/apt/sources.list.d/docker.list",
            f"deb [arch={arch} signed-by=/etc/apt/keyrings/docker.asc] "
            f"https://download.docker.com/linux/debian {release} stable\n",
        )

        self.log.info("Installing Docker packages")
        self.run_in_chroot(
            session,
            APT_ENV
            + "apt-get update -y\n"
            + f"apt-get install -y --no-install-recommends {' '.join(DOCKER_PACKAGES)}\n",
        )
        self.write_docker_daemon_config(session)
        self.run_in_chroot(session, "systemctl enable docker.service")

    def cleanup(self, session: BuildSession) -> None:
        self.log.info("Rebuilding smaller initramfs")
        self.run_in_chroot(
            session,
            self.kernel_version_script() + 'update-initramfs -u -k "$KVER" 2>/dev/null || true\n',
        )

        self.log.info("Cleaning locale and i18n data")
        self.run_in_chroot(session, APT_ENV + LOCALE_CLEANUP)

        self.log.info("Purging build-only packages")
        self.run_in_chroot(
            session,
            APT_ENV
            + f"dpkg --purge --force-depends {' '.join(BUILD_ONLY_PACKAGES)} 2>/dev/null || true\n"
            + "apt-get -y --purge autoremove 2>/dev/null || true\n",
        )

        self.log.info("Cleaning apt caches")
        self.run_in_chroot(
            session,
            "apt-get clean\n"
            "rm -rf /var/lib/apt/lists/*\n"
            # Dpkg and Debconf perl modules keep apt and dpkg-reconfigure working
            "find /usr/share/perl5 -mindepth 1 -maxdepth 1 "
            "! -name 'Dpkg' ! -name 'Dpkg.pm' ! -name 'Debconf' "
            "-exec rm -rf {} + 2>/dev/null || true\n",
        )
