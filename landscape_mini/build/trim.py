"""Root filesystem trimming shared by every backend (phase 7).

Order matters:
    1. trim_rootfs(): payload strip, kernel modules, GRUB leftovers, SSH host
       keys, binary strip (chroot still usable)
    2. Backend.cleanup()
    3. finish_trim(): udev hwdb, docs, logs and temp files
    4. remove_journal(): only once the pseudo filesystems and the ESP are
       unmounted
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import run_command


if TYPE_CHECKING:
    from landscape_mini.backends import Backend
    from landscape_mini.build.session import BuildSession


log = LoggerFactory.for_build()

PAYLOAD_BINARY = "root/landscape-webserver"

REMOVED_TOP_LEVEL = ("sound",)

# drivers/ keeps net, virtio, block, tty, pci, hv and char (hw_random is the VM entropy source)
REMOVED_DRIVERS = (
    "media", "gpu", "infiniband", "iio", "comedi", "staging", "hid", "input", "video",
    "bluetooth", "usb", "platform", "md", "mtd", "misc", "target",
    "accel", "mmc", "isdn", "edac", "crypto",
    "nfc", "firewire", "thunderbolt", "ufs", "atm", "vfio",
    "leds", "vdpa", "ntb", "dma", "accessibility", "gpio", "pinctrl", "pcmcia",
    "spi", "memstick", "power", "soundwire", "ssb", "parport", "uio",
    "nvdimm", "rpmsg", "bcma", "auxdisplay", "cdrom", "mfd", "gnss", "dca", "mux",
    "pwm", "powercap", "soc", "regulator", "extcon", "dax", "devfreq",
)

REMOVED_NET_DRIVERS = (
    "can", "wwan", "arcnet", "fddi", "hamradio", "ieee802154", "wan", "wireless",
    "dsa", "fjes", "hippi", "plip", "slip", "thunderbolt", "xen-netback",
    "mdio", "pcs", "ipvlan",
)

# Common physical and cloud NIC vendors
KEPT_ETHERNET_VENDORS = frozenset({
    "intel", "realtek", "broadcom", "amazon", "google", "mellanox", "microsoft",
    "aquantia", "amd", "huawei", "marvell", "atheros", "cavium", "chelsio",
})

# net/ keeps core, ipv4, ipv6, netfilter, bridge, sched, 8021q, tls, xfrm, vmw_vsock
REMOVED_NET = (
    "bluetooth", "mac80211", "wireless", "sunrpc", "ceph", "tipc", "nfc", "rxrpc", "smc", "sctp",
    "atm", "dccp", "ieee802154", "mac802154", "6lowpan", "9p", "openvswitch",
    "rds", "l2tp", "phonet", "can", "x25", "appletalk", "rfkill", "lapb", "nsh",
)

# fs/ keeps ext4, jbd2, fat, nls, fuse, overlay
REMOVED_FS = (
    "bcachefs", "btrfs", "xfs", "ocfs2", "f2fs", "jfs", "reiserfs", "gfs2", "nilfs2", "orangefs",
    "coda", "smb", "nfs", "nfsd", "ceph", "ubifs", "afs", "ntfs3", "dlm", "jffs2", "udf", "netfs",
    "hfsplus", "hfs", "hpfs", "exfat", "ufs", "ext2", "ecryptfs", "squashfs", "sysv", "minix",
    "isofs", "vboxsf", "omfs", "efs", "romfs", "nfs_common", "lockd", "cachefiles", "9p",
)

EMPTIED_DIRS = (
    "usr/share/doc",
    "usr/share/man",
    "usr/share/info",
    "usr/share/lintian",
    "usr/share/bash-completion",
    "usr/share/common-licenses",
    "tmp",
    "var/tmp",
)

STRIP_BINARIES = (
    "find /usr/bin /usr/sbin /usr/lib -type f "
    "\\( -name '*.so*' -o -executable \\) "
    "-exec strip --strip-unneeded {} + 2>/dev/null || true"
)


def _rmtree(path: Path) -> bool:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
        return True
    return False


def _empty_dir(path: Path) -> None:
    if not path.is_dir():
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink(missing_ok=True)


def strip_payload(session: BuildSession) -> None:
    binary = session.rootfs_path(PAYLOAD_BINARY)
    if not binary.is_file():
        return
    before = binary.stat().st_size
    run_command(["strip", "--strip-unneeded", str(binary)], check=False)
    after = binary.stat().st_size
    log.info(f"Stripped payload binary: {before // (1024 * 1024)}M -> {after // (1024 * 1024)}M")


def _confined(session: BuildSession, path: Path) -> Path | None:
    """Map a path found under the rootfs through rootfs_path(), or None if it escapes."""
    root = session.rootfs_path(".")
    try:
        return session.rootfs_path(path.relative_to(root))
    except ValueError:
        log.warning(f"Skipping {path}: it resolves outside the root filesystem")
        return None


def find_kernel_dir(session: BuildSession) -> Path | None:
    root = session.rootfs_path(".")
    for pattern in ("usr/lib/modules/*/kernel", "lib/modules/*/kernel"):
        for match in sorted(root.glob(pattern)):
            kernel_dir = _confined(session, match)
            if kernel_dir is not None:
                return kernel_dir
    return None


def remove_kernel_modules(session: BuildSession, backend: Backend) -> int:
    """Delete module subtrees a headless VM router never loads, then run depmod.

    Returns:
        Number of subtrees removed
    """
    kernel_dir = find_kernel_dir(session)
    if kernel_dir is None:
        log.warning("No kernel module directory found, skipping module trimming")
        return 0

    targets = [kernel_dir / name for name in REMOVED_TOP_LEVEL]
    targets += [kernel_dir / "drivers" / name for name in REMOVED_DRIVERS]
    targets += [kernel_dir / "drivers" / "net" / name for name in REMOVED_NET_DRIVERS]
    targets += [kernel_dir / "net" / name for name in REMOVED_NET]
    targets += [kernel_dir / "fs" / name for name in REMOVED_FS]
    ethernet = _confined(session, kernel_dir / "drivers" / "net" / "ethernet")
    if ethernet is not None and ethernet.is_dir():
        targets += [
            vendor for vendor in sorted(ethernet.iterdir())
            if vendor.is_dir() and vendor.name not in KEPT_ETHERNET_VENDORS
        ]

    confined = (_confined(session, target) for target in targets)
    removed = sum(1 for target in confined if target is not None and _rmtree(target))
    kernel_version = kernel_dir.parent.name
    log.info(f"Removed {removed} kernel module trees from {kernel_version}")
    backend.run_in_chroot(session, f"depmod {kernel_version}", check=False)
    return removed


def trim_rootfs(session: BuildSession, backend: Backend) -> None:
    """Shared trimming that still needs a working chroot."""
    strip_payload(session)
    remove_kernel_modules(session, backend)

    log.info("Cleaning GRUB locale and modules")
    _rmtree(session.rootfs_path("boot/grub/locale"))
    _rmtree(session.rootfs_path("usr/lib/grub"))

    log.info("Generating SSH host keys")
    backend.run_in_chroot(session, "ssh-keygen -A")

    log.info("Stripping binaries and shared libraries")
    backend.run_in_chroot(session, STRIP_BINARIES, check=False)


def finish_trim(session: BuildSession) -> None:
    """Shared trimming that runs after the backend cleanup."""
    log.info("Truncating udev hardware database")
    _rmtree(session.rootfs_path("usr/lib/udev/hwdb.d"))
    hwdb = session.rootfs_path("usr/lib/udev/hwdb.bin")
    if hwdb.is_file():
        hwdb.write_bytes(b"")

    log.info("Cleaning caches and unnecessary files")
    for relative in EMPTIED_DIRS:
        _empty_dir(session.rootfs_path(relative))
    log_dir = session.rootfs_path("var/log")
    if log_dir.is_dir():
        for log_file in log_dir.glob("*.log"):
            log_file.unlink(missing_ok=True)


def remove_journal(session: BuildSession) -> None:
    log.info("Cleaning journal logs")
    _rmtree(session.rootfs_path("var/log/journal"))
