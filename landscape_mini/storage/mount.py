"""Mount helpers for the image root filesystem and chroot pseudo filesystems.

Functions:
    - is_mounted(): Check /proc/mounts for an active mount point
    - mount(): Mount a MountEntry, creating its target directory
    - unmount_with_retry(): Escalating unmount (plain x3, lazy, lazy+force)
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

from landscape_mini.domain import MountEntry
from landscape_mini.exceptions import MountError, UnmountFailedError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import format_command_failure, run_command


log = LoggerFactory.for_image()

UNMOUNT_ATTEMPTS = 3
UNMOUNT_RETRY_SECONDS = 1.0


def _decode_mount_path(value: str) -> str:
    # /proc/mounts escapes whitespace as octal
    return (
        value.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def is_mounted(target: Path | str) -> bool:
    mountpoint = os.path.realpath(str(target))
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and _decode_mount_path(parts[1]) == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def mount_command(entry: MountEntry) -> list[str]:
    command = ["mount"]
    if entry.bind:
        command.append("--bind")
    if entry.fstype:
        command.extend(["-t", entry.fstype])
    if entry.options:
        command.extend(["-o", ",".join(entry.options)])
    command.extend([entry.source, str(entry.target)])
    return command


def mount(entry: MountEntry) -> None:
    """Mount an entry, creating the target directory first.

    Raises:
        MountError: If mount fails
    """
    entry.target.mkdir(parents=True, exist_ok=True)
    try:
        run_command(mount_command(entry))
    except (subprocess.CalledProcessError, OSError) as error:
        raise MountError(
            f"Failed to mount {entry.source} on {entry.target}: {format_command_failure(error)}"
        ) from error
    log.debug(f"Mounted {entry.source} on {entry.target}")


def unmount_with_retry(
    target: Path | str,
    attempts: int = UNMOUNT_ATTEMPTS,
    delay: float = UNMOUNT_RETRY_SECONDS,
) -> bool:
    """Unmount a busy-prone mount point, escalating the strategy.

    Tries a plain unmount ``attempts`` times (syncing and waiting in between),
    then a lazy unmount, then a forced lazy unmount.

    Returns:
        True if the lazy or forced strategy was needed, False if a plain
        unmount was enough or the target was not mounted

    Raises:
        UnmountFailedError: If the target is still mounted after every strategy
    """
    target = str(target)
    if not is_mounted(target):
        log.debug(f"{target} already unmounted")
        return False

    last_error = ""
    for attempt in range(1, attempts + 1):
        result = run_command(["umount", target], check=False, log_command=attempt == 1)
        if result.returncode == 0 or not is_mounted(target):
            log.debug(f"Unmounted {target}")
            return False
        last_error = (result.stderr or "").strip()
        log.debug(f"Unmount attempt {attempt}/{attempts} for {target} failed: {last_error}")
        if attempt < attempts:
            run_command(["sync"], check=False, log_command=False)
            time.sleep(delay)

    for strategy in (["umount", "-l"], ["umount", "-l", "-f"]):
        log.warning(f"Escalating to {' '.join(strategy)} for {target}")
        result = run_command([*strategy, target], check=False)
        if result.returncode == 0 or not is_mounted(target):
            log.debug(f"Unmounted {target} with {' '.join(strategy)}")
            return True
        last_error = (result.stderr or "").strip()

    raise UnmountFailedError(target, last_error)
