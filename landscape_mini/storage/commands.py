"""Host command execution helpers.

Every external tool the build drives (losetup, parted, sgdisk, mkfs, e2fsck,
chroot, ...) goes through ``run_command`` so that commands and their output
land in the debug log the same way.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Iterable, Mapping, Optional, Sequence

from landscape_mini.logging import LoggerFactory


log = LoggerFactory.for_system()


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a command synchronously and capture its output.

    Raises:
        subprocess.CalledProcessError: If check is True and the command fails
        FileNotFoundError: If the executable does not exist
    """
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
            env=dict(env) if env is not None else None,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)} (rc={error.returncode})")
        if error.stdout:
            log.bind(command_output=True).warning(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.bind(command_output=True).warning(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.bind(command_output=True).trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.bind(command_output=True).trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def format_command_failure(error: BaseException) -> str:
    """Short human-readable reason for a failed command."""
    if isinstance(error, subprocess.CalledProcessError):
        detail = (error.stderr or error.stdout or "").strip()
        cmd = error.cmd if isinstance(error.cmd, str) else " ".join(error.cmd)
        if detail:
            return f"{cmd} exited with {error.returncode}: {detail.splitlines()[-1]}"
        return f"{cmd} exited with {error.returncode}"
    return str(error)


def missing_commands(commands: Iterable[str]) -> list[str]:
    return [cmd for cmd in commands if shutil.which(cmd) is None]


def settle_devices(device: Optional[str] = None) -> None:
    """Ask the kernel and udev to catch up with partition table changes."""
    commands = [["sync"]]
    if device:
        commands.append(["partprobe", device])
    commands.append(["udevadm", "settle", "--timeout=10"])
    for cmd in commands:
        if shutil.which(cmd[0]):
            try:
                run_command(cmd, check=False, log_command=False)
            except OSError as error:
                log.debug(f"{cmd[0]} failed: {error}")
