"""Loop device binding for disk image files.

Operations:
    - attach(): Bind an image to a free loop device with partition scanning
    - wait_for_partitions(): Bounded wait for /dev/loopNpM nodes to appear
    - detach(): Release a loop binding
    - find_bindings(): Loop devices currently backed by an image file

The kernel creates partition nodes asynchronously after ``losetup -P``, so
attach() retries partprobe/udevadm settle a fixed number of times before
giving up.
"""

from __future__ import annotations

import os
import stat
import subprocess
import time
from pathlib import Path
from typing import Iterable

from landscape_mini.domain import LoopBinding
from landscape_mini.exceptions import ImageNotFoundError, LoopDeviceError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import (
    format_command_failure,
    run_command,
    settle_devices,
)


log = LoggerFactory.for_image()

PARTITION_WAIT_ATTEMPTS = 10
PARTITION_WAIT_SECONDS = 0.5
DEFAULT_PARTITIONS = (1, 2, 3)


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def attach(image: Path, partitions: Iterable[int] = DEFAULT_PARTITIONS) -> LoopBinding:
    """Bind an image file to a loop device and wait for its partitions.

    Args:
        image: Raw disk image
        partitions: Partition numbers that must show up as block devices

    Returns:
        The new binding

    Raises:
        ImageNotFoundError: If the image file does not exist
        LoopDeviceError: If losetup fails, returns something that is not a
            block device, or the partition nodes never appear
    """
    image = Path(image)
    if not image.is_file():
        raise ImageNotFoundError(str(image))

    try:
        result = run_command(["losetup", "--show", "-f", "-P", str(image)])
    except (subprocess.CalledProcessError, OSError) as error:
        raise LoopDeviceError(
            f"losetup failed for {image}: {format_command_failure(error)}", image=str(image)
        ) from error

    device = result.stdout.strip()
    if not device or not is_block_device(device):
        raise LoopDeviceError(
            f"losetup returned {device!r} for {image}, which is not a block device",
            image=str(image),
        )

    binding = LoopBinding(device=device, image=image)
    log.info(f"Loop device: {device} -> {image}")
    try:
        wait_for_partitions(binding, partitions)
    except LoopDeviceError:
        detach(binding)
        raise
    return binding


def wait_for_partitions(
    binding: LoopBinding,
    partitions: Iterable[int] = DEFAULT_PARTITIONS,
    attempts: int = PARTITION_WAIT_ATTEMPTS,
    delay: float = PARTITION_WAIT_SECONDS,
) -> None:
    indexes = list(partitions)
    missing: list[str] = []
    for attempt in range(1, attempts + 1):
        missing = [
            binding.partition_device(index)
            for index in indexes
            if not is_block_device(binding.partition_device(index))
        ]
        if not missing:
            return
        log.debug(
            f"Waiting for partition nodes (attempt {attempt}/{attempts}): {', '.join(missing)}"
        )
        settle_devices(binding.device)
        time.sleep(delay)
    raise LoopDeviceError(
        f"Partition nodes did not appear on {binding.device}: {', '.join(missing)}",
        image=str(binding.image),
    )


def detach(binding: LoopBinding) -> None:
    """Release a loop binding.

    Raises:
        LoopDeviceError: If losetup -d fails
    """
    try:
        run_command(["losetup", "-d", binding.device])
    except (subprocess.CalledProcessError, OSError) as error:
        raise LoopDeviceError(
            f"Failed to detach {binding.device}: {format_command_failure(error)}",
            image=str(binding.image),
        ) from error
    log.info(f"Detached loop device {binding.device}")


def find_bindings(image: Path) -> list[str]:
    """Loop devices currently associated with an image file."""
    try:
        result = run_command(["losetup", "-j", str(image)], check=False, log_output=False)
    except OSError:
        return []
    devices = []
    for line in result.stdout.splitlines():
        device, _, _rest = line.partition(":")
        if device.startswith("/dev/"):
            devices.append(device.strip())
    return devices
