"""Disk image creation: allocation, partitioning and formatting.

Layout:
    - BIOS boot partition (EF02, no filesystem) in the second MiB, holding
      GRUB's i386-pc core image for legacy boot
    - EFI system partition (EF00) formatted FAT32
    - Root partition (8300) formatted ext4 without a journal and with 1%
      reserved blocks, running to the last MiB before the backup GPT

Operations:
    - create_image(): Sparse backing file of exactly size_mb MiB
    - format_partitions(): mkfs.vfat on p2, mkfs.ext4 on p3
    - build_disk_image(): Everything above plus loop attach and mount

A failed build_disk_image() releases everything it acquired and deletes the
partial image file, a half-built image is never left behind as usable.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from landscape_mini.domain import MIB, LoopBinding, PartitionTable
from landscape_mini.exceptions import BuildError, ImageCreationError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import format_command_failure, run_command
from landscape_mini.storage.partition_table import create_partition_table, plan_layout


if TYPE_CHECKING:
    from landscape_mini.build.session import BuildSession


log = LoggerFactory.for_image()

EXT4_RESERVED_PERCENT = 1


def create_image(path: Path, size_mb: int) -> Path:
    """Allocate a sparse image file of exactly size_mb * 1 MiB bytes."""
    if size_mb <= 0:
        raise ImageCreationError(f"Image size must be positive, got {size_mb} MB", image=str(path))
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as handle:
        handle.truncate(size_mb * MIB)
    log.info(f"Created {size_mb}MB raw image {path}")
    return path


def _mkfs(command: list[str], device: str) -> None:
    try:
        run_command([*command, device])
    except (subprocess.CalledProcessError, OSError) as error:
        raise ImageCreationError(
            f"{command[0]} failed on {device}: {format_command_failure(error)}"
        ) from error


def format_partitions(binding: LoopBinding) -> None:
    """Format the system partition FAT32 and the root partition ext4."""
    log.info("Formatting EFI partition (FAT32)")
    _mkfs(["mkfs.vfat", "-F", "32", "-n", "ESP"], binding.partition_device(2))

    log.info(f"Formatting root partition (ext4, no journal, {EXT4_RESERVED_PERCENT}% reserved)")
    _mkfs(
        ["mkfs.ext4", "-F", "-O", "^has_journal", "-m", str(EXT4_RESERVED_PERCENT), "-L", "rootfs"],
        binding.partition_device(3),
    )


def build_disk_image(session: BuildSession, size_mb: int, esp_size_mb: int) -> PartitionTable:
    """Create, partition, format and mount a fresh image for the session.

    Raises:
        ImageCreationError: If allocation, partitioning or formatting fails
        ResourceAcquisitionError: If the loop binding or a mount fails
    """
    image = session.paths.image
    try:
        create_image(image, size_mb)
        try:
            table = plan_layout(size_mb * MIB, esp_size_mb)
        except ValueError as error:
            raise ImageCreationError(str(error), image=str(image)) from error
        create_partition_table(image, table)
        session.attach_image(image)
        format_partitions(session.require_loop())
        session.mount_image()
    except (BuildError, OSError) as error:
        log.error(f"Image creation failed, discarding {image}: {error}")
        session.release_all()
        image.unlink(missing_ok=True)
        if isinstance(error, OSError):
            raise ImageCreationError(str(error), image=str(image)) from error
        raise
    return table
