"""Shrink-in-place and repartition of the finished image.

After all content is installed the root filesystem is shrunk to its minimum
size, the root partition is cut down to match, and the image file is
truncated so it ends one MiB after the root partition (room for the backup
GPT).

Algorithm:
    1. e2fsck in preen mode; on failure retry once answering yes to all
    2. resize2fs -M, then read block count and block size back
    3. Capture bytes [0, 440) of the image (GRUB i386-pc boot code)
    4. Read the live partition table, release the loop binding
    5. New root end = next 2048-sector boundary after start + fs size, - 1;
       total = end + 1 + 2048 sectors; truncate the file
    6. Zap all partition structures and rewrite the table: partitions 1 and
       2 unchanged, partition 3 with the new end
    7. Restore and verify the boot code

Invariants:
    - Partitions 1 and 2 keep their start, end and type
    - Partition 3 keeps its start, only its end and the file length change
    - Bytes [0, 440) are identical before and after
    - The root filesystem UUID does not change
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from landscape_mini.domain import (
    BOOT_CODE_SIZE,
    SECTOR_SIZE,
    TAIL_RESERVE_SECTORS,
    ShrinkResult,
)
from landscape_mini.exceptions import ShrinkIntegrityError, ToolOutputError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.filesystem import (
    FsckResult,
    check_filesystem,
    read_filesystem_info,
    resize_to_minimum,
)
from landscape_mini.storage.loop import find_bindings
from landscape_mini.storage.partition_table import (
    align_up,
    bytes_to_sectors,
    read_partition_table,
    write_partition_table,
)


if TYPE_CHECKING:
    from landscape_mini.build.session import BuildSession


log = LoggerFactory.for_shrink()


def compute_shrunk_geometry(start_sector: int, filesystem_bytes: int) -> tuple[int, int]:
    """Return (root end sector, total image sectors) for a shrunk filesystem."""
    end_sector = align_up(start_sector + bytes_to_sectors(filesystem_bytes)) - 1
    total_sectors = end_sector + 1 + TAIL_RESERVE_SECTORS
    return end_sector, total_sectors


def read_boot_code(image: Path) -> bytes:
    with open(image, "rb") as handle:
        code = handle.read(BOOT_CODE_SIZE)
    if len(code) != BOOT_CODE_SIZE:
        raise ShrinkIntegrityError(f"{image} is shorter than its {BOOT_CODE_SIZE}-byte boot code")
    return code


def restore_boot_code(image: Path, code: bytes) -> None:
    if len(code) != BOOT_CODE_SIZE:
        raise ShrinkIntegrityError(f"Boot code must be {BOOT_CODE_SIZE} bytes, got {len(code)}")
    with open(image, "r+b") as handle:
        handle.seek(0)
        handle.write(code)
        handle.flush()
        os.fsync(handle.fileno())


def check_and_repair(device: str) -> FsckResult:
    """Check the filesystem, retrying once with forced repair.

    Raises:
        ShrinkIntegrityError: If the forced repair pass also fails
    """
    result = check_filesystem(device)
    if result.ok:
        if result.corrected:
            log.warning(f"e2fsck corrected errors on {device}")
        return result

    log.warning(f"e2fsck failed on {device} (rc={result.returncode}), retrying with forced repair")
    result = check_filesystem(device, force_repair=True)
    if not result.ok:
        raise ShrinkIntegrityError(
            f"Filesystem check of {device} failed after forced repair "
            f"(rc={result.returncode}): {result.output}"
        )
    return result


def shrink_image(session: BuildSession) -> ShrinkResult:
    """Minimize the attached image and rewrite its partition table.

    The root filesystem must already be unmounted. The loop binding is
    released by this function.

    Raises:
        ShrinkIntegrityError: On any check, resize, geometry or repartition
            failure; no partial output is produced
    """
    binding = session.require_loop()
    image = binding.image
    root_device = binding.partition_device(3)
    size_before = image.stat().st_size

    log.info(f"Running filesystem check on {root_device}")
    check_and_repair(root_device)

    try:
        uuid_before = read_filesystem_info(root_device).uuid
        log.info("Shrinking ext4 filesystem to minimum size")
        resize_to_minimum(root_device)
        filesystem = read_filesystem_info(root_device)
        boot_code = read_boot_code(image)
        table = read_partition_table(image)
    except ToolOutputError as error:
        raise ShrinkIntegrityError(str(error)) from error

    if filesystem.uuid != uuid_before:
        raise ShrinkIntegrityError(
            f"Filesystem UUID changed during resize: {uuid_before} -> {filesystem.uuid}"
        )
    try:
        table.validate()
    except ValueError as error:
        raise ShrinkIntegrityError(f"Unexpected partition layout in {image}: {error}") from error

    # Partition table edits with a live binding leave the kernel with a stale view
    session.detach_loop()
    stale = find_bindings(image)
    if stale:
        raise ShrinkIntegrityError(
            f"{image} is still bound to {', '.join(stale)}, refusing to repartition"
        )

    end_sector, total_sectors = compute_shrunk_geometry(
        table.root.start_sector, filesystem.size_bytes
    )
    size_after = total_sectors * SECTOR_SIZE
    if size_after > size_before:
        raise ShrinkIntegrityError(
            f"Shrunk layout ({size_after} bytes) would be larger than the image ({size_before} bytes)"
        )
    new_table = table.with_root_end(end_sector)
    try:
        new_table.validate()
    except ValueError as error:
        raise ShrinkIntegrityError(f"Computed layout is invalid: {error}") from error

    log.info(
        f"Root partition {table.root.start_sector}-{end_sector}, "
        f"truncating image to {size_after // (1024 * 1024)} MB"
    )
    try:
        os.truncate(image, size_after)
        write_partition_table(image, new_table)
        restore_boot_code(image, boot_code)
        if read_boot_code(image) != boot_code:
            raise ShrinkIntegrityError(f"Boot code in {image} does not match after restore")
    except (ShrinkIntegrityError, OSError) as error:
        # A truncated file without a valid table is not an image
        log.error(f"Repartitioning failed, discarding {image}: {error}")
        image.unlink(missing_ok=True)
        if isinstance(error, OSError):
            raise ShrinkIntegrityError(f"Repartitioning {image} failed: {error}") from error
        raise
    log.info("Restored GRUB boot code")

    return ShrinkResult(
        size_before=size_before,
        size_after=size_after,
        filesystem=filesystem,
        table=new_table,
    )
