"""GPT layout planning, reading and writing for the hybrid boot image.

This module handles partition table manipulation including:
- Planning the three-entry layout (BIOS boot, ESP, root) for a given size
- Writing the initial table with parted
- Reading the live table back with ``sfdisk --json``
- Zapping and rewriting the table with sgdisk after a shrink

All geometry is in 512-byte sectors with inclusive end sectors. Partition
starts sit on 2048-sector (1 MiB) boundaries and ends one sector before one.
"""
from __future__ import annotations

import json
import re
import subprocess
import time
from pathlib import Path

from landscape_mini.domain import (
    ALIGNMENT_SECTORS,
    MIB,
    SECTOR_SIZE,
    TAIL_RESERVE_SECTORS,
    Partition,
    PartitionTable,
)
from landscape_mini.exceptions import ImageCreationError, ShrinkIntegrityError, ToolOutputError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import format_command_failure, run_command


log = LoggerFactory.for_image()

BIOS_BOOT_TYPE = "EF02"
ESP_TYPE = "EF00"
LINUX_TYPE = "8300"

# sfdisk reports GPT types as GUIDs, sgdisk accepts both forms
GPT_TYPE_GUIDS = {
    "21686148-6449-6E6F-744E-656564454649": BIOS_BOOT_TYPE,
    "C12A7328-F81F-11D2-BA4B-00A0C93EC93B": ESP_TYPE,
    "0FC63DAF-8483-4772-8E79-3D69D8477DE4": LINUX_TYPE,
}

BIOS_BOOT_START = ALIGNMENT_SECTORS
BIOS_BOOT_SECTORS = ALIGNMENT_SECTORS

PARTED_RETRY_DELAYS = [1, 2, 4]


def align_up(sector: int, alignment: int = ALIGNMENT_SECTORS) -> int:
    return ((sector + alignment - 1) // alignment) * alignment


def align_down(sector: int, alignment: int = ALIGNMENT_SECTORS) -> int:
    return (sector // alignment) * alignment


def bytes_to_sectors(size_bytes: int, sector_size: int = SECTOR_SIZE) -> int:
    return (size_bytes + sector_size - 1) // sector_size


def plan_layout(total_bytes: int, esp_size_mb: int) -> PartitionTable:
    """Compute the initial three-partition layout for an image of total_bytes.

    BIOS boot occupies the second MiB, the ESP follows, and the root
    partition runs to the last MiB boundary before the tail reserved for the
    backup GPT.

    Raises:
        ValueError: If the image cannot hold a root partition
    """
    total_sectors = total_bytes // SECTOR_SIZE
    bios_end = BIOS_BOOT_START + BIOS_BOOT_SECTORS - 1
    esp_start = bios_end + 1
    esp_end = esp_start + esp_size_mb * (MIB // SECTOR_SIZE) - 1
    root_start = align_up(esp_end + 1)
    root_end = align_down(total_sectors - TAIL_RESERVE_SECTORS) - 1
    if root_end <= root_start:
        raise ValueError(
            f"Image of {total_bytes} bytes leaves no room for a root partition "
            f"after a {esp_size_mb} MB system partition"
        )
    table = PartitionTable(
        partitions=(
            Partition(1, BIOS_BOOT_START, bios_end, BIOS_BOOT_TYPE, "bios"),
            Partition(2, esp_start, esp_end, ESP_TYPE, "ESP"),
            Partition(3, root_start, root_end, LINUX_TYPE, "root"),
        )
    )
    table.validate()
    return table


def parted_arguments(table: PartitionTable) -> list[str]:
    bios, esp, root = table.bios_boot, table.esp, table.root
    return [
        "unit", "s",
        "mklabel", "gpt",
        "mkpart", bios.name, f"{bios.start_sector}", f"{bios.end_sector}",
        "set", "1", "bios_grub", "on",
        "mkpart", esp.name, "fat32", f"{esp.start_sector}", f"{esp.end_sector}",
        "set", "2", "esp", "on",
        "mkpart", root.name, "ext4", f"{root.start_sector}", f"{root.end_sector}",
    ]


def create_partition_table(image: Path, table: PartitionTable) -> None:
    """Write a fresh GPT with the planned layout using parted.

    Retries with increasing delays, parted occasionally fails when udev is
    still probing the file.

    Raises:
        ImageCreationError: If every attempt fails
    """
    command = ["parted", "-s", str(image), *parted_arguments(table)]
    max_retries = len(PARTED_RETRY_DELAYS)
    for attempt in range(max_retries):
        log.debug(f"Partitioning {image} (attempt {attempt + 1}/{max_retries})")
        result = run_command(command, check=False, log_command=attempt == 0)
        if result.returncode == 0:
            log.info("Partitioned image (GPT: BIOS boot + ESP + root)")
            return
        stderr_msg = result.stderr.strip() if result.stderr else "no error message"
        log.error(
            f"parted failed (attempt {attempt + 1}/{max_retries}): "
            f"stderr='{stderr_msg}' rc={result.returncode}"
        )
        if attempt < max_retries - 1:
            time.sleep(PARTED_RETRY_DELAYS[attempt])
    raise ImageCreationError(f"parted could not partition {image}", image=str(image))


def _normalize_type(value: str) -> str:
    upper = value.strip().upper()
    return GPT_TYPE_GUIDS.get(upper, upper)


def parse_sfdisk_json(text: str) -> PartitionTable:
    """Parse ``sfdisk --json`` output into a PartitionTable.

    Raises:
        ToolOutputError: If the JSON is malformed or not a GPT table
    """
    try:
        data = json.loads(text)
        table = data["partitiontable"]
    except (json.JSONDecodeError, KeyError, TypeError) as error:
        raise ToolOutputError("sfdisk", f"unexpected document: {error}") from error

    if table.get("label") != "gpt":
        raise ToolOutputError("sfdisk", f"expected a gpt label, found {table.get('label')!r}")

    partitions = []
    for entry in table.get("partitions", []):
        match = re.search(r"(\d+)$", str(entry.get("node", "")))
        if not match:
            raise ToolOutputError("sfdisk", f"cannot number partition node {entry.get('node')!r}")
        try:
            start = int(entry["start"])
            size = int(entry["size"])
        except (KeyError, TypeError, ValueError) as error:
            raise ToolOutputError("sfdisk", f"bad start/size in {entry!r}") from error
        partitions.append(
            Partition(
                index=int(match.group(1)),
                start_sector=start,
                end_sector=start + size - 1,
                type_code=_normalize_type(str(entry.get("type", ""))),
                name=str(entry.get("name", "")),
            )
        )
    partitions.sort(key=lambda part: part.index)
    return PartitionTable(
        partitions=tuple(partitions),
        sector_size=int(table.get("sectorsize", SECTOR_SIZE)),
    )


def read_partition_table(image: Path) -> PartitionTable:
    """Read the partition table actually written in an image file.

    Raises:
        ToolOutputError: If sfdisk fails or its output cannot be parsed
    """
    try:
        result = run_command(["sfdisk", "--json", str(image)], log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        raise ToolOutputError("sfdisk", format_command_failure(error)) from error
    return parse_sfdisk_json(result.stdout)


def sgdisk_arguments(table: PartitionTable) -> list[str]:
    arguments: list[str] = []
    for part in table.partitions:
        arguments.extend(
            [
                "-n", f"{part.index}:{part.start_sector}:{part.end_sector}",
                "-t", f"{part.index}:{part.type_code}",
            ]
        )
        if part.name:
            arguments.extend(["-c", f"{part.index}:{part.name}"])
    return arguments


def write_partition_table(image: Path, table: PartitionTable) -> None:
    """Erase every GPT/MBR structure and write the given table.

    Raises:
        ShrinkIntegrityError: If sgdisk fails
    """
    try:
        run_command(["sgdisk", "--zap-all", str(image)], log_output=False)
        run_command(["sgdisk", *sgdisk_arguments(table), str(image)])
    except (subprocess.CalledProcessError, OSError) as error:
        raise ShrinkIntegrityError(
            f"Rewriting the partition table of {image} failed: {format_command_failure(error)}"
        ) from error
    log.info("Rebuilt GPT partition table")
