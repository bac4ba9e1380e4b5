"""Typed adapters for e2fsprogs and blkid.

Each function wraps one external tool and returns a structured result, so
callers never scrape free-form tool output themselves.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

from landscape_mini.domain import FilesystemInfo
from landscape_mini.exceptions import ShrinkIntegrityError, ToolOutputError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import format_command_failure, run_command


log = LoggerFactory.for_shrink()

# e2fsck exit codes: 0 clean, 1 errors corrected, 2 corrected and reboot advised
E2FSCK_SUCCESS_CODES = frozenset({0, 1, 2})


@dataclass(frozen=True)
class FsckResult:
    device: str
    returncode: int
    forced_repair: bool
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode in E2FSCK_SUCCESS_CODES

    @property
    def corrected(self) -> bool:
        return self.returncode in (1, 2)


def check_filesystem(device: str, force_repair: bool = False) -> FsckResult:
    """Run a forced e2fsck pass.

    Without force_repair the check runs in preen mode (``-p``), which only
    fixes problems that are safe to fix unattended. With force_repair it
    answers yes to every question (``-y``).
    """
    mode = "-y" if force_repair else "-p"
    try:
        result = run_command(["e2fsck", "-f", mode, device], check=False)
    except OSError as error:
        return FsckResult(device, 8, force_repair, str(error))
    output = (result.stderr or result.stdout or "").strip()
    return FsckResult(device, result.returncode, force_repair, output)


def resize_to_minimum(device: str) -> None:
    """Shrink an unmounted ext filesystem to its minimum size.

    Raises:
        ShrinkIntegrityError: If resize2fs fails
    """
    try:
        run_command(["resize2fs", "-M", device])
    except (subprocess.CalledProcessError, OSError) as error:
        raise ShrinkIntegrityError(
            f"resize2fs could not shrink {device}: {format_command_failure(error)}"
        ) from error


def _dumpe2fs_fields(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key and not key.startswith(" "):
            fields.setdefault(key.strip(), value.strip())
    return fields


def parse_dumpe2fs(text: str) -> FilesystemInfo:
    """Parse ``dumpe2fs -h`` output.

    Raises:
        ToolOutputError: If block count, block size or UUID is missing or
            not a number
    """
    fields = _dumpe2fs_fields(text)
    try:
        block_count = int(fields["Block count"])
        block_size = int(fields["Block size"])
        uuid = fields["Filesystem UUID"]
    except KeyError as error:
        raise ToolOutputError("dumpe2fs", f"missing field {error.args[0]!r}") from error
    except ValueError as error:
        raise ToolOutputError("dumpe2fs", str(error)) from error
    if block_count <= 0 or block_size <= 0:
        raise ToolOutputError("dumpe2fs", f"non-positive geometry {block_count}x{block_size}")

    free_blocks = fields.get("Free blocks")
    label = fields.get("Filesystem volume name")
    return FilesystemInfo(
        block_count=block_count,
        block_size=block_size,
        uuid=uuid,
        free_blocks=int(free_blocks) if free_blocks and free_blocks.isdigit() else None,
        label=None if label in (None, "", "<none>") else label,
    )


def read_filesystem_info(device: str) -> FilesystemInfo:
    """Superblock summary of an ext filesystem.

    Raises:
        ToolOutputError: If dumpe2fs fails or its output cannot be parsed
    """
    try:
        result = run_command(["dumpe2fs", "-h", device], log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        raise ToolOutputError("dumpe2fs", format_command_failure(error)) from error
    info = parse_dumpe2fs(result.stdout)
    log.debug(
        f"{device}: {info.block_count} blocks of {info.block_size} bytes, UUID {info.uuid}"
    )
    return info


def read_uuid(device: str) -> str:
    """Filesystem UUID of a block device.

    Raises:
        ToolOutputError: If blkid fails or reports no UUID
    """
    try:
        result = run_command(["blkid", "-s", "UUID", "-o", "value", device])
    except (subprocess.CalledProcessError, OSError) as error:
        raise ToolOutputError("blkid", format_command_failure(error)) from error
    uuid = result.stdout.strip()
    if not uuid:
        raise ToolOutputError("blkid", f"no UUID reported for {device}")
    return uuid
