"""Output transforms applied to the finished raw image.

- VMDK conversion with qemu-img for the ``vmdk`` and ``both`` formats
- gzip compression (pigz when available) of every produced container
- Removal of the raw image for ``vmdk``-only output

Transforms never fail the build. Each failure is logged as an
OutputTransformError and the raw image stays valid.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from landscape_mini.domain import BuildConfig, BuildPaths
from landscape_mini.exceptions import OutputTransformError
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage.commands import format_command_failure, run_command


log = LoggerFactory.for_image()


def get_compression_tool() -> Optional[str]:
    """Parallel gzip if installed, plain gzip otherwise."""
    return shutil.which("pigz") or shutil.which("gzip")


def convert_to_vmdk(image: Path, vmdk: Path) -> Path:
    """Convert a raw image to VMDK.

    Raises:
        OutputTransformError: If qemu-img is missing or fails
    """
    if shutil.which("qemu-img") is None:
        raise OutputTransformError("vmdk conversion", str(image), "qemu-img not found")
    try:
        run_command(["qemu-img", "convert", "-f", "raw", "-O", "vmdk", str(image), str(vmdk)])
    except (subprocess.CalledProcessError, OSError) as error:
        vmdk.unlink(missing_ok=True)
        raise OutputTransformError(
            "vmdk conversion", str(image), format_command_failure(error)
        ) from error
    log.info(f"VMDK created: {vmdk}")
    return vmdk


def compress_file(path: Path) -> Path:
    """Write ``<path>.gz`` next to path, keeping the original.

    Raises:
        OutputTransformError: If no gzip tool is found or compression fails
    """
    tool = get_compression_tool()
    if not tool:
        raise OutputTransformError("compression", str(path), "neither pigz nor gzip found")
    compressed = path.with_name(path.name + ".gz")
    try:
        run_command([tool, "-k", "-f", str(path)])
    except (subprocess.CalledProcessError, OSError) as error:
        compressed.unlink(missing_ok=True)
        raise OutputTransformError("compression", str(path), format_command_failure(error)) from error
    log.info(f"Compressed: {compressed}")
    return compressed


def produce_outputs(config: BuildConfig, paths: BuildPaths) -> list[OutputTransformError]:
    """Apply the configured output transforms to the shrunk raw image.

    Returns:
        The transform failures, already logged
    """
    failures: list[OutputTransformError] = []
    fmt = config.output_format

    vmdk_ready = False
    if fmt.wants_vmdk:
        log.info("Converting to VMDK")
        try:
            convert_to_vmdk(paths.image, paths.vmdk)
            vmdk_ready = True
        except OutputTransformError as error:
            log.error(str(error))
            failures.append(error)

    if config.compress:
        log.info("Compressing image")
        targets = [paths.image] + ([paths.vmdk] if vmdk_ready else [])
        for target in targets:
            try:
                compress_file(target)
            except OutputTransformError as error:
                log.error(str(error))
                failures.append(error)

    if not fmt.keeps_raw:
        if vmdk_ready:
            log.info("Removing raw image (vmdk-only output)")
            paths.image.unlink(missing_ok=True)
        else:
            log.warning("VMDK conversion failed, keeping the raw image")

    return failures
