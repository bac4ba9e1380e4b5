"""Final build report (phase 8)."""

from __future__ import annotations

import re
from typing import Optional

from landscape_mini.backends.base import EXTRA_USER
from landscape_mini.domain import BuildConfig, BuildPaths, BuildReport, OutputFile, ShrinkResult
from landscape_mini.logging import LoggerFactory


log = LoggerFactory.for_build()

OVMF_FIRMWARE = "/usr/share/ovmf/OVMF.fd"


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return re.sub(r"\.0([A-Z])", r"\1", f"{size:.1f}{unit}")
        size /= 1024.0
    return f"{size:.1f}PB"


def collect_outputs(paths: BuildPaths) -> list[OutputFile]:
    candidates = [
        ("RAW image", paths.image),
        ("Compressed", paths.image.with_name(paths.image.name + ".gz")),
        ("VMDK image", paths.vmdk),
        ("Compressed", paths.vmdk.with_name(paths.vmdk.name + ".gz")),
    ]
    return [
        OutputFile(label=label, path=path, size_bytes=path.stat().st_size)
        for label, path in candidates
        if path.is_file()
    ]


def build_report(
    config: BuildConfig,
    paths: BuildPaths,
    shrink: Optional[ShrinkResult] = None,
) -> BuildReport:
    return BuildReport(
        image=paths.image,
        outputs=collect_outputs(paths),
        root_password=config.root_password,
        shrink=shrink,
    )


def format_report(report: BuildReport) -> list[str]:
    lines = ["Output files:"]
    if not report.outputs:
        lines.append("  (none found)")
    for output in report.outputs:
        lines.append(f"  {output.label:<10}: {output.path} ({human_size(output.size_bytes)})")
    if report.shrink is not None:
        lines.append(
            f"Image shrunk from {human_size(report.shrink.size_before)} "
            f"to {human_size(report.shrink.size_after)}"
        )
    lines += [
        "",
        "To write the raw image to a disk:",
        f"  dd if={report.image} of=/dev/sdX bs=4M status=progress",
        "",
        "To boot in QEMU:",
        f"  qemu-system-x86_64 -enable-kvm -m 512 -bios {OVMF_FIRMWARE} \\",
        f"    -drive file={report.image},format=raw -nic user,hostfwd=tcp::2222-:22",
        "",
        f"Default credentials:  root / {report.root_password}  |  "
        f"{EXTRA_USER} / {report.root_password}",
    ]
    return lines


def log_report(report: BuildReport) -> None:
    for line in format_report(report):
        log.info(line)
