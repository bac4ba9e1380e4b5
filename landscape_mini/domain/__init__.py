"""Domain models for image build operations.

This package contains type-safe domain objects shared by the orchestrator,
the resource manager, the backends and the shrink engine.
"""

from __future__ import annotations

from .models import (
    ALIGNMENT_SECTORS,
    BOOT_CODE_SIZE,
    MIB,
    SECTOR_SIZE,
    TAIL_RESERVE_SECTORS,
    BaseSystem,
    BuildConfig,
    BuildPaths,
    BuildReport,
    FilesystemInfo,
    LoopBinding,
    MountEntry,
    OutputFile,
    OutputFormat,
    Partition,
    PartitionTable,
    Phase,
    ShrinkResult,
)


__all__ = [
    "ALIGNMENT_SECTORS",
    "BOOT_CODE_SIZE",
    "MIB",
    "SECTOR_SIZE",
    "TAIL_RESERVE_SECTORS",
    "BaseSystem",
    "BuildConfig",
    "BuildPaths",
    "BuildReport",
    "FilesystemInfo",
    "LoopBinding",
    "MountEntry",
    "OutputFile",
    "OutputFormat",
    "Partition",
    "PartitionTable",
    "Phase",
    "ShrinkResult",
]
