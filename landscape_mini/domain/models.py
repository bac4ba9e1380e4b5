"""Domain model for image build operations.

Type-safe value objects passed between the orchestrator, the resource
manager, the backends and the shrink engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

from landscape_mini.exceptions import ConfigurationError


SECTOR_SIZE = 512
ALIGNMENT_SECTORS = 2048  # 1 MiB
BOOT_CODE_SIZE = 440
TAIL_RESERVE_SECTORS = 2048  # backup GPT lives in the last MiB
MIB = 1024 * 1024

MIN_ESP_SIZE_MB = 33  # mkfs.vfat refuses FAT32 below this
MIN_ROOT_SIZE_MB = 64

_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


# ==============================================================================
# Build Configuration
# ==============================================================================


class BaseSystem(Enum):
    """Base distribution the image is bootstrapped from."""

    DEBIAN = "debian"
    ALPINE = "alpine"


class OutputFormat(Enum):
    """Which image containers end up in the output directory."""

    RAW = "raw"
    VMDK = "vmdk"
    BOTH = "both"

    @property
    def wants_vmdk(self) -> bool:
        return self in (OutputFormat.VMDK, OutputFormat.BOTH)

    @property
    def keeps_raw(self) -> bool:
        return self in (OutputFormat.RAW, OutputFormat.BOTH)


@dataclass(frozen=True)
class BuildConfig:
    """Inputs of a single build. Immutable once the build starts."""

    base_system: BaseSystem = BaseSystem.DEBIAN
    version: str = "latest"
    include_docker: bool = False
    output_format: OutputFormat = OutputFormat.RAW
    compress: bool = False
    image_size_mb: int = 2048
    root_password: str = "landscape"
    timezone: str = "Asia/Shanghai"
    locale: str = "en_US.UTF-8"
    esp_size_mb: int = 200
    landscape_repo: str = "https://github.com/ThisSeanZhang/landscape"
    debian_release: str = "trixie"
    apt_mirror: str = "http://deb.debian.org/debian"
    alpine_release: str = "v3.21"
    alpine_mirror: str = "https://dl-cdn.alpinelinux.org/alpine"

    @classmethod
    def from_settings(cls, values: dict[str, Any], **overrides: Any) -> BuildConfig:
        """Build a config from a settings dict, applying non-None overrides.

        Raises:
            ConfigurationError: If an enum value or number cannot be parsed
        """
        merged = dict(values)
        merged.update({key: value for key, value in overrides.items() if value is not None})
        try:
            base_system = BaseSystem(str(merged.get("base_system", "debian")).lower())
        except ValueError as error:
            raise ConfigurationError(
                f"Unknown base system '{merged.get('base_system')}'. Use 'debian' or 'alpine'."
            ) from error
        try:
            output_format = OutputFormat(str(merged.get("output_format", "raw")).lower())
        except ValueError as error:
            raise ConfigurationError(
                f"Unknown output format '{merged.get('output_format')}'. "
                f"Use 'raw', 'vmdk' or 'both'."
            ) from error
        try:
            image_size_mb = int(merged.get("image_size_mb", cls.image_size_mb))
            esp_size_mb = int(merged.get("esp_size_mb", cls.esp_size_mb))
        except (TypeError, ValueError) as error:
            raise ConfigurationError(f"Image sizes must be whole megabytes: {error}") from error

        return cls(
            base_system=base_system,
            version=str(merged.get("landscape_version", cls.version)),
            include_docker=_as_bool(merged.get("include_docker", False)),
            output_format=output_format,
            compress=_as_bool(merged.get("compress_output", False)),
            image_size_mb=image_size_mb,
            root_password=str(merged.get("root_password", cls.root_password)),
            timezone=str(merged.get("timezone", cls.timezone)),
            locale=str(merged.get("locale", cls.locale)),
            esp_size_mb=esp_size_mb,
            landscape_repo=str(merged.get("landscape_repo", cls.landscape_repo)).rstrip("/"),
            debian_release=str(merged.get("debian_release", cls.debian_release)),
            apt_mirror=str(merged.get("apt_mirror", cls.apt_mirror)).rstrip("/"),
            alpine_release=str(merged.get("alpine_release", cls.alpine_release)),
            alpine_mirror=str(merged.get("alpine_mirror", cls.alpine_mirror)).rstrip("/"),
        )

    def with_overrides(self, **changes: Any) -> BuildConfig:
        return replace(self, **changes)

    def validate(self) -> None:
        """Check every input before anything on disk is touched.

        Raises:
            ConfigurationError: With a message naming the offending field
        """
        if not _VERSION_PATTERN.match(self.version):
            raise ConfigurationError(f"Invalid version selector: {self.version!r}")
        if self.esp_size_mb < MIN_ESP_SIZE_MB:
            raise ConfigurationError(
                f"System partition must be at least {MIN_ESP_SIZE_MB} MB, got {self.esp_size_mb}"
            )
        minimum = self.minimum_image_size_mb
        if self.image_size_mb < minimum:
            raise ConfigurationError(
                f"Image size {self.image_size_mb} MB is too small, need at least {minimum} MB"
            )
        if not self.root_password or any(c in self.root_password for c in ":\n\r"):
            raise ConfigurationError("Root password must be non-empty and contain no ':' or newlines")
        if not self.timezone or ".." in self.timezone or self.timezone.startswith("/"):
            raise ConfigurationError(f"Invalid timezone: {self.timezone!r}")
        if not self.locale or any(c.isspace() for c in self.locale):
            raise ConfigurationError(f"Invalid locale: {self.locale!r}")

    @property
    def minimum_image_size_mb(self) -> int:
        # 1 MiB head + 1 MiB BIOS boot + ESP + root + 1 MiB tail reserve
        return 1 + 1 + self.esp_size_mb + MIN_ROOT_SIZE_MB + 1

    @property
    def image_stem(self) -> str:
        stem = "landscape-mini-x86"
        if self.base_system is BaseSystem.ALPINE:
            stem += "-alpine"
        if self.include_docker:
            stem += "-docker"
        return stem

    @property
    def download_base(self) -> str:
        if self.version == "latest":
            return f"{self.landscape_repo}/releases/latest/download"
        return f"{self.landscape_repo}/releases/download/{self.version}"

    @property
    def payload_binary_name(self) -> str:
        # musl build for Alpine, glibc build for Debian
        suffix = "-musl" if self.base_system is BaseSystem.ALPINE else ""
        return f"landscape-webserver-x86_64{suffix}"

    @property
    def mirror(self) -> str:
        if self.base_system is BaseSystem.ALPINE:
            return self.alpine_mirror
        return self.apt_mirror

    @property
    def release(self) -> str:
        if self.base_system is BaseSystem.ALPINE:
            return self.alpine_release
        return self.debian_release


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class BuildPaths:
    """Filesystem locations used by one build."""

    work_dir: Path
    rootfs_dir: Path
    download_dir: Path
    output_dir: Path
    image: Path
    vmdk: Path

    @classmethod
    def for_config(cls, config: BuildConfig, base_dir: Path | None = None) -> BuildPaths:
        base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        work_dir = base_dir / "work"
        output_dir = base_dir / "output"
        return cls(
            work_dir=work_dir,
            rootfs_dir=work_dir / "rootfs",
            download_dir=work_dir / "downloads",
            output_dir=output_dir,
            image=output_dir / f"{config.image_stem}.img",
            vmdk=output_dir / f"{config.image_stem}.vmdk",
        )


# ==============================================================================
# Phases
# ==============================================================================


class Phase(IntEnum):
    """The eight ordered build phases.

    Resuming at phase N assumes the postconditions of every phase below N
    already hold on disk. Phases 3-7 operate on an attached, mounted image,
    so resuming into them reattaches the existing image file.
    """

    DOWNLOAD = 1
    CREATE_IMAGE = 2
    BOOTSTRAP = 3
    CONFIGURE = 4
    INSTALL_PAYLOAD = 5
    INSTALL_DOCKER = 6
    CLEANUP_AND_SHRINK = 7
    REPORT = 8

    @property
    def title(self) -> str:
        return _PHASE_TITLES[self]

    @property
    def postcondition(self) -> str:
        return _PHASE_POSTCONDITIONS[self]

    @property
    def slug(self) -> str:
        return f"phase-{int(self)}-{self.name.lower().replace('_', '-')}"

    @property
    def needs_image(self) -> bool:
        return Phase.BOOTSTRAP <= self <= Phase.CLEANUP_AND_SHRINK


_PHASE_TITLES = {
    Phase.DOWNLOAD: "Download",
    Phase.CREATE_IMAGE: "Create Image",
    Phase.BOOTSTRAP: "Bootstrap",
    Phase.CONFIGURE: "Configure",
    Phase.INSTALL_PAYLOAD: "Install Landscape",
    Phase.INSTALL_DOCKER: "Install Docker",
    Phase.CLEANUP_AND_SHRINK: "Cleanup & Shrink",
    Phase.REPORT: "Report",
}

_PHASE_POSTCONDITIONS = {
    Phase.DOWNLOAD: "payload binary and static assets are in the download cache",
    Phase.CREATE_IMAGE: "image is partitioned, formatted and mounted",
    Phase.BOOTSTRAP: "a minimal self-consistent root filesystem exists",
    Phase.CONFIGURE: "the image is independently bootable",
    Phase.INSTALL_PAYLOAD: "payload and first-boot services are installed",
    Phase.INSTALL_DOCKER: "container runtime is installed when requested",
    Phase.CLEANUP_AND_SHRINK: "image is trimmed, shrunk, repartitioned and truncated",
    Phase.REPORT: "output files are reported",
}


# ==============================================================================
# Disk Geometry
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """One GPT entry, in 512-byte sectors (end inclusive)."""

    index: int
    start_sector: int
    end_sector: int
    type_code: str
    name: str = ""

    @property
    def size_sectors(self) -> int:
        return self.end_sector - self.start_sector + 1

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * SECTOR_SIZE

    @property
    def is_aligned(self) -> bool:
        return (
            self.start_sector % ALIGNMENT_SECTORS == 0
            and (self.end_sector + 1) % ALIGNMENT_SECTORS == 0
        )


@dataclass(frozen=True)
class PartitionTable:
    """The three-entry hybrid boot layout: BIOS boot, ESP, root."""

    partitions: tuple[Partition, ...]
    sector_size: int = SECTOR_SIZE

    def partition(self, index: int) -> Partition:
        for part in self.partitions:
            if part.index == index:
                return part
        raise KeyError(f"No partition {index}")

    @property
    def bios_boot(self) -> Partition:
        return self.partition(1)

    @property
    def esp(self) -> Partition:
        return self.partition(2)

    @property
    def root(self) -> Partition:
        return self.partition(3)

    def validate(self) -> None:
        """Check the layout invariants.

        Raises:
            ValueError: If the table does not hold exactly three aligned,
                ascending, non-overlapping partitions numbered 1-3
        """
        if self.sector_size != SECTOR_SIZE:
            raise ValueError(f"Unsupported sector size {self.sector_size}")
        if [p.index for p in self.partitions] != [1, 2, 3]:
            raise ValueError(
                f"Expected partitions 1, 2, 3; got {[p.index for p in self.partitions]}"
            )
        previous_end = -1
        for part in self.partitions:
            if part.end_sector < part.start_sector:
                raise ValueError(f"Partition {part.index} ends before it starts")
            if not part.is_aligned:
                raise ValueError(
                    f"Partition {part.index} ({part.start_sector}-{part.end_sector}) "
                    f"is not {ALIGNMENT_SECTORS}-sector aligned"
                )
            if part.start_sector <= previous_end:
                raise ValueError(f"Partition {part.index} overlaps its predecessor")
            previous_end = part.end_sector

    def with_root_end(self, end_sector: int) -> PartitionTable:
        parts = tuple(
            replace(p, end_sector=end_sector) if p.index == 3 else p for p in self.partitions
        )
        return replace(self, partitions=parts)


@dataclass(frozen=True)
class FilesystemInfo:
    """Superblock summary of an ext-family filesystem."""

    block_count: int
    block_size: int
    uuid: str
    free_blocks: int | None = None
    label: str | None = None

    @property
    def size_bytes(self) -> int:
        return self.block_count * self.block_size


# ==============================================================================
# Resources
# ==============================================================================


@dataclass(frozen=True)
class LoopBinding:
    """An image file exposed as a partitioned loop block device."""

    device: str  # e.g., "/dev/loop0"
    image: Path

    def partition_device(self, index: int) -> str:
        return f"{self.device}p{index}"


@dataclass(frozen=True)
class MountEntry:
    source: str
    target: Path
    fstype: str | None = None
    options: tuple[str, ...] = ()
    bind: bool = False


# ==============================================================================
# Results
# ==============================================================================


@dataclass(frozen=True)
class ShrinkResult:
    size_before: int
    size_after: int
    filesystem: FilesystemInfo
    table: PartitionTable


@dataclass(frozen=True)
class OutputFile:
    label: str
    path: Path
    size_bytes: int


@dataclass(frozen=True)
class BuildReport:
    image: Path
    outputs: list[OutputFile] = field(default_factory=list)
    root_password: str = "landscape"
    shrink: ShrinkResult | None = None
