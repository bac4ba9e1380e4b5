"""Tests for domain models."""

from pathlib import Path

import pytest

from landscape_mini.domain import (
    BaseSystem,
    BuildConfig,
    BuildPaths,
    FilesystemInfo,
    LoopBinding,
    OutputFormat,
    Partition,
    PartitionTable,
    Phase,
)
from landscape_mini.exceptions import ConfigurationError


def _table(root_end=2095103):
    return PartitionTable(
        partitions=(
            Partition(1, 2048, 4095, "EF02", "bios"),
            Partition(2, 4096, 413695, "EF00", "ESP"),
            Partition(3, 413696, root_end, "8300", "root"),
        )
    )


class TestBuildConfig:
    """Tests for BuildConfig."""

    def test_defaults(self):
        config = BuildConfig()

        assert config.base_system is BaseSystem.DEBIAN
        assert config.version == "latest"
        assert config.output_format is OutputFormat.RAW
        config.validate()

    def test_from_settings_applies_overrides(self):
        config = BuildConfig.from_settings(
            {"base_system": "debian", "image_size_mb": 2048},
            base_system="alpine",
            include_docker=True,
            image_size_mb=None,
        )

        assert config.base_system is BaseSystem.ALPINE
        assert config.include_docker is True
        assert config.image_size_mb == 2048

    def test_from_settings_strips_trailing_slashes(self):
        config = BuildConfig.from_settings({"apt_mirror": "http://mirror/debian/"})

        assert config.apt_mirror == "http://mirror/debian"

    def test_from_settings_string_booleans(self):
        config = BuildConfig.from_settings({"include_docker": "yes", "compress_output": "no"})

        assert config.include_docker is True
        assert config.compress is False

    def test_unknown_base_system(self):
        with pytest.raises(ConfigurationError, match="Unknown base system"):
            BuildConfig.from_settings({"base_system": "arch"})

    def test_unknown_output_format(self):
        with pytest.raises(ConfigurationError, match="Unknown output format"):
            BuildConfig.from_settings({"output_format": "qcow2"})

    def test_non_numeric_size(self):
        with pytest.raises(ConfigurationError):
            BuildConfig.from_settings({"image_size_mb": "big"})

    @pytest.mark.parametrize(
        "changes",
        [
            {"version": "../etc"},
            {"version": ""},
            {"image_size_mb": 100},
            {"esp_size_mb": 16},
            {"root_password": ""},
            {"root_password": "a:b"},
            {"timezone": "../../etc/passwd"},
            {"locale": "en US"},
        ],
    )
    def test_validate_rejects(self, changes):
        with pytest.raises(ConfigurationError):
            BuildConfig().with_overrides(**changes).validate()

    def test_minimum_image_size(self):
        config = BuildConfig(esp_size_mb=200)

        assert config.minimum_image_size_mb == 267
        config.with_overrides(image_size_mb=267).validate()

    @pytest.mark.parametrize(
        "base,docker,stem",
        [
            (BaseSystem.DEBIAN, False, "landscape-mini-x86"),
            (BaseSystem.DEBIAN, True, "landscape-mini-x86-docker"),
            (BaseSystem.ALPINE, False, "landscape-mini-x86-alpine"),
            (BaseSystem.ALPINE, True, "landscape-mini-x86-alpine-docker"),
        ],
    )
    def test_image_stem(self, base, docker, stem):
        assert BuildConfig(base_system=base, include_docker=docker).image_stem == stem

    def test_download_base_latest(self):
        config = BuildConfig()

        assert config.download_base.endswith("/releases/latest/download")

    def test_download_base_tagged(self):
        config = BuildConfig(version="v0.8.1")

        assert config.download_base.endswith("/releases/download/v0.8.1")

    def test_payload_binary_variant(self):
        assert BuildConfig().payload_binary_name == "landscape-webserver-x86_64"
        assert (
            BuildConfig(base_system=BaseSystem.ALPINE).payload_binary_name
            == "landscape-webserver-x86_64-musl"
        )

    def test_mirror_and_release_follow_base(self):
        alpine = BuildConfig(base_system=BaseSystem.ALPINE)

        assert alpine.release == "v3.21"
        assert alpine.mirror == alpine.alpine_mirror
        assert BuildConfig().release == "trixie"


class TestOutputFormat:
    """Tests for OutputFormat helpers."""

    def test_flags(self):
        assert OutputFormat.RAW.keeps_raw and not OutputFormat.RAW.wants_vmdk
        assert OutputFormat.VMDK.wants_vmdk and not OutputFormat.VMDK.keeps_raw
        assert OutputFormat.BOTH.wants_vmdk and OutputFormat.BOTH.keeps_raw


class TestBuildPaths:
    """Tests for BuildPaths."""

    def test_layout(self, tmp_path):
        paths = BuildPaths.for_config(BuildConfig(include_docker=True), tmp_path)

        assert paths.rootfs_dir == tmp_path / "work" / "rootfs"
        assert paths.download_dir == tmp_path / "work" / "downloads"
        assert paths.image == tmp_path / "output" / "landscape-mini-x86-docker.img"
        assert paths.vmdk == tmp_path / "output" / "landscape-mini-x86-docker.vmdk"


class TestPhase:
    """Tests for Phase."""

    def test_order_and_titles(self):
        assert [int(p) for p in Phase] == list(range(1, 9))
        assert Phase.CLEANUP_AND_SHRINK.title == "Cleanup & Shrink"

    def test_slug(self):
        assert Phase.INSTALL_DOCKER.slug == "phase-6-install-docker"

    def test_needs_image(self):
        assert [p for p in Phase if p.needs_image] == [
            Phase.BOOTSTRAP,
            Phase.CONFIGURE,
            Phase.INSTALL_PAYLOAD,
            Phase.INSTALL_DOCKER,
            Phase.CLEANUP_AND_SHRINK,
        ]

    def test_every_phase_has_postcondition(self):
        assert all(p.postcondition for p in Phase)


class TestPartitionTable:
    """Tests for Partition and PartitionTable."""

    def test_partition_sizes(self):
        part = Partition(2, 4096, 413695, "EF00")

        assert part.size_sectors == 409600
        assert part.size_bytes == 200 * 1024 * 1024
        assert part.is_aligned

    def test_accessors(self):
        table = _table()

        assert table.bios_boot.type_code == "EF02"
        assert table.esp.start_sector == 4096
        assert table.root.start_sector == 413696
        with pytest.raises(KeyError):
            table.partition(4)

    def test_valid_layout(self):
        _table().validate()

    def test_unaligned_end_rejected(self):
        with pytest.raises(ValueError, match="aligned"):
            _table(root_end=2095000).validate()

    def test_missing_partition_rejected(self):
        table = PartitionTable(partitions=_table().partitions[:2])

        with pytest.raises(ValueError, match="Expected partitions"):
            table.validate()

    def test_overlap_rejected(self):
        table = PartitionTable(
            partitions=(
                Partition(1, 2048, 4095, "EF02"),
                Partition(2, 2048, 413695, "EF00"),
                Partition(3, 413696, 2095103, "8300"),
            )
        )

        with pytest.raises(ValueError, match="overlaps"):
            table.validate()

    def test_with_root_end_only_changes_root(self):
        table = _table()
        shrunk = table.with_root_end(720895)

        assert shrunk.bios_boot == table.bios_boot
        assert shrunk.esp == table.esp
        assert shrunk.root.start_sector == table.root.start_sector
        assert shrunk.root.end_sector == 720895
        assert table.root.end_sector == 2095103


class TestSmallModels:
    """Tests for FilesystemInfo and LoopBinding."""

    def test_filesystem_size(self):
        info = FilesystemInfo(block_count=38400, block_size=4096, uuid="u")

        assert info.size_bytes == 150 * 1024 * 1024

    def test_partition_device(self):
        binding = LoopBinding("/dev/loop3", Path("/tmp/x.img"))

        assert binding.partition_device(3) == "/dev/loop3p3"
