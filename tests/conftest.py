"""
Pytest configuration and shared fixtures for landscape-mini tests.

This module provides common fixtures and utilities used across all test modules.
None of the tests need root or the host tools: every external command goes
through run_command, which the tests patch.
"""

import json
import subprocess
from pathlib import Path
from typing import Optional, Sequence

import pytest

from landscape_mini.build.session import BuildSession
from landscape_mini.domain import BuildConfig, BuildPaths, LoopBinding


def completed(
    stdout: str = "",
    stderr: str = "",
    returncode: int = 0,
    args: Optional[Sequence[str]] = None,
) -> subprocess.CompletedProcess:
    """Build a CompletedProcess the way run_command returns it."""
    return subprocess.CompletedProcess(
        args=list(args or []), returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def make_result():
    """Factory fixture for fake run_command results."""
    return completed


# ==============================================================================
# Build Fixtures
# ==============================================================================


@pytest.fixture
def build_config() -> BuildConfig:
    """Debian build with a 1 GiB image."""
    return BuildConfig(image_size_mb=1024)


@pytest.fixture
def build_paths(tmp_path, build_config) -> BuildPaths:
    """Build paths rooted in pytest's temporary directory."""
    return BuildPaths.for_config(build_config, tmp_path)


@pytest.fixture
def loop_binding(build_paths) -> LoopBinding:
    return LoopBinding(device="/dev/loop7", image=build_paths.image)


@pytest.fixture
def session(build_config, build_paths) -> BuildSession:
    """
    A real BuildSession that has not been entered.

    Signal handlers are not installed; tests attach fake resources directly.
    """
    build_paths.rootfs_dir.mkdir(parents=True, exist_ok=True)
    return BuildSession(build_config, build_paths)


@pytest.fixture
def attached_session(session, loop_binding) -> BuildSession:
    """Session that believes it holds a loop binding."""
    session.loop = loop_binding
    return session


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


@pytest.fixture
def sfdisk_json_output() -> str:
    """``sfdisk --json`` for a freshly partitioned 1024 MiB image."""
    return json.dumps(
        {
            "partitiontable": {
                "label": "gpt",
                "id": "5D1E3A8B-3C36-4B7B-8E06-2B1A5F5C1E22",
                "device": "landscape-mini-x86.img",
                "unit": "sectors",
                "firstlba": 2048,
                "lastlba": 2097118,
                "sectorsize": 512,
                "partitions": [
                    {
                        "node": "landscape-mini-x86.img1",
                        "start": 2048,
                        "size": 2048,
                        "type": "21686148-6449-6E6F-744E-656564454649",
                        "uuid": "0B0D5F43-5C1C-4C52-9D1F-1C2E3A4B5C6D",
                        "name": "bios",
                    },
                    {
                        "node": "landscape-mini-x86.img2",
                        "start": 4096,
                        "size": 409600,
                        "type": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                        "uuid": "9E8D7C6B-5A49-4838-A726-15F4E3D2C1B0",
                        "name": "ESP",
                    },
                    {
                        "node": "landscape-mini-x86.img3",
                        "start": 413696,
                        "size": 1681408,
                        "type": "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
                        "uuid": "3F2E1D0C-BA98-4765-8432-10FEDCBA9876",
                        "name": "root",
                    },
                ],
            }
        }
    )


@pytest.fixture
def dumpe2fs_output() -> str:
    """``dumpe2fs -h`` header of a 150 MiB ext4 filesystem."""
    return """dumpe2fs 1.47.0 (5-Feb-2023)
Filesystem volume name:   rootfs
Last mounted on:          /
Filesystem UUID:          0b6c7c8e-2f4a-4d1e-9a3b-6c5d4e3f2a1b
Filesystem magic number:  0xEF53
Filesystem revision #:    1 (dynamic)
Filesystem features:      ext_attr resize_inode dir_index filetype extent 64bit flex_bg sparse_super large_file huge_file dir_nlink extra_isize metadata_csum
Inode count:              9600
Block count:              38400
Reserved block count:     384
Free blocks:              1210
Free inodes:              2011
First block:              0
Block size:               4096
Fragment size:            4096
"""


@pytest.fixture
def rootfs(build_paths) -> Path:
    """Empty rootfs directory with the usual top-level layout."""
    root = build_paths.rootfs_dir
    for sub in ("etc", "root", "usr/local/bin", "var/log", "tmp"):
        (root / sub).mkdir(parents=True, exist_ok=True)
    return root
