"""Setup script for landscape-mini-builder."""

from pathlib import Path

from setuptools import find_packages, setup

# Read the version from __version__.py
version_dict = {}
with open("landscape_mini/__version__.py") as f:
    exec(f.read(), version_dict)

VERSION = version_dict["__version__"]

# Read the long description from README
README_PATH = Path("README.md")
README = README_PATH.read_text(encoding="utf-8") if README_PATH.exists() else ""

setup(
    name="landscape-mini-builder",
    version=VERSION,
    description="Minimal x86 UEFI/BIOS disk image builder for the Landscape Router",
    long_description=README,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "loguru>=0.7.0",
        "aiohttp>=3.9.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.10.0",
            "pytest-asyncio>=0.21.0",
            "ruff>=0.1.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "landscape-mini=landscape_mini.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Topic :: System :: Installation/Setup",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    keywords="disk-image debootstrap alpine router grub uefi loop-device",
    include_package_data=True,
    package_data={
        "landscape_mini": [
            "rootfs/etc/systemd/system/*.service",
            "rootfs/etc/init.d/*",
            "rootfs/etc/sysctl.d/*.conf",
            "rootfs/usr/local/bin/*.sh",
        ],
    },
)
