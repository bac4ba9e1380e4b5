"""Installation of the Landscape payload into the image (shared part of phase 5).

Installs:
    - /root/landscape-webserver (glibc or musl build, mode 0755)
    - /root/.landscape-router/ web assets extracted from static.zip
    - /root/.landscape-router/landscape_init.toml when one is supplied
    - /etc/sysctl.d/99-landscape.conf router tuning
    - /usr/local/bin/expand-rootfs.sh and setup-mirror.sh helpers

Service registration is the backend's job (install_services), called by the
orchestrator right after this.
"""

from __future__ import annotations

import shutil
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from landscape_mini.build.download import STATIC_ASSETS_NAME
from landscape_mini.exceptions import DownloadError
from landscape_mini.logging import LoggerFactory


if TYPE_CHECKING:
    from landscape_mini.backends import Backend
    from landscape_mini.build.session import BuildSession


log = LoggerFactory.for_build()

BINARY_TARGET = "root/landscape-webserver"
DATA_DIR = "root/.landscape-router"
INIT_CONFIG_NAME = "landscape_init.toml"
SYSCTL_ASSET = "etc/sysctl.d/99-landscape.conf"
HELPER_SCRIPTS = ("usr/local/bin/expand-rootfs.sh", "usr/local/bin/setup-mirror.sh")


def default_init_config() -> Path:
    return Path.cwd() / "configs" / INIT_CONFIG_NAME


def _cached(session: BuildSession, name: str) -> Path:
    path = session.paths.download_dir / name
    if not path.is_file():
        raise DownloadError(str(path), "not in the download cache, run phase 1 first")
    return path


def install_binary(session: BuildSession) -> Path:
    source = _cached(session, session.config.payload_binary_name)
    target = session.rootfs_path(BINARY_TARGET)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    target.chmod(0o755)
    log.info(f"Installed {source.name} as /{BINARY_TARGET}")
    return target


def install_static_assets(session: BuildSession) -> Path:
    """Extract static.zip under the payload data directory.

    Raises:
        DownloadError: If the cached archive is missing or not a zip file
    """
    archive_path = _cached(session, STATIC_ASSETS_NAME)
    data_dir = session.rootfs_path(DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            # extractall strips absolute paths and ".." components
            archive.extractall(data_dir)
            count = len(archive.namelist())
    except zipfile.BadZipFile as error:
        raise DownloadError(str(archive_path), f"corrupt archive: {error}") from error
    log.info(f"Extracted {count} web assets to /{DATA_DIR}")
    return data_dir


def install_init_config(session: BuildSession, init_config: Optional[Path] = None) -> Optional[Path]:
    source = init_config or default_init_config()
    if not source.is_file():
        log.info(f"[SKIP] No {INIT_CONFIG_NAME} found (router starts in --auto mode)")
        return None
    target = session.rootfs_path(f"{DATA_DIR}/{INIT_CONFIG_NAME}")
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    log.info(f"Installed {INIT_CONFIG_NAME}")
    return target


def install_payload(
    session: BuildSession,
    backend: Backend,
    init_config: Optional[Path] = None,
) -> None:
    """Copy the payload, its assets and the first-boot helpers into the rootfs."""
    install_binary(session)
    install_static_assets(session)
    install_init_config(session, init_config)

    backend.install_asset(session, SYSCTL_ASSET)
    for script in HELPER_SCRIPTS:
        backend.install_asset(session, script, mode=0o755)
    log.info("Installed sysctl tuning and helper scripts")
