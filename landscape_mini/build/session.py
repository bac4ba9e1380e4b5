"""Resource lifecycle for a single build run.

A ``BuildSession`` owns the one loop binding and every mount point a build
acquires. All of them are released on every exit path: normal completion,
a raised exception, or a termination signal.

Release rules:
    - Every acquisition pushes its release callback onto an ExitStack, so
      release order is strictly the reverse of acquisition order
    - Early release (unmount(), unmount_pseudo_filesystems(), detach_loop())
      is allowed and idempotent, the matching callback becomes a no-op
    - cleanup() never raises; failures are logged and counted
    - SIGINT, SIGTERM and SIGHUP raise BuildInterrupted while the session is
      active, so an interrupted build unwinds through the same path. A signal
      that arrives while a resource is being acquired is raised once its
      release callback is registered

Usage:
    with BuildSession(config, paths) as session:
        session.attach_image(paths.image)
        session.mount_image()
        ...
"""

from __future__ import annotations

import os
import signal
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any, Iterator

from landscape_mini.domain import BuildConfig, BuildPaths, LoopBinding, MountEntry
from landscape_mini.exceptions import (
    BuildError,
    BuildInterrupted,
    LoopDeviceError,
    MountError,
)
from landscape_mini.logging import LoggerFactory
from landscape_mini.storage import loop
from landscape_mini.storage.mount import is_mounted, mount, unmount_with_retry


log = LoggerFactory.for_image()

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)

ROOT_PARTITION = 3
ESP_PARTITION = 2


class BuildSession:
    """Loop binding and mount set of one build, released exactly once."""

    def __init__(self, config: BuildConfig, paths: BuildPaths):
        self.config = config
        self.paths = paths
        self.loop: LoopBinding | None = None
        self.mounts: list[MountEntry] = []
        self.failures: list[str] = []
        self._pseudo_targets: set[Path] = set()
        self._stack = ExitStack()
        self._previous_handlers: dict[int, Any] = {}
        self._releasing = False
        self._deferring = False
        self._pending_signal: str | None = None

    # ------------------------------------------------------------------
    # Context management and signals
    # ------------------------------------------------------------------

    def __enter__(self) -> BuildSession:
        self._install_signal_handlers()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.cleanup()
        finally:
            self._restore_signal_handlers()
        return False

    def _handle_signal(self, signum: int, frame) -> None:
        name = signal.Signals(signum).name
        if self._releasing:
            log.warning(f"Received {name} during cleanup, finishing cleanup first")
            return
        if self._deferring:
            log.warning(f"Received {name}, aborting once the resource being acquired is tracked")
            self._pending_signal = name
            return
        log.warning(f"Received {name}, aborting build")
        raise BuildInterrupted(name)

    def _install_signal_handlers(self) -> None:
        for signum in HANDLED_SIGNALS:
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # signal.signal only works in the main thread
                log.debug(f"Cannot install handler for {signal.Signals(signum).name}")

    def _restore_signal_handlers(self) -> None:
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            signal.signal(signum, handler)

    @contextmanager
    def _signals_deferred(self) -> Iterator[None]:
        """Hold back BuildInterrupted until an acquired resource is registered."""
        self._deferring = True
        try:
            yield
        finally:
            self._deferring = False
            pending, self._pending_signal = self._pending_signal, None
        if pending is not None:
            raise BuildInterrupted(pending)

    # ------------------------------------------------------------------
    # Loop device
    # ------------------------------------------------------------------

    def attach_image(self, image: Path) -> LoopBinding:
        """Bind the image to a loop device.

        Raises:
            LoopDeviceError: If a binding is already held or losetup fails
            ImageNotFoundError: If the image file does not exist
        """
        if self.loop is not None:
            raise LoopDeviceError(
                f"Session already holds {self.loop.device}, refusing a second binding",
                image=str(image),
            )
        with self._signals_deferred():
            binding = loop.attach(Path(image))
            self.loop = binding
            self._stack.callback(self._release_loop, binding)
        return binding

    def require_loop(self) -> LoopBinding:
        if self.loop is None:
            raise LoopDeviceError("No loop device attached to this build")
        return self.loop

    def detach_loop(self) -> None:
        """Release the loop binding now. No-op when nothing is attached.

        Raises:
            MountError: If partitions of the image are still mounted
            LoopDeviceError: If losetup -d fails
        """
        if self.loop is None:
            return
        if self.mounts:
            raise MountError(
                f"Cannot detach {self.loop.device}: "
                f"{', '.join(str(m.target) for m in self.mounts)} still mounted"
            )
        binding = self.loop
        loop.detach(binding)
        self.loop = None

    def _release_loop(self, binding: LoopBinding) -> None:
        if self.loop is not binding:
            return
        self.loop = None
        try:
            loop.detach(binding)
        except BuildError as error:
            self._record_failure(error)

    # ------------------------------------------------------------------
    # Mounts
    # ------------------------------------------------------------------

    def _acquire_mount(self, entry: MountEntry, skip_if_mounted: bool = False) -> bool:
        if skip_if_mounted and is_mounted(entry.target):
            log.debug(f"{entry.target} already mounted, skipping")
            return False
        with self._signals_deferred():
            mount(entry)
            self.mounts.append(entry)
            self._stack.callback(self._release_mount, entry)
        return True

    def _release_mount(self, entry: MountEntry) -> None:
        if entry not in self.mounts:
            return
        self.mounts.remove(entry)
        self._pseudo_targets.discard(entry.target)
        try:
            if unmount_with_retry(entry.target):
                log.warning(f"{entry.target} needed a lazy unmount")
        except BuildError as error:
            self._record_failure(error)

    def mount_image(self) -> None:
        """Mount the root partition on the rootfs dir and the ESP under it."""
        binding = self.require_loop()
        rootfs = self.paths.rootfs_dir
        self._acquire_mount(
            MountEntry(binding.partition_device(ROOT_PARTITION), rootfs, fstype="ext4")
        )
        self._acquire_mount(
            MountEntry(binding.partition_device(ESP_PARTITION), rootfs / "boot" / "efi", fstype="vfat")
        )
        log.info(f"Mounted image partitions under {rootfs}")

    def pseudo_filesystem_entries(self) -> list[MountEntry]:
        rootfs = self.paths.rootfs_dir
        return [
            MountEntry("/dev", rootfs / "dev", bind=True),
            MountEntry("/dev/pts", rootfs / "dev" / "pts", bind=True),
            MountEntry("proc", rootfs / "proc", fstype="proc"),
            MountEntry("sysfs", rootfs / "sys", fstype="sysfs"),
        ]

    def mount_pseudo_filesystems(self) -> None:
        """Bind /dev and /dev/pts, mount proc and sysfs. Idempotent."""
        for entry in self.pseudo_filesystem_entries():
            if entry.target in self._pseudo_targets:
                continue
            if self._acquire_mount(entry, skip_if_mounted=True):
                self._pseudo_targets.add(entry.target)

    def unmount_pseudo_filesystems(self) -> None:
        """Unmount the chroot pseudo filesystems in reverse mount order.

        Raises:
            UnmountFailedError: If a target stays busy through every strategy
        """
        for entry in reversed(list(self.mounts)):
            if entry.target in self._pseudo_targets:
                self._unmount_entry(entry)

    def unmount(self, target: Path) -> None:
        """Unmount target and every tracked mount nested below it.

        Raises:
            UnmountFailedError: If a target stays busy through every strategy
        """
        target = Path(target)
        for entry in reversed(list(self.mounts)):
            if entry.target == target or target in entry.target.parents:
                self._unmount_entry(entry)

    def _unmount_entry(self, entry: MountEntry) -> None:
        if unmount_with_retry(entry.target):
            log.warning(f"{entry.target} needed a lazy unmount")
        self.mounts.remove(entry)
        self._pseudo_targets.discard(entry.target)

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def reattach(self) -> LoopBinding:
        """Re-bind and remount an existing image for a resumed build.

        Raises:
            ImageNotFoundError: If the image file is missing
        """
        log.info(f"Resuming from existing image {self.paths.image}")
        binding = self.attach_image(self.paths.image)
        self.mount_image()
        self.mount_pseudo_filesystems()
        return binding

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def rootfs_path(self, relative: str | Path) -> Path:
        """Host path of a file inside the image root filesystem.

        The final component is not resolved, so a symlink inside the rootfs
        can be replaced rather than followed.

        Raises:
            ValueError: If the path resolves outside the rootfs
        """
        root = self.paths.rootfs_dir.resolve()
        relative = os.path.normpath(str(relative).lstrip("/"))
        if relative == ".":
            return root
        if relative == ".." or relative.startswith("../"):
            raise ValueError(f"{relative!r} escapes the root filesystem")
        candidate = root / relative
        parent = candidate.parent.resolve()
        if parent != root and root not in parent.parents:
            raise ValueError(f"{relative!r} resolves outside the root filesystem ({parent})")
        return parent / candidate.name

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def _record_failure(self, error: BaseException) -> None:
        log.error(f"Cleanup: {error}")
        self.failures.append(str(error))

    def release_all(self) -> list[str]:
        """Release every held resource in reverse acquisition order.

        Returns:
            Messages of releases that failed; never raises
        """
        stack, self._stack = self._stack, ExitStack()
        start = len(self.failures)
        self._releasing = True
        try:
            stack.close()
        except Exception as error:  # noqa: BLE001
            self._record_failure(error)
        finally:
            self._releasing = False
        return self.failures[start:]

    def cleanup(self) -> bool:
        """Final release pass. Safe to call any number of times.

        Returns:
            True if everything was released cleanly
        """
        if self.loop is None and not self.mounts:
            log.debug("Cleanup: nothing to release")
            self.release_all()
            return True
        log.info("Cleaning up build resources")
        failures = self.release_all()
        if failures:
            log.warning(f"Cleanup finished with {len(failures)} error(s)")
            return False
        log.info("Cleanup complete")
        return True
