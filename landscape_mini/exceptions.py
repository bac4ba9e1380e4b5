"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions for the build pipeline to provide
specific error handling and phase-labelled error messages.

Exception Hierarchy:
    BuildError (base)
        ├── ConfigurationError
        ├── DependencyMissingError
        ├── ResourceAcquisitionError
        │   ├── LoopDeviceError
        │   ├── ImageNotFoundError
        │   └── MountError
        │       └── UnmountFailedError
        ├── ImageCreationError
        ├── DownloadError
        ├── BackendOperationError
        ├── ShrinkIntegrityError
        ├── ToolOutputError
        ├── OutputTransformError
        ├── PhaseFailedError
        └── BuildInterrupted

Every BuildError can carry the phase it was raised in. The orchestrator sets
``error.phase`` when a phase fails, and ``str(error)`` is then prefixed with the
phase number and name.

Usage:
    from landscape_mini.exceptions import ImageNotFoundError

    if not image.exists():
        raise ImageNotFoundError(image)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable


if TYPE_CHECKING:
    from landscape_mini.domain import Phase


class BuildError(Exception):
    """Base exception for all build operations."""

    def __init__(self, message: str = ""):
        self.message = message
        self.phase: Phase | None = None
        super().__init__(message)

    def __str__(self) -> str:
        if self.phase is None:
            return self.message
        return f"[Phase {int(self.phase)}: {self.phase.title}] {self.message}"


class ConfigurationError(BuildError):
    """Invalid build inputs, detected before any mutation."""



class DependencyMissingError(BuildError):
    """A required host tool is not installed."""

    def __init__(self, missing: Iterable[str], backend: str = ""):
        self.missing = list(missing)
        self.backend = backend
        tools = ", ".join(self.missing)
        msg = f"Required host commands not found: {tools}"
        if backend:
            msg += f" (needed by the {backend} backend)"
        super().__init__(msg)


class ResourceAcquisitionError(BuildError):
    """Base exception for loop device and mount failures."""



class LoopDeviceError(ResourceAcquisitionError):
    """Loop binding could not be created or is unusable."""

    def __init__(self, message: str, image: str | None = None):
        self.image = image
        super().__init__(message)


class ImageNotFoundError(ResourceAcquisitionError):
    """A resumed build has no image file to reattach."""

    def __init__(self, image: str):
        self.image = str(image)
        super().__init__(
            f"Image file not found: {self.image}. "
            f"Run a full build first, or resume from an earlier phase."
        )


class MountError(ResourceAcquisitionError):
    """Base exception for mount-related errors."""



class UnmountFailedError(MountError):
    """A mount point stayed busy through every unmount strategy."""

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Failed to unmount {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ImageCreationError(BuildError):
    """Allocating, partitioning or formatting the disk image failed."""

    def __init__(self, message: str, image: str | None = None):
        self.image = image
        super().__init__(message)


class DownloadError(BuildError):
    """Fetching the payload or a bootstrap tool failed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Download failed for {url}: {reason}")


class BackendOperationError(BuildError):
    """A backend capability operation failed."""

    def __init__(self, operation: str, backend: str, reason: str):
        self.operation = operation
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} backend operation '{operation}' failed: {reason}")


class ShrinkIntegrityError(BuildError):
    """Filesystem check, resize or repartition failed during shrink."""



class ToolOutputError(BuildError):
    """Output of an external tool could not be parsed."""

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"Could not parse {tool} output: {reason}")


class OutputTransformError(BuildError):
    """Format conversion or compression of the finished image failed."""

    def __init__(self, transform: str, path: str, reason: str):
        self.transform = transform
        self.path = path
        self.reason = reason
        super().__init__(f"{transform} of {path} failed: {reason}")


class PhaseFailedError(BuildError):
    """Unexpected exception raised while a phase was running."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class BuildInterrupted(BuildError):
    """The build received a termination signal."""

    def __init__(self, signal_name: str):
        self.signal_name = signal_name
        super().__init__(f"Build interrupted by {signal_name}")
