"""Distribution backends.

Use create_backend() to get the backend for a build configuration; the rest
of the pipeline only depends on the Backend interface.
"""

from __future__ import annotations

from landscape_mini.backends.alpine import AlpineBackend
from landscape_mini.backends.base import Backend
from landscape_mini.backends.debian import DebianBackend
from landscape_mini.domain import BaseSystem, BuildConfig
from landscape_mini.exceptions import ConfigurationError


BACKENDS: dict[BaseSystem, type[Backend]] = {
    BaseSystem.DEBIAN: DebianBackend,
    BaseSystem.ALPINE: AlpineBackend,
}


def create_backend(config: BuildConfig) -> Backend:
    """Instantiate the backend matching config.base_system.

    Raises:
        ConfigurationError: If no backend handles the base system
    """
    try:
        backend_class = BACKENDS[config.base_system]
    except KeyError as error:
        raise ConfigurationError(f"No backend for base system {config.base_system!r}") from error
    return backend_class(config)


__all__ = ["AlpineBackend", "Backend", "BACKENDS", "DebianBackend", "create_backend"]
