"""Minimal x86-64 Landscape Router disk image builder."""

from landscape_mini.__version__ import __version__


__all__ = ["__version__"]
