"""Version information for landscape-mini-builder."""

__version__ = "0.3.0"
