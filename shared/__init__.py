"""Utilities shared by the launcher service and its tooling."""

from .version import __version__

__all__ = ["__version__"]
