"""Durable OAuth credential management for Google Workspace tools."""

from gworkspace_credentials.__version__ import __version__

__all__ = ["__version__"]
