"""Provision SD cards with Raspberry Pi OS and first-boot configuration."""

from .__version__ import __version__


__all__ = ["__version__"]
