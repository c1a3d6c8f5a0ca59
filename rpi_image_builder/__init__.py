"""Build bootable Raspberry Pi disk images from a prepared root filesystem."""

from .__version__ import __version__


__all__ = ["__version__"]
