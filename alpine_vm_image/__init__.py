"""Build bootable Alpine Linux disk images for virtual machines."""

from .__version__ import __version__

__all__ = ["__version__"]
