"""Domain model for image builds."""

from .models import (
    AttachedDevice,
    BootMode,
    BuildOptions,
    MountPoint,
    PartitionLayout,
    infer_image_format,
    normalize_branch,
    parse_size,
    resolve_arch,
    resolve_boot_mode,
    resolve_kernel_flavor,
)

__all__ = [
    "AttachedDevice",
    "BootMode",
    "BuildOptions",
    "MountPoint",
    "PartitionLayout",
    "infer_image_format",
    "normalize_branch",
    "parse_size",
    "resolve_arch",
    "resolve_boot_mode",
    "resolve_kernel_flavor",
]
