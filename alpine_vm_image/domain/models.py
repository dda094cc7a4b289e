"""Domain model for image builds.

Type-safe objects for the build options and for the resources a build
session acquires, plus the small resolution rules that turn command line
options into concrete choices (architecture, boot mode, kernel flavor).
"""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from alpine_vm_image.storage.exceptions import PreconditionError


# ==============================================================================
# Architecture / boot mode / kernel
# ==============================================================================

# Host machine names (uname -m) -> Alpine architecture names
_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "i386": "x86",
    "i486": "x86",
    "i586": "x86",
    "i686": "x86",
    "x86": "x86",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "armv8l": "armv7",
    "armv7l": "armv7",
    "armv7": "armv7",
    "ppc64le": "ppc64le",
    "riscv64": "riscv64",
    "s390x": "s390x",
    "loongarch64": "loongarch64",
}

BIOS_ARCHES = frozenset({"x86", "x86_64"})

# Arches for which Alpine ships the linux-virt kernel
VIRT_KERNEL_ARCHES = frozenset({"x86", "x86_64", "aarch64", "armv7", "ppc64le", "s390x"})

GRUB_EFI_TARGETS = {
    "x86": "i386-efi",
    "x86_64": "x86_64-efi",
    "aarch64": "arm64-efi",
    "armv7": "arm-efi",
    "riscv64": "riscv64-efi",
    "loongarch64": "loongarch64-efi",
}

SERIAL_CONSOLES = {
    "x86": "ttyS0",
    "x86_64": "ttyS0",
    "aarch64": "ttyAMA0",
    "armv7": "ttyAMA0",
    "ppc64le": "hvc0",
    "riscv64": "ttyS0",
    "s390x": "ttysclp0",
    "loongarch64": "ttyS0",
}

SUPPORTED_ROOTFS = ("ext4", "btrfs", "xfs")


class BootMode(str, Enum):
    BIOS = "BIOS"
    UEFI = "UEFI"

    @classmethod
    def parse(cls, value: str) -> BootMode:
        try:
            return cls(value.upper())
        except ValueError as error:
            raise PreconditionError(
                f"Invalid boot mode: {value} (expected BIOS or UEFI)"
            ) from error


def host_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def resolve_arch(requested: Optional[str]) -> str:
    """Map a requested (or the host's) machine name to an Alpine arch."""
    if not requested:
        return host_arch()
    arch = _ARCH_ALIASES.get(requested.lower())
    if arch is None:
        raise PreconditionError(f"Unsupported architecture: {requested}")
    return arch


def resolve_boot_mode(arch: str, requested: Optional[str]) -> BootMode:
    """BIOS by default on x86, UEFI everywhere else; BIOS is x86-only."""
    if requested:
        mode = BootMode.parse(requested)
    else:
        mode = BootMode.BIOS if arch in BIOS_ARCHES else BootMode.UEFI

    if mode is BootMode.BIOS and arch not in BIOS_ARCHES:
        raise PreconditionError(f"Boot mode BIOS is not supported on {arch}")
    if mode is BootMode.UEFI and arch not in GRUB_EFI_TARGETS:
        raise PreconditionError(f"Boot mode UEFI is not supported on {arch}")
    return mode


def resolve_kernel_flavor(arch: str, requested: Optional[str]) -> str:
    if requested:
        return requested
    return "virt" if arch in VIRT_KERNEL_ARCHES else "lts"


def normalize_branch(branch: str) -> str:
    """Numeric branches get a ``v`` prefix (``3.20`` -> ``v3.20``)."""
    if re.match(r"^\d", branch):
        return f"v{branch}"
    return branch


# ==============================================================================
# Image
# ==============================================================================

_FORMAT_BY_SUFFIX = {
    ".qcow2": "qcow2",
    ".vdi": "vdi",
    ".vmdk": "vmdk",
    ".vhdx": "vhdx",
    ".vhd": "vpc",
    ".img": "raw",
    ".raw": "raw",
}

_SIZE_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def infer_image_format(image: Path) -> str:
    return _FORMAT_BY_SUFFIX.get(image.suffix.lower(), "raw")


def parse_size(text: str) -> int:
    """Parse ``2G``, ``512M``, ``1024K`` or plain bytes into a byte count."""
    match = re.fullmatch(r"\s*(\d+)\s*([BKMGT]?)(?:i?B)?\s*", str(text), re.IGNORECASE)
    if not match:
        raise PreconditionError(f"Invalid size: {text}")
    value = int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]
    if value <= 0:
        raise PreconditionError(f"Invalid size: {text}")
    return value


# ==============================================================================
# Build options
# ==============================================================================


@dataclass
class BuildOptions:
    """Everything a build needs to know, resolved from settings and CLI."""

    image: Path
    script: Optional[Path] = None
    script_args: list[str] = field(default_factory=list)
    arch: str = field(default_factory=host_arch)
    boot_mode: BootMode = BootMode.BIOS
    branch: str = "latest-stable"
    mirror_uri: str = "https://dl-cdn.alpinelinux.org/alpine"
    image_format: Optional[str] = None
    image_size: str = "2G"
    rootfs: str = "ext4"
    partition: bool = False
    kernel_flavor: str = "virt"
    initfs_features: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    keys_dir: Optional[Path] = None
    repositories_file: Optional[Path] = None
    fs_skel_dir: Optional[Path] = None
    fs_skel_chown: Optional[str] = None
    script_chroot: bool = False
    serial_console: bool = False
    hostname: str = "alpine"
    esp_size: str = "512M"
    apk_opts: list[str] = field(default_factory=list)
    cleanup: bool = True

    @property
    def resolved_format(self) -> str:
        return self.image_format or infer_image_format(self.image)

    @property
    def is_uefi(self) -> bool:
        return self.boot_mode is BootMode.UEFI

    @property
    def needs_partition(self) -> bool:
        return self.partition or self.is_uefi

    def chown_ids(self) -> Optional[tuple[int, int]]:
        """Parse ``--fs-skel-chown`` (``UID:GID``) into numeric ids."""
        if not self.fs_skel_chown:
            return None
        match = re.fullmatch(r"(\d+):(\d+)", self.fs_skel_chown)
        if not match:
            raise PreconditionError(
                f"Invalid --fs-skel-chown value: {self.fs_skel_chown} (expected UID:GID)"
            )
        return int(match.group(1)), int(match.group(2))

    def validate(self) -> None:
        """Reject bad option combinations before anything is acquired.

        Raises:
            PreconditionError: Describing the first problem found
        """
        if self.rootfs not in SUPPORTED_ROOTFS:
            raise PreconditionError(
                f"Unsupported root filesystem: {self.rootfs} "
                f"(supported: {', '.join(SUPPORTED_ROOTFS)})"
            )
        parse_size(self.image_size)
        if self.is_uefi:
            parse_size(self.esp_size)
        if self.script_chroot and self.script is None:
            raise PreconditionError("--script-chroot requires a script")
        if self.script is not None:
            if not self.script.is_file():
                raise PreconditionError(f"Script not found: {self.script}")
            if not os.access(self.script, os.X_OK):
                raise PreconditionError(f"Script is not executable: {self.script}")
        if self.fs_skel_dir is not None and not self.fs_skel_dir.is_dir():
            raise PreconditionError(f"Skeleton directory not found: {self.fs_skel_dir}")
        if self.repositories_file is not None and not self.repositories_file.is_file():
            raise PreconditionError(
                f"Repositories file not found: {self.repositories_file}"
            )
        self.chown_ids()
        if self.image.is_dir():
            raise PreconditionError(f"Image path is a directory: {self.image}")


# ==============================================================================
# Acquired resources
# ==============================================================================


@dataclass(frozen=True)
class AttachedDevice:
    """A block device bound to an image file."""

    path: str  # e.g., "/dev/nbd0"
    image: str

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class MountPoint:
    """A directory with a filesystem or bind mount attached."""

    path: str
    source: str
    kind: str = "filesystem"  # or "bind"

    @property
    def depth(self) -> int:
        return len(Path(self.path).parts)


@dataclass(frozen=True)
class PartitionLayout:
    """Device nodes holding the root and (UEFI only) boot filesystems."""

    root: str
    boot: Optional[str] = None
