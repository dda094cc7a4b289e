"""Filesystem creation on the target device.

Supported Filesystems:
    ext4:   default root filesystem
    btrfs:  root filesystem
    xfs:    root filesystem
    vfat:   FAT32, used for the EFI System Partition only
"""

from __future__ import annotations

from typing import Optional

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command
from alpine_vm_image.storage.exceptions import (
    CommandError,
    FilesystemCreationError,
    PreconditionError,
)


log = LoggerFactory.for_device()

MKFS_TOOLS = {
    "ext4": "mkfs.ext4",
    "btrfs": "mkfs.btrfs",
    "xfs": "mkfs.xfs",
    "vfat": "mkfs.fat",
}


def mkfs_command(device_path: str, fstype: str, label: Optional[str] = None) -> list[str]:
    """Build the mkfs command line for a filesystem type."""
    if fstype == "ext4":
        command = ["mkfs.ext4", "-q", "-F"]
        if label:
            command.extend(["-L", label])
    elif fstype == "btrfs":
        command = ["mkfs.btrfs", "-q", "-f"]
        if label:
            command.extend(["-L", label])
    elif fstype == "xfs":
        command = ["mkfs.xfs", "-q", "-f"]
        if label:
            command.extend(["-L", label])
    elif fstype == "vfat":
        command = ["mkfs.fat", "-F", "32"]
        if label:
            command.extend(["-n", label.upper()[:11]])
    else:
        raise PreconditionError(f"Unsupported filesystem type: {fstype}")
    command.append(device_path)
    return command


def make_filesystem(
    device_path: str,
    fstype: str,
    label: Optional[str] = None,
    runner: Runner = run_command,
) -> None:
    """Create a filesystem on a device or partition.

    Raises:
        PreconditionError: If the filesystem type is not supported
        FilesystemCreationError: If mkfs fails
    """
    command = mkfs_command(device_path, fstype, label)
    log.info(f"Creating {fstype} filesystem on {device_path}")
    try:
        runner(command)
    except CommandError as error:
        raise FilesystemCreationError(device_path, fstype, error.stderr.strip()) from error


def get_uuid(device_path: str, runner: Runner = run_command) -> str:
    """Return the filesystem UUID of a device."""
    result = runner(["blkid", "-s", "UUID", "-o", "value", device_path])
    uuid = (result.stdout or "").strip()
    if not uuid:
        raise CommandError(["blkid", device_path], 2, "no UUID found")
    return uuid
