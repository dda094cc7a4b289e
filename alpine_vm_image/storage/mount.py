"""Mounting, bind mounting and recursive unmounting of the image tree.

Functions:
    - mount_filesystem(): Mount a device at a directory
    - bind_mount(): Bind mount a host directory into the tree
    - unmount(): Unmount a single mount point
    - read_mount_table(): Mount points listed in /proc/mounts
    - mounts_under(): Mount points at or below a root directory
    - sort_deepest_first(): Order mount points for release

Nested mounts (the ESP under the root filesystem, /proc under the root, ...)
must be released child first; sort_deepest_first() orders by path depth,
deepest first.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, Optional

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command
from alpine_vm_image.storage.exceptions import (
    CommandError,
    MountFailedError,
    UnmountFailedError,
)


log = LoggerFactory.for_mount()

MOUNTS_FILE = Path("/proc/mounts")

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _decode_mount_path(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as \040 etc.
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def read_mount_table(mounts_file: Path = MOUNTS_FILE) -> list[str]:
    """Return the mount points listed in a mounts file, in mount order."""
    try:
        with open(mounts_file, "r", encoding="utf-8") as handle:
            lines = handle.readlines()
    except FileNotFoundError:
        log.warning(f"{mounts_file} not found, cannot list active mounts")
        return []
    mountpoints = []
    for line in lines:
        parts = line.split()
        if len(parts) > 1:
            mountpoints.append(_decode_mount_path(parts[1]))
    return mountpoints


def _is_under(path: str, root: str) -> bool:
    path = os.path.normpath(path)
    root = os.path.normpath(root)
    return path == root or path.startswith(root.rstrip("/") + "/")


def mounts_under(root: str, table: Iterable[str]) -> list[str]:
    """Return mount points from ``table`` at or below ``root``, without duplicates."""
    seen: set[str] = set()
    result = []
    for mountpoint in table:
        normalized = os.path.normpath(mountpoint)
        if _is_under(normalized, root) and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def path_depth(path: str) -> int:
    return len(Path(path).parts)


def sort_deepest_first(paths: Iterable[str]) -> list[str]:
    """Order paths by depth, deepest first; equal depths keep their order."""
    return sorted(paths, key=path_depth, reverse=True)


def mount_filesystem(
    source: str,
    target: Path,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
    runner: Runner = run_command,
) -> None:
    """Mount ``source`` at ``target``, creating the directory if needed.

    Raises:
        MountFailedError: If mount fails
    """
    target.mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    if options:
        command.extend(["-o", options])
    command.extend([source, str(target)])
    log.debug(f"Mounting {source} at {target}")
    try:
        runner(command)
    except CommandError as error:
        raise MountFailedError(source, str(target), error.stderr.strip()) from error


def bind_mount(source: Path, target: Path, runner: Runner = run_command) -> None:
    """Bind mount a host directory at ``target``.

    Raises:
        MountFailedError: If mount fails
    """
    target.mkdir(parents=True, exist_ok=True)
    log.debug(f"Bind mounting {source} at {target}")
    try:
        runner(["mount", "--bind", str(source), str(target)])
    except CommandError as error:
        raise MountFailedError(str(source), str(target), error.stderr.strip()) from error


def unmount(
    mountpoint: str, device_path: Optional[str] = None, runner: Runner = run_command
) -> None:
    """Unmount a single mount point.

    Args:
        mountpoint: Directory to unmount
        device_path: Device the tree lives on, named in the error so the
            operator knows what else to clean up
        runner: Command runner

    Raises:
        UnmountFailedError: If umount fails
    """
    log.debug(f"Unmounting {mountpoint}")
    try:
        runner(["umount", mountpoint])
    except CommandError as error:
        raise UnmountFailedError(mountpoint, device_path, error.stderr.strip()) from error
