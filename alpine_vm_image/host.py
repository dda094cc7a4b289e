"""Host tools needed to build the image.

Tools missing on the host are installed as a single apk virtual package so
they can be removed again at the end of the build without touching packages
the host already had. When the host has no apk at all, a static apk binary is
downloaded into a session temp directory to install packages into the image.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, command_exists, run_command
from alpine_vm_image.storage.exceptions import (
    CommandError,
    HostPackagesRemovalError,
    PreconditionError,
)


log = LoggerFactory.for_host()

VIRTUAL_PACKAGE = ".make-alpine-vm-image"

# tool -> Alpine package providing it
TOOL_PACKAGES = {
    "qemu-img": "qemu-img",
    "qemu-nbd": "qemu-img",
    "sfdisk": "sfdisk",
    "blkid": "blkid",
    "mkfs.ext4": "e2fsprogs",
    "mkfs.btrfs": "btrfs-progs",
    "mkfs.xfs": "xfsprogs",
    "mkfs.fat": "dosfstools",
}


def required_tools(
    rootfs: str, *, attach: bool = True, partition: bool = False, uefi: bool = False
) -> list[str]:
    tools = ["blkid", f"mkfs.{rootfs}"]
    if attach:
        tools[:0] = ["qemu-img", "qemu-nbd"]
    if partition or uefi:
        tools.append("sfdisk")
    if uefi:
        tools.append("mkfs.fat")
    return tools


def missing_tools(
    tools: Iterable[str], exists: Callable[[str], bool] = command_exists
) -> list[str]:
    return [tool for tool in tools if not exists(tool)]


def packages_for(tools: Iterable[str]) -> list[str]:
    packages: list[str] = []
    for tool in tools:
        package = TOOL_PACKAGES.get(tool)
        if package is None:
            raise PreconditionError(f"Required tool {tool} is missing and has no known package")
        if package not in packages:
            packages.append(package)
    return packages


def install_transient_packages(
    tools: Iterable[str],
    runner: Runner = run_command,
    exists: Callable[[str], bool] = command_exists,
) -> list[str]:
    """Install the packages providing ``tools`` as one virtual package.

    Returns:
        The packages installed

    Raises:
        PreconditionError: If the host has no apk to install them with
        CommandError: If apk fails
    """
    tools = list(tools)
    if not exists("apk"):
        raise PreconditionError(
            f"Missing required tools: {', '.join(tools)}; install them and try again"
        )
    packages = packages_for(tools)
    log.info(f"Installing host packages: {' '.join(packages)}")
    runner(["apk", "add", "--virtual", VIRTUAL_PACKAGE, *packages])
    return packages


def remove_transient_packages(runner: Runner = run_command) -> None:
    """Remove the virtual package installed by install_transient_packages().

    Raises:
        HostPackagesRemovalError: If apk fails
    """
    log.info(f"Removing host packages {VIRTUAL_PACKAGE}")
    try:
        runner(["apk", "del", VIRTUAL_PACKAGE])
    except CommandError as error:
        raise HostPackagesRemovalError(VIRTUAL_PACKAGE, error.stderr.strip()) from error


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fetch_apk_static(
    dest_dir: Path,
    uri: str,
    sha256: Optional[str] = None,
    runner: Runner = run_command,
) -> Path:
    """Download a static apk binary into ``dest_dir`` and verify it.

    Raises:
        PreconditionError: If the checksum does not match
        CommandError: If the download fails
    """
    dest = dest_dir / "apk.static"
    log.info(f"Downloading static apk from {uri}")
    runner(["wget", "-q", "-O", str(dest), uri])

    if sha256:
        actual = sha256sum(dest)
        if actual != sha256.lower():
            raise PreconditionError(
                f"Checksum mismatch for {uri}: expected {sha256}, got {actual}"
            )
    else:
        log.warning("No checksum configured for apk.static, skipping verification")

    os.chmod(dest, 0o755)
    return dest
