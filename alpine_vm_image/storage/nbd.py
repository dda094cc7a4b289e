"""Attaching image files to NBD block devices.

An image file is exposed as a block device through qemu-nbd so it can be
partitioned and formatted like a real disk.

Slot discovery:
    /dev/nbdN nodes are scanned in numeric order; a slot is in use while the
    kernel exposes /sys/block/nbdN/pid (the pid of the qemu-nbd process serving
    it). Slots are host-wide: another process may grab a slot between the scan
    and our connect, so a failed connect is handled like "no free slot".

Retry policy:
    scan + connect -> on failure: modprobe nbd, sleep, scan + connect once more
    -> on failure: DeviceExhaustedError. There is no further retry.

After connecting we sleep briefly: the device node is not immediately usable
once qemu-nbd returns.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable, Optional

from alpine_vm_image.domain.models import AttachedDevice
from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command
from alpine_vm_image.storage.exceptions import (
    CommandError,
    DetachFailedError,
    DeviceExhaustedError,
)
from alpine_vm_image.storage.retry import retry_once


log = LoggerFactory.for_device()

DEV_DIR = Path("/dev")
SYS_BLOCK_DIR = Path("/sys/block")
NBD_MAX_PART = 16
MODULE_LOAD_DELAY = 1.0
CONNECT_SETTLE_DELAY = 1.0

_NBD_NAME = re.compile(r"^nbd(\d+)$")


def list_nbd_devices(dev_dir: Path = DEV_DIR) -> list[Path]:
    """Return /dev/nbdN nodes (whole devices only) in numeric order."""
    if not dev_dir.is_dir():
        return []
    devices = []
    for entry in dev_dir.iterdir():
        match = _NBD_NAME.match(entry.name)
        if match:
            devices.append((int(match.group(1)), entry))
    return [path for _, path in sorted(devices)]


def is_nbd_in_use(name: str, sys_block_dir: Path = SYS_BLOCK_DIR) -> bool:
    return (sys_block_dir / name / "pid").exists()


def find_available_nbd(
    dev_dir: Path = DEV_DIR, sys_block_dir: Path = SYS_BLOCK_DIR
) -> Optional[str]:
    for device in list_nbd_devices(dev_dir):
        if not is_nbd_in_use(device.name, sys_block_dir):
            return str(device)
    return None


def load_nbd_module(runner: Runner = run_command) -> None:
    log.info("Loading nbd kernel module")
    try:
        runner(["modprobe", "nbd", f"max_part={NBD_MAX_PART}"])
    except CommandError as error:
        # The rescan after loading decides whether this was fatal.
        log.warning(f"modprobe nbd failed: {error}")


def connect_image(
    device_path: str, image: Path, image_format: str, runner: Runner = run_command
) -> None:
    runner(
        [
            "qemu-nbd",
            f"--connect={device_path}",
            "--cache=writeback",
            f"--format={image_format}",
            str(image),
        ]
    )


def attach_image(
    image: Path,
    image_format: str,
    *,
    runner: Runner = run_command,
    sleep: Callable[[float], None] = time.sleep,
    dev_dir: Path = DEV_DIR,
    sys_block_dir: Path = SYS_BLOCK_DIR,
) -> AttachedDevice:
    """Attach an image file to a free NBD device.

    Args:
        image: Image file to attach
        image_format: qemu image format (raw, qcow2, ...)
        runner: Command runner
        sleep: Sleep function (injected by tests)
        dev_dir: Where to look for nbd device nodes
        sys_block_dir: Where to look for nbd slot state

    Returns:
        The attached device

    Raises:
        DeviceExhaustedError: If no slot could be attached after one reload
    """
    failures: list[str] = []

    def attempt() -> Optional[str]:
        device_path = find_available_nbd(dev_dir, sys_block_dir)
        if device_path is None:
            log.debug("No free nbd device found")
            failures.append("no free slot")
            return None
        try:
            connect_image(device_path, image, image_format, runner)
        except CommandError as error:
            log.warning(f"Failed to connect {image} to {device_path}: {error}")
            failures.append(f"{device_path}: {error.stderr.strip() or error.returncode}")
            return None
        return device_path

    def recover() -> None:
        load_nbd_module(runner)
        sleep(MODULE_LOAD_DELAY)

    device_path = retry_once(attempt, recover)
    if device_path is None:
        raise DeviceExhaustedError("; ".join(failures))

    # qemu-nbd returns before the device node is ready for use.
    sleep(CONNECT_SETTLE_DELAY)
    log.info(f"Attached {image} to {device_path}")
    return AttachedDevice(path=device_path, image=str(image))


def detach_device(device: AttachedDevice, runner: Runner = run_command) -> None:
    """Disconnect an NBD device.

    Raises:
        DetachFailedError: If qemu-nbd could not disconnect it
    """
    log.info(f"Disconnecting {device.path}")
    try:
        runner(["qemu-nbd", "--disconnect", device.path])
    except CommandError as error:
        raise DetachFailedError(device.path, error.stderr.strip()) from error
