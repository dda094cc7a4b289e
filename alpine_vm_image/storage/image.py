"""Target image helpers."""

from __future__ import annotations

import os
import stat
from pathlib import Path

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command


log = LoggerFactory.for_device()


def is_block_device(path: Path) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except FileNotFoundError:
        return False


def create_image(
    path: Path, size: str, image_format: str, runner: Runner = run_command
) -> bool:
    """Create the image file with qemu-img unless it already exists.

    Returns:
        True if a new image was created, False if an existing one is reused
    """
    if path.exists():
        log.warning(f"Image {path} already exists, reusing it")
        return False

    log.info(f"Creating {image_format} image {path} ({size})")
    runner(["qemu-img", "create", "-f", image_format, str(path), size])
    return True
