"""Bounded retry helpers.

Device slots and device nodes are awaited with short fixed sleeps and at most
one retry; nothing here polls in a loop. ``sleep`` and ``exists`` are
parameters so tests can decide when a resource "appears".
"""

from __future__ import annotations

import os
import time
from typing import Callable, Optional, TypeVar

from alpine_vm_image.logging import LoggerFactory


log = LoggerFactory.for_device()

T = TypeVar("T")

DEFAULT_SETTLE_DELAY = 1.0


def retry_once(
    attempt: Callable[[], Optional[T]],
    recover: Callable[[], None],
) -> Optional[T]:
    """Call attempt(); if it yields None, run recover() and try exactly once more."""
    result = attempt()
    if result is not None:
        return result
    recover()
    return attempt()


def wait_for_path(
    path: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
    settle: Optional[Callable[[], None]] = None,
    exists: Callable[[str], bool] = os.path.exists,
    delay: float = DEFAULT_SETTLE_DELAY,
) -> bool:
    """Wait for a device node to appear.

    Checks immediately, then after one short sleep, then once more after
    running ``settle`` (e.g. ``udevadm settle``) if one is given.

    Returns:
        True if the path exists, False if it never appeared
    """
    if exists(path):
        return True

    log.debug(f"{path} not present yet, waiting {delay}s")
    sleep(delay)
    if exists(path):
        return True

    if settle is not None:
        log.debug(f"{path} still missing, waiting for devices to settle")
        settle()
        if exists(path):
            return True

    return False
