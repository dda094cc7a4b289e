"""GPT partitioning of the target device.

Layouts:
    BIOS: one Linux partition spanning the disk, flagged LegacyBIOSBootable so
          the GPT MBR boot code (gptmbr.bin) can find it.
    UEFI: an EFI System Partition (FAT32, default 512 MiB) followed by the
          Linux root partition.

After sfdisk returns, the kernel still has to create the partition device
nodes; each node is awaited with wait_for_path() (check, sleep + check,
udevadm settle + check).
"""

from __future__ import annotations

import contextlib
import time
from typing import Callable

from alpine_vm_image.domain.models import BootMode, PartitionLayout, parse_size
from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, command_exists, run_command
from alpine_vm_image.storage.exceptions import CommandError, DeviceSettleTimeoutError
from alpine_vm_image.storage.retry import wait_for_path


log = LoggerFactory.for_device()

DEFAULT_ESP_SIZE = "512M"
SETTLE_TIMEOUT_SECONDS = 10


def partition_path(device_path: str, number: int) -> str:
    """Return the node of partition ``number`` (``/dev/nbd0p1``, ``/dev/sda1``)."""
    separator = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{separator}{number}"


def build_layout(boot_mode: BootMode, esp_size: str = DEFAULT_ESP_SIZE) -> str:
    """Return the sfdisk script for the given boot mode."""
    lines = ["label: gpt"]
    if boot_mode is BootMode.UEFI:
        esp_mib = parse_size(esp_size) // 1024**2
        lines.append(f"size={esp_mib}MiB, type=U, name=efi")
        lines.append("type=L, name=root")
    else:
        lines.append("type=L, name=root, attrs=LegacyBIOSBootable")
    return "\n".join(lines) + "\n"


def settle_devices(
    runner: Runner = run_command, tool_exists: Callable[[str], bool] | None = None
) -> None:
    """Run udevadm settle when it is available."""
    if not (tool_exists or command_exists)("udevadm"):
        return
    with contextlib.suppress(CommandError):
        runner(["udevadm", "settle", f"--timeout={SETTLE_TIMEOUT_SECONDS}"])


def partition_device(
    device_path: str,
    boot_mode: BootMode,
    *,
    esp_size: str = DEFAULT_ESP_SIZE,
    runner: Runner = run_command,
    sleep: Callable[[float], None] = time.sleep,
    exists: Callable[[str], bool] | None = None,
    tool_exists: Callable[[str], bool] | None = None,
) -> PartitionLayout:
    """Create a GPT partition table and wait for the partition nodes.

    Raises:
        CommandError: If sfdisk fails
        DeviceSettleTimeoutError: If a partition node never appears
    """
    log.info(f"Partitioning {device_path} ({boot_mode.value})")
    runner(["sfdisk", "--quiet", device_path], input_text=build_layout(boot_mode, esp_size))

    if boot_mode is BootMode.UEFI:
        layout = PartitionLayout(
            root=partition_path(device_path, 2), boot=partition_path(device_path, 1)
        )
    else:
        layout = PartitionLayout(root=partition_path(device_path, 1))

    wait_kwargs = {"sleep": sleep, "settle": lambda: settle_devices(runner, tool_exists)}
    if exists is not None:
        wait_kwargs["exists"] = exists

    for node in filter(None, (layout.boot, layout.root)):
        if not wait_for_path(node, **wait_kwargs):
            raise DeviceSettleTimeoutError(node)
        log.debug(f"Partition node found: {node}")

    return layout
