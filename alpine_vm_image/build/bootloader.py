"""Bootloader installation.

BIOS:  extlinux (syslinux). The config is generated by update-extlinux; on a
       partitioned disk the GPT MBR boot code is written to the first 440
       bytes of the device.
UEFI:  GRUB installed to the removable media path of the ESP (no NVRAM
       entries, the VM firmware finds it on its own).
"""

from __future__ import annotations

from pathlib import Path

from alpine_vm_image.build.system import update_config_file
from alpine_vm_image.domain.models import GRUB_EFI_TARGETS, SERIAL_CONSOLES, BootMode
from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command
from alpine_vm_image.storage.exceptions import PreconditionError


log = LoggerFactory.for_build()

BOOTLOADER_PACKAGES = {
    BootMode.BIOS: ("syslinux",),
    BootMode.UEFI: ("grub-efi",),
}

GPT_MBR = "usr/share/syslinux/gptmbr.bin"


def chroot_command(root: Path, *args: str) -> list[str]:
    return ["chroot", str(root), *args]


def kernel_cmdline(arch: str, rootfs: str, serial_console: bool = False) -> str:
    options = [f"rootfstype={rootfs}", "quiet"]
    if serial_console:
        tty = SERIAL_CONSOLES.get(arch, "ttyS0")
        options.extend(["console=tty0", f"console={tty},115200"])
    return " ".join(options)


def install_extlinux(
    root: Path,
    device_path: str,
    root_uuid: str,
    cmdline: str,
    *,
    partitioned: bool,
    runner: Runner = run_command,
) -> None:
    log.info("Installing extlinux")
    update_config_file(
        root / "etc" / "update-extlinux.conf",
        {
            "root": f"UUID={root_uuid}",
            "default_kernel_opts": f'"{cmdline}"',
            "timeout": "1",
        },
    )
    runner(chroot_command(root, "update-extlinux", "--warn-only"))
    runner(chroot_command(root, "extlinux", "--install", "/boot"))

    if partitioned:
        runner(
            [
                "dd",
                "bs=440",
                "count=1",
                "conv=notrunc",
                f"if={root / GPT_MBR}",
                f"of={device_path}",
            ]
        )


def install_grub_efi(
    root: Path,
    arch: str,
    cmdline: str,
    *,
    runner: Runner = run_command,
) -> None:
    target = GRUB_EFI_TARGETS.get(arch)
    if target is None:
        raise PreconditionError(f"No GRUB EFI target for {arch}")

    log.info(f"Installing GRUB ({target})")
    update_config_file(
        root / "etc" / "default" / "grub",
        {
            "GRUB_TIMEOUT": "1",
            "GRUB_DISABLE_SUBMENU": "y",
            "GRUB_DISABLE_RECOVERY": "true",
            "GRUB_CMDLINE_LINUX_DEFAULT": f'"{cmdline}"',
        },
    )
    runner(
        chroot_command(
            root,
            "grub-install",
            f"--target={target}",
            "--efi-directory=/boot/efi",
            "--boot-directory=/boot",
            "--bootloader-id=alpine",
            "--removable",
            "--no-nvram",
        )
    )
    runner(chroot_command(root, "grub-mkconfig", "-o", "/boot/grub/grub.cfg"))


def install_bootloader(
    boot_mode: BootMode,
    root: Path,
    *,
    arch: str,
    device_path: str,
    root_uuid: str,
    cmdline: str,
    partitioned: bool,
    runner: Runner = run_command,
) -> None:
    if boot_mode is BootMode.UEFI:
        install_grub_efi(root, arch, cmdline, runner=runner)
    else:
        install_extlinux(
            root, device_path, root_uuid, cmdline, partitioned=partitioned, runner=runner
        )


def bootloader_packages(boot_mode: BootMode) -> list[str]:
    return list(BOOTLOADER_PACKAGES[boot_mode])
