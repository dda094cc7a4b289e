"""Command line entry point.

Usage:
    alpine-make-vm-image [options] IMAGE [SCRIPT [ARGS...]]

Exit status:
    0    image built and every resource released
    2    bad arguments or options, or host preconditions not met
    3    a resource could not be acquired (no nbd device, partition node, mkfs, mount)
    4    a build step or the user script failed
    5    a mount point could not be released
    6    the nbd device could not be disconnected
    7    the transient host packages could not be removed
    130  interrupted by a signal
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

from alpine_vm_image.__version__ import __version__
from alpine_vm_image.build.pipeline import build_image
from alpine_vm_image.config.settings import load_settings, split_words
from alpine_vm_image.domain.models import (
    BuildOptions,
    resolve_arch,
    resolve_boot_mode,
    resolve_kernel_flavor,
)
from alpine_vm_image.logging import LoggerFactory, setup_logging
from alpine_vm_image.session import BuildSession, ensure_root
from alpine_vm_image.storage.exceptions import (
    BuildError,
    ExecutionError,
    PreconditionError,
    TeardownFailedError,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="alpine-make-vm-image",
        description="Create a bootable Alpine Linux disk image for virtual machines.",
    )
    parser.add_argument("image", type=Path, help="Image file or block device to write to")
    parser.add_argument("script", nargs="?", type=Path, help="Script to run after install")
    parser.add_argument("script_args", nargs=argparse.REMAINDER, help="Arguments for the script")

    parser.add_argument("-a", "--arch", help="Target architecture (default: host)")
    parser.add_argument("-b", "--branch", help="Alpine branch, e.g. latest-stable, edge, 3.20")
    parser.add_argument(
        "-B", "--boot-mode", choices=["BIOS", "UEFI", "bios", "uefi"], help="Firmware boot mode"
    )
    parser.add_argument("-c", "--script-chroot", action="store_true", help="Run the script chrooted in the image")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every line of command output")
    parser.add_argument("-f", "--image-format", help="qemu-img format (default: from extension)")
    parser.add_argument("-s", "--image-size", help="Image size, e.g. 2G (default: 2G)")
    parser.add_argument("-i", "--initfs-features", help="mkinitfs features, space or comma separated")
    parser.add_argument("-k", "--kernel-flavor", help="Kernel flavor (default: virt)")
    parser.add_argument("-K", "--keys-dir", type=Path, help="Directory with apk signing keys")
    parser.add_argument("-m", "--mirror-uri", help="Alpine mirror URI")
    parser.add_argument(
        "-C", "--no-cleanup", dest="cleanup", action="store_false",
        help="Leave the image mounted and attached when done",
    )
    parser.add_argument("-p", "--packages", help="Extra packages to install, space or comma separated")
    parser.add_argument("-P", "--partition", action="store_true", help="Create a GPT partition table")
    parser.add_argument("-r", "--repositories-file", type=Path, help="apk repositories file to use")
    parser.add_argument("--rootfs", help="Root filesystem: ext4, btrfs or xfs (default: ext4)")
    parser.add_argument("--esp-size", help="EFI System Partition size (default: 512M)")
    parser.add_argument("--fs-skel-dir", type=Path, help="Directory to copy over the image root")
    parser.add_argument("--fs-skel-chown", help="UID:GID to own files copied from --fs-skel-dir")
    parser.add_argument("--serial-console", action="store_true", help="Enable a serial console")
    parser.add_argument("--hostname", help="Hostname of the image (default: alpine)")
    parser.add_argument("--settings", type=Path, help="JSON settings file")
    parser.add_argument("--log-dir", type=Path, help="Write build logs to this directory")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def options_from_args(args: argparse.Namespace, settings: Mapping[str, Any]) -> BuildOptions:
    """Combine parsed arguments with settings into BuildOptions.

    Raises:
        PreconditionError: If arch, boot mode or kernel flavor cannot be resolved
    """
    def pick(name: str) -> Any:
        value = getattr(args, name, None)
        return settings.get(name) if value is None else value

    arch = resolve_arch(args.arch)
    keys_dir = pick("keys_dir")
    return BuildOptions(
        image=args.image,
        script=args.script,
        script_args=list(args.script_args or []),
        arch=arch,
        boot_mode=resolve_boot_mode(arch, args.boot_mode),
        branch=pick("branch"),
        mirror_uri=pick("mirror_uri"),
        image_format=pick("image_format"),
        image_size=pick("image_size"),
        rootfs=pick("rootfs"),
        partition=args.partition,
        kernel_flavor=resolve_kernel_flavor(arch, pick("kernel_flavor")),
        initfs_features=split_words(pick("initfs_features")),
        packages=split_words(pick("packages")),
        keys_dir=Path(keys_dir) if keys_dir else None,
        repositories_file=args.repositories_file,
        fs_skel_dir=args.fs_skel_dir,
        fs_skel_chown=args.fs_skel_chown,
        script_chroot=args.script_chroot,
        serial_console=args.serial_console,
        hostname=pick("hostname"),
        esp_size=pick("esp_size"),
        apk_opts=split_words(settings.get("apk_opts")),
        cleanup=args.cleanup,
    )


def run_build(
    options: BuildOptions,
    settings: Mapping[str, Any],
    session_factory=BuildSession,
) -> int:
    """Build the image and map the outcome to an exit status."""
    log = LoggerFactory.for_system()
    try:
        with session_factory(options.image, cleanup=options.cleanup) as session:
            build_image(options, session, settings)
    except TeardownFailedError as error:
        cause = error.__context__
        if isinstance(cause, BaseException):
            log.error(f"Build failed: {cause}")
        for failure in error.failures:
            log.critical(str(failure))
        return error.exit_code
    except BuildError as error:
        log.error(str(error))
        return error.exit_code
    except OSError as error:
        log.exception(f"Build failed: {error}")
        return ExecutionError.exit_code

    log.success(f"Image {options.image} built")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    log.debug(f"alpine-make-vm-image {__version__}")

    try:
        settings = load_settings(args.settings)
        options = options_from_args(args, settings)
        options.validate()
        ensure_root()
    except PreconditionError as error:
        log.error(str(error))
        return error.exit_code

    return run_build(options, settings)


if __name__ == "__main__":
    sys.exit(main())
