"""The image build, step by step.

build_image() drives a BuildSession through the acquisition steps and runs
the package, system, bootloader and script steps in between. It never
releases anything itself: the caller's ``with BuildSession(...)`` block does
that whatever happens here.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional

from alpine_vm_image.build import apk as apk_step
from alpine_vm_image.build import bootloader, system
from alpine_vm_image.build.script import run_script
from alpine_vm_image.domain.models import SERIAL_CONSOLES, BuildOptions, PartitionLayout
from alpine_vm_image.host import fetch_apk_static, required_tools
from alpine_vm_image.logging import operation_context
from alpine_vm_image.session import ESP_MOUNT_DIR, BuildSession
from alpine_vm_image.storage.format import get_uuid
from alpine_vm_image.storage.image import is_block_device


# Filesystem tools the image itself needs to fsck its root at boot
ROOTFS_PACKAGES = {
    "ext4": "e2fsprogs",
    "btrfs": "btrfs-progs",
    "xfs": "xfsprogs",
}

BASE_PACKAGES = ("alpine-base",)


def resolve_apk(
    session: BuildSession, options: BuildOptions, settings: Mapping[str, Any]
) -> str:
    """Return the apk binary to install packages with.

    Uses the host's apk when there is one, otherwise downloads a static apk
    into a session temp directory.
    """
    if session.tool_exists("apk"):
        return "apk"
    uri = str(settings.get("apk_tools_uri") or "").format(arch=options.arch)
    return str(
        fetch_apk_static(
            session.make_temp_dir(),
            uri,
            settings.get("apk_tools_sha256"),
            session.runner,
        )
    )


def image_packages(options: BuildOptions) -> list[str]:
    packages = [f"linux-{options.kernel_flavor}", ROOTFS_PACKAGES[options.rootfs]]
    packages.extend(bootloader.bootloader_packages(options.boot_mode))
    if options.is_uefi:
        packages.append("dosfstools")
    packages.extend(options.packages)
    return list(dict.fromkeys(packages))


def acquire_tree(options: BuildOptions, session: BuildSession) -> PartitionLayout:
    """Acquisition steps 1-6: from host tools to a mounted root."""
    image_format = options.resolved_format
    session.install_host_packages(
        required_tools(
            options.rootfs,
            attach=not is_block_device(options.image),
            partition=options.needs_partition,
            uefi=options.is_uefi,
        )
    )
    session.prepare_target(options.image_size, image_format)
    session.attach(image_format)

    if options.needs_partition:
        layout = session.partition(options.boot_mode, options.esp_size)
    else:
        layout = session.whole_device_layout()

    session.format(layout, options.rootfs)
    session.mount_root(layout.root, options.rootfs)
    if layout.boot:
        session.mount_boot(layout.boot)
    return layout


def build_image(
    options: BuildOptions,
    session: BuildSession,
    settings: Optional[Mapping[str, Any]] = None,
) -> None:
    """Build the image described by ``options`` using ``session``'s resources."""
    settings = settings or {}
    runner = session.runner

    with operation_context(
        "build",
        image=str(options.image),
        arch=options.arch,
        boot_mode=options.boot_mode.value,
        rootfs=options.rootfs,
    ) as log:
        layout = acquire_tree(options, session)
        root = session.mount_dir

        apk = resolve_apk(session, options, settings)
        apk_step.write_repositories(
            root, options.mirror_uri, options.branch, options.repositories_file
        )
        apk_step.copy_keys(root, options.keys_dir)

        session.checkpoint()
        apk_step.install_packages(
            root,
            BASE_PACKAGES,
            arch=options.arch,
            apk=apk,
            initdb=True,
            extra_opts=options.apk_opts,
            runner=runner,
        )

        system.write_mkinitfs_config(root, [*options.initfs_features, options.rootfs])
        session.mount_pseudo_filesystems()

        entries = [system.FstabEntry(get_uuid(layout.root, runner), "/", options.rootfs)]
        if layout.boot:
            entries.append(
                system.FstabEntry(
                    get_uuid(layout.boot, runner),
                    "/" + ESP_MOUNT_DIR,
                    "vfat",
                    "rw,relatime,fmask=0133,dmask=0022",
                    2,
                )
            )
        system.write_fstab(root, entries)

        session.checkpoint()
        apk_step.install_packages(
            root,
            image_packages(options),
            arch=options.arch,
            apk=apk,
            extra_opts=options.apk_opts,
            runner=runner,
        )

        log.info("Configuring system")
        system.write_hostname(root, options.hostname)
        system.write_network_interfaces(root)
        system.enable_services(root)
        if options.serial_console:
            system.enable_serial_console(root, SERIAL_CONSOLES.get(options.arch, "ttyS0"))

        session.checkpoint()
        bootloader.install_bootloader(
            options.boot_mode,
            root,
            arch=options.arch,
            device_path=session.device_path or str(options.image),
            root_uuid=entries[0].uuid,
            cmdline=bootloader.kernel_cmdline(
                options.arch, options.rootfs, options.serial_console
            ),
            partitioned=options.needs_partition,
            runner=runner,
        )

        system.copy_resolv_conf(root)
        if options.fs_skel_dir is not None:
            system.copy_fs_skeleton(root, options.fs_skel_dir, options.chown_ids())

        if options.script is not None:
            run_script(
                session,
                Path(options.script),
                options.script_args,
                chroot=options.script_chroot,
            )
        session.checkpoint()
