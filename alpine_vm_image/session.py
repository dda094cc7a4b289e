"""Resource lifecycle for a single image build.

A BuildSession owns every OS resource the build acquires and guarantees they
are released, in reverse order, however the build ends: success, a failing
step, a failing user script or a termination signal.

Acquisition order (each step requires the previous one):
    1. transient host packages (only tools that are missing)
    2. the target image file (created if absent; block devices are used as-is)
    3. NBD attachment (regular files only)
    4. partitions (optional for BIOS, always for UEFI)
    5. filesystems
    6. root mount in a fresh temp dir, ESP at boot/efi beneath it (UEFI)
    7. bind mounts of /proc, /dev and /sys
    8. bind mount of the user script's directory (optional)

Teardown (idempotent, runs at most once):
    1. ignore SIGINT/SIGHUP/SIGTERM until teardown is over
    2. chdir to / so nothing holds the tree busy
    3. remove staging temp dirs
    4. unmount everything the mount table lists under the root mount,
       deepest path first
    5. remove the empty root mount dir
    6. disconnect the NBD device
    7. remove transient host packages

Every teardown step is attempted even when an earlier one failed, except
that a device still backing a mount is left attached (and the host packages
with it). Failures are collected and raised together as TeardownFailedError
naming each leaked mount point or device.

Usage:
    with BuildSession(Path("alpine.qcow2")) as session:
        session.prepare_target("2G", "qcow2")
        device = session.attach("qcow2")
        ...
"""

from __future__ import annotations

import os
import shutil
import signal
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from alpine_vm_image.domain.models import (
    AttachedDevice,
    BootMode,
    MountPoint,
    PartitionLayout,
)
from alpine_vm_image.host import (
    VIRTUAL_PACKAGE,
    install_transient_packages,
    missing_tools,
    remove_transient_packages,
)
from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, command_exists, run_command
from alpine_vm_image.storage.exceptions import (
    BuildError,
    BuildInterrupted,
    DetachFailedError,
    HostPackagesRemovalError,
    PreconditionError,
    TeardownError,
    TeardownFailedError,
    UnmountFailedError,
)
from alpine_vm_image.storage.format import make_filesystem
from alpine_vm_image.storage.image import create_image, is_block_device
from alpine_vm_image.storage.mount import (
    bind_mount,
    mount_filesystem,
    mounts_under,
    read_mount_table,
    sort_deepest_first,
    unmount,
)
from alpine_vm_image.storage.nbd import (
    DEV_DIR,
    SYS_BLOCK_DIR,
    attach_image,
    detach_device,
)
from alpine_vm_image.storage.partition import DEFAULT_ESP_SIZE, partition_device


log = LoggerFactory.for_session()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGTERM)

PSEUDO_FILESYSTEMS = ("proc", "dev", "sys")

ESP_MOUNT_DIR = "boot/efi"


class BuildSession:
    """Registry of the resources acquired by one build, and their teardown."""

    def __init__(
        self,
        image: Path,
        *,
        cleanup: bool = True,
        runner: Runner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        chdir: Callable[[str], None] = os.chdir,
        mount_table: Callable[[], Iterable[str]] = read_mount_table,
        tool_exists: Callable[[str], bool] = command_exists,
        node_exists: Optional[Callable[[str], bool]] = None,
        dev_dir: Path = DEV_DIR,
        sys_block_dir: Path = SYS_BLOCK_DIR,
        temp_root: Optional[Path] = None,
    ):
        self.image = Path(image)
        self.cleanup = cleanup
        self.is_block_device = False
        self.device: Optional[AttachedDevice] = None
        self.root_mount: Optional[MountPoint] = None
        self.boot_mount: Optional[MountPoint] = None
        self.temp_dirs: list[Path] = []
        self.bind_mounts: list[MountPoint] = []
        self.host_packages_installed = False

        # Audit trail: (kind, identifier) in acquisition / release order
        self.acquired: list[tuple[str, str]] = []
        self.released: list[tuple[str, str]] = []

        self._runner = runner
        self._sleep = sleep
        self._chdir = chdir
        self._mount_table = mount_table
        self._tool_exists = tool_exists
        self._node_exists = node_exists
        self._dev_dir = dev_dir
        self._sys_block_dir = sys_block_dir
        self._temp_root = temp_root

        self._torn_down = False
        self._tearing_down = False
        self._pending_signal: Optional[int] = None
        self._previous_handlers: dict[int, object] = {}

    # ------------------------------------------------------------------
    # Context manager / signals
    # ------------------------------------------------------------------

    def __enter__(self) -> BuildSession:
        self.install_signal_handlers()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.teardown()
        finally:
            self.restore_signal_handlers()
        return False

    def _on_signal(self, signum, frame) -> None:
        if self._tearing_down:
            log.warning(f"Ignoring signal {signum} during teardown")
            return
        log.warning(f"Received signal {signum}, stopping after the current step")
        self._pending_signal = signum

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not on the main thread, signal handlers not installed")
            return
        for signum in HANDLED_SIGNALS:
            if signum not in self._previous_handlers:
                self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._on_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _ignore_signals(self) -> None:
        for signum in self._previous_handlers:
            signal.signal(signum, signal.SIG_IGN)

    def checkpoint(self) -> None:
        """Raise BuildInterrupted if a termination signal arrived.

        External tools are never aborted mid-flight; a signal takes effect at
        the next step boundary.
        """
        if self._torn_down:
            raise BuildError("Build session has already been torn down")
        if self._pending_signal is not None:
            signum = self._pending_signal
            self._pending_signal = None
            raise BuildInterrupted(signum)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def runner(self) -> Runner:
        return self._runner

    def tool_exists(self, name: str) -> bool:
        return self._tool_exists(name)

    @property
    def device_path(self) -> Optional[str]:
        """The block device holding the image: NBD device or the target itself."""
        if self.device is not None:
            return self.device.path
        if self.is_block_device:
            return str(self.image)
        return None

    @property
    def mount_dir(self) -> Path:
        if self.root_mount is None:
            raise BuildError("Root filesystem is not mounted")
        return Path(self.root_mount.path)

    @property
    def mounts(self) -> list[MountPoint]:
        """Registered mounts in acquisition order."""
        mounts = [self.root_mount, self.boot_mount, *self.bind_mounts]
        return [mount for mount in mounts if mount is not None]

    def _record(self, kind: str, identifier: str) -> None:
        self.acquired.append((kind, identifier))
        log.debug(f"Acquired {kind} {identifier}")

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def install_host_packages(self, tools: Iterable[str]) -> list[str]:
        """Install packages for any of ``tools`` missing on the host."""
        self.checkpoint()
        missing = missing_tools(tools, self._tool_exists)
        if not missing:
            log.debug("All required host tools are present")
            return []
        packages = install_transient_packages(missing, self._runner, self._tool_exists)
        self.host_packages_installed = True
        self._record("host_packages", VIRTUAL_PACKAGE)
        return packages

    def prepare_target(self, size: str, image_format: str) -> None:
        """Create the image file, or detect that the target is a block device."""
        self.checkpoint()
        self.is_block_device = is_block_device(self.image)
        if self.is_block_device:
            log.info(f"Target {self.image} is a block device")
            return
        create_image(self.image, size, image_format, self._runner)

    def attach(self, image_format: str) -> Optional[AttachedDevice]:
        """Attach the image file to an NBD device; no-op for block devices."""
        self.checkpoint()
        if self.is_block_device:
            log.debug("Target is a block device, skipping attachment")
            return None
        if self.device is not None:
            return self.device
        self.device = attach_image(
            self.image,
            image_format,
            runner=self._runner,
            sleep=self._sleep,
            dev_dir=self._dev_dir,
            sys_block_dir=self._sys_block_dir,
        )
        self._record("device", self.device.path)
        return self.device

    def _require_device(self) -> str:
        device_path = self.device_path
        if device_path is None:
            raise BuildError("No block device available; attach the image first")
        return device_path

    def partition(
        self, boot_mode: BootMode, esp_size: str = DEFAULT_ESP_SIZE
    ) -> PartitionLayout:
        self.checkpoint()
        return partition_device(
            self._require_device(),
            boot_mode,
            esp_size=esp_size,
            runner=self._runner,
            sleep=self._sleep,
            exists=self._node_exists,
            tool_exists=self._tool_exists,
        )

    def whole_device_layout(self) -> PartitionLayout:
        """Layout for an unpartitioned device: the filesystem goes on the device."""
        return PartitionLayout(root=self._require_device())

    def format(self, layout: PartitionLayout, rootfs: str) -> None:
        self.checkpoint()
        if layout.boot:
            make_filesystem(layout.boot, "vfat", "EFI", self._runner)
        make_filesystem(layout.root, rootfs, "root", self._runner)

    def mount_root(self, source: str, fstype: str) -> Path:
        """Mount the root filesystem at a fresh temporary directory."""
        self.checkpoint()
        if self.root_mount is not None:
            raise BuildError(f"Root filesystem already mounted at {self.root_mount.path}")
        mount_dir = Path(
            tempfile.mkdtemp(prefix="alpine-vm-image.", dir=self._temp_root)
        )
        try:
            mount_filesystem(source, mount_dir, fstype, runner=self._runner)
        except BaseException:
            os.rmdir(mount_dir)
            raise
        self.root_mount = MountPoint(path=str(mount_dir), source=source)
        self._record("mount", str(mount_dir))
        log.info(f"Mounted {source} at {mount_dir}")
        return mount_dir

    def mount_boot(self, source: str) -> Path:
        """Mount the EFI System Partition beneath the root mount."""
        self.checkpoint()
        target = self.mount_dir / ESP_MOUNT_DIR
        mount_filesystem(source, target, "vfat", runner=self._runner)
        self.boot_mount = MountPoint(path=str(target), source=source)
        self._record("mount", str(target))
        return target

    def bind_mount(self, source: Path, relative_target: str) -> Path:
        """Bind mount a host directory at ``relative_target`` inside the tree."""
        self.checkpoint()
        target = self.mount_dir / relative_target.strip("/")
        bind_mount(source, target, runner=self._runner)
        self.bind_mounts.append(MountPoint(path=str(target), source=str(source), kind="bind"))
        self._record("mount", str(target))
        return target

    def mount_pseudo_filesystems(self) -> None:
        """Bind mount /proc, /dev and /sys so the tree can be chrooted into."""
        for name in PSEUDO_FILESYSTEMS:
            self.bind_mount(Path("/") / name, name)

    def make_temp_dir(self, prefix: str = "alpine-vm-image.") -> Path:
        self.checkpoint()
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=self._temp_root))
        self.temp_dirs.append(path)
        self._record("temp_dir", str(path))
        return path

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self) -> None:
        """Release every acquired resource in reverse order.

        Safe to call more than once; calls after the first do nothing.

        Raises:
            TeardownFailedError: If any mount, device or package set leaked
        """
        if self._torn_down:
            log.debug("Teardown already done")
            return
        self._torn_down = True
        self._tearing_down = True
        self._ignore_signals()

        failures: list[TeardownError] = []
        try:
            self._leave_tree()
            self._remove_temp_dirs()
            if not self.cleanup:
                self._report_leftovers()
                return
            device_mounts = self._device_mountpoints()
            unmount_failures = self._unmount_all()
            failures.extend(unmount_failures)
            self._remove_mount_dir(unmounted=not unmount_failures)
            # A device still backing a mount stays attached.
            if self._device_still_mounted(unmount_failures, device_mounts):
                self._keep_device()
            else:
                failures.extend(self._detach())
                failures.extend(self._remove_host_packages())
        finally:
            self._tearing_down = False

        if failures:
            for failure in failures:
                log.error(str(failure))
            raise TeardownFailedError(failures)
        log.debug("Teardown completed")

    def _leave_tree(self) -> None:
        try:
            self._chdir("/")
        except OSError as error:
            log.warning(f"Failed to change directory to /: {error}")

    def _remove_temp_dirs(self) -> None:
        while self.temp_dirs:
            path = self.temp_dirs.pop()
            try:
                shutil.rmtree(path)
                self.released.append(("temp_dir", str(path)))
            except FileNotFoundError:
                self.released.append(("temp_dir", str(path)))
            except OSError as error:
                log.warning(f"Failed to remove temporary directory {path}: {error}")

    def _active_mounts_under_root(self) -> list[str]:
        try:
            return mounts_under(self.root_mount.path, self._mount_table())
        except OSError as error:
            log.warning(f"Cannot read the mount table: {error}")
            return []

    def _teardown_targets(self) -> list[str]:
        """Mount points to release, deepest first.

        Whatever the mount table lists under the root mount, including mounts
        the user script left behind. Registered mounts are the fallback when
        the table shows nothing there.
        """
        registered = [mount.path for mount in reversed(self.mounts)]
        if self.root_mount is None:
            return sort_deepest_first(registered)
        active = self._active_mounts_under_root()
        if not active:
            return sort_deepest_first(registered)
        for path in registered:
            if path not in active:
                log.debug(f"{path} is no longer mounted")
                self.released.append(("mount", path))
        return sort_deepest_first(reversed(active))

    def _unmount_all(self) -> list[UnmountFailedError]:
        failures: list[UnmountFailedError] = []
        for path in self._teardown_targets():
            try:
                unmount(path, self.device_path, self._runner)
                self.released.append(("mount", path))
            except UnmountFailedError as error:
                failures.append(error)
        self.boot_mount = None
        self.bind_mounts = []
        return failures

    def _device_mountpoints(self) -> set[str]:
        """Mount points whose source is the attached device or one of its partitions."""
        if self.device is None:
            return set()
        return {
            mount.path
            for mount in (self.root_mount, self.boot_mount)
            if mount is not None and mount.source.startswith(self.device.path)
        }

    @staticmethod
    def _device_still_mounted(
        failures: list[UnmountFailedError], device_mounts: set[str]
    ) -> bool:
        return any(failure.mountpoint in device_mounts for failure in failures)

    def _keep_device(self) -> None:
        device, self.device = self.device, None
        log.error(f"Leaving {device.path} attached, a filesystem on it is still mounted")
        if self.host_packages_installed:
            self.host_packages_installed = False
            log.warning(f"Keeping host packages {VIRTUAL_PACKAGE} for manual cleanup")

    def _remove_mount_dir(self, *, unmounted: bool) -> None:
        if self.root_mount is None:
            return
        mount_dir = self.root_mount.path
        self.root_mount = None
        if not unmounted:
            log.warning(f"Keeping {mount_dir}, it is still mounted")
            return
        try:
            os.rmdir(mount_dir)
        except OSError as error:
            log.warning(f"Failed to remove mount directory {mount_dir}: {error}")

    def _detach(self) -> list[TeardownError]:
        if self.device is None:
            return []
        device, self.device = self.device, None
        try:
            detach_device(device, self._runner)
        except DetachFailedError as error:
            return [error]
        self.released.append(("device", device.path))
        return []

    def _remove_host_packages(self) -> list[TeardownError]:
        if not self.host_packages_installed:
            return []
        self.host_packages_installed = False
        try:
            remove_transient_packages(self._runner)
        except HostPackagesRemovalError as error:
            return [error]
        self.released.append(("host_packages", VIRTUAL_PACKAGE))
        return []

    def _report_leftovers(self) -> None:
        for mount in self.mounts:
            log.warning(f"Cleanup disabled, leaving {mount.source} mounted at {mount.path}")
        if self.device is not None:
            log.warning(f"Cleanup disabled, leaving {self.device.path} attached")
        if self.host_packages_installed:
            log.warning(f"Cleanup disabled, leaving host packages {VIRTUAL_PACKAGE}")


def ensure_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        raise PreconditionError("This program must be run as root")
