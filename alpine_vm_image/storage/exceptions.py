"""Custom exceptions for image builds.

This module defines a hierarchy of exceptions for the build so that every
failure maps to a distinct process exit status and names the resource involved.

Exception Hierarchy:
    BuildError (base, exit 1)
        ├── PreconditionError (exit 2)
        ├── AcquisitionError (exit 3)
        │   ├── DeviceExhaustedError
        │   ├── DeviceSettleTimeoutError
        │   ├── FilesystemCreationError
        │   └── MountFailedError
        ├── ExecutionError (exit 4)
        │   ├── CommandError
        │   └── ScriptFailedError
        ├── BuildInterrupted (exit 130)
        └── TeardownError (exit 5)
            ├── UnmountFailedError (exit 5)
            ├── DetachFailedError (exit 6)
            ├── HostPackagesRemovalError (exit 7)
            └── TeardownFailedError (exit of the first failure)

Usage:
    from alpine_vm_image.storage.exceptions import DeviceExhaustedError

    if device is None:
        raise DeviceExhaustedError()
"""

from __future__ import annotations

import signal
from typing import Sequence


class BuildError(Exception):
    """Base exception for all build failures."""

    exit_code = 1


class PreconditionError(BuildError):
    """Invalid options or host state, detected before anything is acquired."""

    exit_code = 2


class AcquisitionError(BuildError):
    """Base exception for failures while acquiring build resources."""

    exit_code = 3


class DeviceExhaustedError(AcquisitionError):
    """No free NBD device slot, even after reloading the kernel module."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        msg = "No available nbd device found"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeviceSettleTimeoutError(AcquisitionError):
    """A device node did not appear after a topology change."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(f"Device node {device_path} did not appear")


class FilesystemCreationError(AcquisitionError):
    """mkfs failed for a device or partition."""

    def __init__(self, device_path: str, fstype: str, reason: str = ""):
        self.device_path = device_path
        self.fstype = fstype
        self.reason = reason
        msg = f"Failed to create {fstype} filesystem on {device_path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountFailedError(AcquisitionError):
    """A filesystem or bind mount could not be attached."""

    def __init__(self, source: str, target: str, reason: str = ""):
        self.source = source
        self.target = target
        self.reason = reason
        msg = f"Failed to mount {source} at {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ExecutionError(BuildError):
    """Base exception for failures of build steps."""

    exit_code = 4


class CommandError(ExecutionError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class ScriptFailedError(ExecutionError):
    """The user-supplied post-install script exited with a non-zero status."""

    def __init__(self, script: str, returncode: int):
        self.script = script
        self.returncode = returncode
        super().__init__(f"Script {script} failed with exit status {returncode}")


class BuildInterrupted(BuildError):
    """A termination signal arrived during the build."""

    exit_code = 130

    def __init__(self, signum: int):
        self.signum = signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Build interrupted by {name}")


class TeardownError(BuildError):
    """Base exception for resources that could not be released."""

    exit_code = 5


class UnmountFailedError(TeardownError):
    """A mount point could not be unmounted."""

    exit_code = 5

    def __init__(self, mountpoint: str, device_path: str | None = None, reason: str = ""):
        self.mountpoint = mountpoint
        self.device_path = device_path
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f" ({reason})"
        msg += "; unmount it manually"
        if device_path:
            msg += f" and disconnect {device_path}"
        super().__init__(msg)


class DetachFailedError(TeardownError):
    """The NBD device could not be disconnected from the image."""

    exit_code = 6

    def __init__(self, device_path: str, reason: str = ""):
        self.device_path = device_path
        self.reason = reason
        msg = f"Failed to disconnect {device_path}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg + "; disconnect it manually")


class HostPackagesRemovalError(TeardownError):
    """The transient host package set could not be removed."""

    exit_code = 7

    def __init__(self, virtual_package: str, reason: str = ""):
        self.virtual_package = virtual_package
        self.reason = reason
        msg = f"Failed to remove host packages {virtual_package}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg + f"; run 'apk del {virtual_package}' manually")


class TeardownFailedError(TeardownError):
    """One or more resources leaked during teardown."""

    def __init__(self, failures: Sequence[TeardownError]):
        self.failures = list(failures)
        if self.failures:
            self.exit_code = self.failures[0].exit_code
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(f"Teardown left {len(self.failures)} resource(s) behind: {details}")
