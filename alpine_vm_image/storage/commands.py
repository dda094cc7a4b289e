"""External command execution.

Every system tool the build drives (qemu-img, qemu-nbd, sfdisk, mkfs.*, mount,
apk, chroot, ...) goes through run_command() so commands and their output end
up in the log, and failures surface as CommandError instead of
subprocess.CalledProcessError.

Components that touch the host accept a ``runner`` argument with the same
signature, so tests can record commands without running them.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Callable, Mapping, Optional, Sequence

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.exceptions import CommandError


log = LoggerFactory.for_system()

Runner = Callable[..., subprocess.CompletedProcess]


def _log_output(program: str, result: subprocess.CompletedProcess) -> None:
    output_log = LoggerFactory.for_command(program)
    for stream in (result.stdout, result.stderr):
        if not stream:
            continue
        for line in stream.strip().splitlines():
            if result.returncode == 0:
                output_log.trace(line)
            else:
                output_log.debug(line)


def run_command(
    command: Sequence[str],
    *,
    check: bool = True,
    input_text: Optional[str] = None,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    capture: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and raise CommandError if it fails.

    Args:
        command: Argument list, never a shell string
        check: Raise CommandError on non-zero exit status
        input_text: Text fed to the command's stdin
        cwd: Working directory for the command
        env: Full environment for the command (inherits ours when None)
        capture: Capture stdout/stderr; when False the command writes
            straight to our terminal (used for user scripts)

    Returns:
        The completed process

    Raises:
        CommandError: If the command is missing or fails and check is True
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            text=True,
            errors="replace",
            capture_output=capture,
        )
    except FileNotFoundError as error:
        log.error(f"Command not found: {command[0]}")
        raise CommandError(command, 127, str(error)) from error

    if capture:
        _log_output(command[0].rsplit("/", 1)[-1], result)

    if result.returncode != 0:
        log.debug(f"Command completed with return code {result.returncode}")
        if check:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            raise CommandError(command, result.returncode, stderr or stdout)
    return result


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None
