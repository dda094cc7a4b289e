"""Running the user's post-install script against the built tree."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional, Sequence

from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.exceptions import ScriptFailedError

if TYPE_CHECKING:
    from alpine_vm_image.session import BuildSession


log = LoggerFactory.for_build()

SCRIPT_MOUNT_DIR = "mnt"


def chroot_script_command(root: Path, script_name: str, args: Sequence[str]) -> list[str]:
    inner = f"cd /{SCRIPT_MOUNT_DIR} && ./{shlex.quote(script_name)} \"$@\""
    return ["chroot", str(root), "/bin/sh", "-c", inner, "sh", *args]


def run_script(
    session: BuildSession,
    script: Path,
    args: Sequence[str] = (),
    *,
    chroot: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Run the user script with the mounted image as its context.

    With ``chroot`` the script's directory is bind mounted at /mnt inside the
    tree and the script runs chrooted there. Otherwise it runs on the host
    with the mounted root as working directory and ROOT_DIR in its
    environment.

    Raises:
        ScriptFailedError: If the script exits non-zero
    """
    script = script.resolve()
    root = session.mount_dir
    env = dict(os.environ if environ is None else environ)

    if chroot:
        session.bind_mount(script.parent, SCRIPT_MOUNT_DIR)
        command = chroot_script_command(root, script.name, args)
        cwd = None
    else:
        command = [str(script), *args]
        cwd = str(root)
        env["ROOT_DIR"] = str(root)

    session.checkpoint()
    log.info(f"Running script {script}{' (chroot)' if chroot else ''}")
    result = session.runner(command, check=False, cwd=cwd, env=env, capture=False)
    if result.returncode != 0:
        raise ScriptFailedError(str(script), result.returncode)
    log.info(f"Script {script.name} completed")
