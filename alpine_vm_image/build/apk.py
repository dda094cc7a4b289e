"""Package installation into the target root with apk."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable, Optional, Sequence

from alpine_vm_image.domain.models import normalize_branch
from alpine_vm_image.logging import LoggerFactory
from alpine_vm_image.storage.commands import Runner, run_command


log = LoggerFactory.for_build()

REPOSITORIES = ("main", "community")


def repository_urls(mirror_uri: str, branch: str) -> list[str]:
    base = f"{mirror_uri.rstrip('/')}/{normalize_branch(branch)}"
    return [f"{base}/{name}" for name in REPOSITORIES]


def write_repositories(
    root: Path,
    mirror_uri: str,
    branch: str,
    repositories_file: Optional[Path] = None,
) -> Path:
    """Write /etc/apk/repositories in the target root.

    A user-supplied repositories file is copied verbatim; otherwise main and
    community of the given branch on the given mirror are used.
    """
    dest = root / "etc" / "apk" / "repositories"
    dest.parent.mkdir(parents=True, exist_ok=True)
    if repositories_file is not None:
        log.debug(f"Using repositories from {repositories_file}")
        shutil.copyfile(repositories_file, dest)
    else:
        dest.write_text("\n".join(repository_urls(mirror_uri, branch)) + "\n", encoding="utf-8")
    log.debug(f"Repositories: {dest.read_text(encoding='utf-8').strip()}")
    return dest


def copy_keys(root: Path, keys_dir: Optional[Path]) -> int:
    """Copy apk signing keys into the target root.

    Returns:
        Number of keys copied
    """
    dest = root / "etc" / "apk" / "keys"
    dest.mkdir(parents=True, exist_ok=True)
    if keys_dir is None or not keys_dir.is_dir():
        log.warning(f"Keys directory {keys_dir} not found, package signatures may fail")
        return 0
    count = 0
    for key in sorted(keys_dir.iterdir()):
        if key.is_file():
            shutil.copy2(key, dest / key.name)
            count += 1
    log.debug(f"Copied {count} keys from {keys_dir}")
    return count


def install_packages(
    root: Path,
    packages: Iterable[str],
    *,
    arch: str,
    apk: str = "apk",
    initdb: bool = False,
    extra_opts: Sequence[str] = (),
    runner: Runner = run_command,
) -> None:
    """Install packages into ``root``.

    Raises:
        CommandError: If apk fails
    """
    packages = list(packages)
    if not packages:
        return
    command = [apk, "add", "--root", str(root), "--arch", arch, "--update-cache"]
    if initdb:
        command.append("--initdb")
    command.extend(extra_opts)
    command.extend(packages)
    log.info(f"Installing packages: {' '.join(packages)}")
    runner(command)
