"""System configuration inside the target root.

Functions:
    - update_config_file(): Set KEY=VALUE lines in shell-style config files
    - write_fstab(): /etc/fstab with UUID entries
    - write_network_interfaces(): loopback + DHCP on eth0
    - write_hostname(): /etc/hostname
    - enable_services(): OpenRC runlevel symlinks
    - write_mkinitfs_config(): initramfs features
    - enable_serial_console(): getty on the serial port
    - copy_fs_skeleton(): overlay a user directory onto the root
    - copy_resolv_conf(): name resolution for chrooted commands
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from alpine_vm_image.logging import LoggerFactory


log = LoggerFactory.for_build()

DEFAULT_RUNLEVELS: dict[str, tuple[str, ...]] = {
    "sysinit": ("devfs", "dmesg", "mdev", "hwdrivers"),
    "boot": ("bootmisc", "hostname", "hwclock", "modules", "seedrng", "swap", "sysctl", "syslog"),
    "default": ("acpid", "crond", "networking"),
    "shutdown": ("killprocs", "mount-ro", "savecache"),
}

NETWORK_INTERFACES = """\
auto lo
iface lo inet loopback

auto eth0
iface eth0 inet dhcp
"""


@dataclass(frozen=True)
class FstabEntry:
    uuid: str
    mountpoint: str
    fstype: str
    options: str = "rw,relatime"
    passno: int = 1

    def render(self) -> str:
        return f"UUID={self.uuid}\t{self.mountpoint}\t{self.fstype}\t{self.options}\t0 {self.passno}"


def update_config_file(path: Path, values: Mapping[str, str]) -> None:
    """Set ``KEY=VALUE`` lines, replacing existing (or commented-out) keys."""
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    pending = dict(values)
    for index, line in enumerate(lines):
        match = re.match(r"^#?\s*([A-Za-z_][A-Za-z0-9_]*)=", line)
        if match and match.group(1) in pending:
            key = match.group(1)
            lines[index] = f"{key}={pending.pop(key)}"
    lines.extend(f"{key}={value}" for key, value in pending.items())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_fstab(root: Path, entries: Sequence[FstabEntry]) -> Path:
    path = root / "etc" / "fstab"
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    # Drop default entries for mount points we manage.
    managed = {entry.mountpoint for entry in entries}
    kept = [
        line
        for line in existing.splitlines()
        if not (len(line.split()) > 1 and line.split()[1] in managed)
    ]
    kept.extend(entry.render() for entry in entries)
    path.write_text("\n".join(kept) + "\n", encoding="utf-8")
    return path


def write_network_interfaces(root: Path) -> Optional[Path]:
    path = root / "etc" / "network" / "interfaces"
    if path.exists():
        log.debug(f"{path} already exists, leaving it alone")
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(NETWORK_INTERFACES, encoding="utf-8")
    return path


def write_hostname(root: Path, hostname: str) -> Path:
    path = root / "etc" / "hostname"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(hostname + "\n", encoding="utf-8")
    return path


def enable_services(
    root: Path, runlevels: Mapping[str, Iterable[str]] = DEFAULT_RUNLEVELS
) -> list[str]:
    """Link init scripts into their runlevels, the way rc-update does.

    Services without an init script in the root are skipped.

    Returns:
        "runlevel/service" for every link created
    """
    enabled = []
    for runlevel, services in runlevels.items():
        level_dir = root / "etc" / "runlevels" / runlevel
        level_dir.mkdir(parents=True, exist_ok=True)
        for service in services:
            if not (root / "etc" / "init.d" / service).exists():
                log.debug(f"No init script for {service}, not enabling it")
                continue
            link = level_dir / service
            if link.is_symlink() or link.exists():
                continue
            link.symlink_to(f"/etc/init.d/{service}")
            enabled.append(f"{runlevel}/{service}")
    log.debug(f"Enabled services: {', '.join(enabled) or 'none'}")
    return enabled


def write_mkinitfs_config(root: Path, features: Iterable[str]) -> Path:
    path = root / "etc" / "mkinitfs" / "mkinitfs.conf"
    unique = list(dict.fromkeys(features))
    update_config_file(path, {"features": f'"{" ".join(unique)}"'})
    return path


def enable_serial_console(root: Path, tty: str, baud: int = 115200) -> None:
    """Spawn a getty on ``tty`` and allow root logins on it."""
    inittab = root / "etc" / "inittab"
    lines = inittab.read_text(encoding="utf-8").splitlines() if inittab.exists() else []
    getty = f"{tty}::respawn:/sbin/getty -L {baud} {tty} vt100"
    for index, line in enumerate(lines):
        if re.match(rf"^#?\s*{re.escape(tty)}::", line):
            lines[index] = getty
            break
    else:
        lines.append(getty)
    inittab.parent.mkdir(parents=True, exist_ok=True)
    inittab.write_text("\n".join(lines) + "\n", encoding="utf-8")

    securetty = root / "etc" / "securetty"
    if securetty.exists():
        ttys = securetty.read_text(encoding="utf-8").split()
        if tty not in ttys:
            with open(securetty, "a", encoding="utf-8") as handle:
                handle.write(f"{tty}\n")


def copy_fs_skeleton(
    root: Path, skel_dir: Path, chown: Optional[tuple[int, int]] = None
) -> None:
    """Copy the contents of ``skel_dir`` over the root, optionally chowning them."""
    log.info(f"Copying filesystem skeleton from {skel_dir}")
    shutil.copytree(skel_dir, root, symlinks=True, dirs_exist_ok=True)
    if chown is None:
        return
    uid, gid = chown
    for dirpath, dirnames, filenames in os.walk(skel_dir):
        relative = Path(dirpath).relative_to(skel_dir)
        for name in [*dirnames, *filenames]:
            os.lchown(root / relative / name, uid, gid)


def copy_resolv_conf(root: Path, source: Path = Path("/etc/resolv.conf")) -> bool:
    if not source.exists():
        return False
    dest = root / "etc" / "resolv.conf"
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.is_symlink():
        dest.unlink()
    shutil.copyfile(source, dest)
    return True
