"""Default build settings.

Precedence, lowest first: the defaults below, the JSON settings file,
environment variables, command line options.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from alpine_vm_image.logging import LoggerFactory


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "ALPINE_VM_IMAGE_SETTINGS_PATH",
        Path.home() / ".config" / "alpine-make-vm-image" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BRANCH = "latest-stable"
DEFAULT_MIRROR_URI = "https://dl-cdn.alpinelinux.org/alpine"
DEFAULT_IMAGE_SIZE = "2G"
DEFAULT_ROOTFS = "ext4"
DEFAULT_ESP_SIZE = "512M"
DEFAULT_HOSTNAME = "alpine"
DEFAULT_KEYS_DIR = "/etc/apk/keys"
DEFAULT_INITFS_FEATURES = ["ata", "base", "ide", "scsi", "usb", "virtio"]
DEFAULT_APK_TOOLS_URI = (
    "https://gitlab.alpinelinux.org/api/v4/projects/5/packages/generic/"
    "v2.14.4/{arch}/apk.static"
)

DEFAULT_SETTINGS: dict[str, Any] = {
    "branch": DEFAULT_BRANCH,
    "mirror_uri": DEFAULT_MIRROR_URI,
    "image_size": DEFAULT_IMAGE_SIZE,
    "image_format": None,
    "rootfs": DEFAULT_ROOTFS,
    "esp_size": DEFAULT_ESP_SIZE,
    "kernel_flavor": None,
    "hostname": DEFAULT_HOSTNAME,
    "keys_dir": DEFAULT_KEYS_DIR,
    "initfs_features": DEFAULT_INITFS_FEATURES,
    "packages": [],
    "apk_tools_uri": DEFAULT_APK_TOOLS_URI,
    "apk_tools_sha256": None,
    "apk_opts": [],
}

# environment variable -> settings key
ENV_OVERRIDES = {
    "ALPINE_BRANCH": "branch",
    "ALPINE_MIRROR": "mirror_uri",
    "APK_TOOLS_URI": "apk_tools_uri",
    "APK_TOOLS_SHA256": "apk_tools_sha256",
    "APK_OPTS": "apk_opts",
}

_LIST_KEYS = {"initfs_features", "packages", "apk_opts"}


def split_words(value: Any) -> list[str]:
    """Accept a list or a comma/space separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.replace(",", " ").split()
    return [str(item) for item in value]


def load_settings(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    """Return the defaults overlaid with the settings file and environment."""
    settings = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            log.warning(f"Ignoring unreadable settings file {path}: {error}")
            data = None
        if isinstance(data, dict):
            unknown = set(data) - set(DEFAULT_SETTINGS)
            if unknown:
                log.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")
            settings.update({key: value for key, value in data.items() if key in DEFAULT_SETTINGS})
        elif data is not None:
            log.warning(f"Ignoring settings file {path}: expected a JSON object")

    environ = os.environ if environ is None else environ
    for variable, key in ENV_OVERRIDES.items():
        if environ.get(variable):
            settings[key] = environ[variable]

    for key in _LIST_KEYS:
        settings[key] = split_words(settings[key])
    return settings
