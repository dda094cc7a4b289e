"""Tests for storage/mount.py - mounting and unmount ordering."""

import pytest

from alpine_vm_image.storage import mount
from alpine_vm_image.storage.exceptions import MountFailedError, UnmountFailedError


class TestReadMountTable:
    """Tests for read_mount_table()."""

    def test_parses_mount_points(self, tmp_path):
        mounts_file = tmp_path / "mounts"
        mounts_file.write_text(
            "proc /proc proc rw,nosuid 0 0\n"
            "/dev/nbd0 /tmp/alpine-vm-image.abc ext4 rw 0 0\n"
            "/dev/sdb1 /media/my\\040disk vfat rw 0 0\n"
        )

        assert mount.read_mount_table(mounts_file) == [
            "/proc",
            "/tmp/alpine-vm-image.abc",
            "/media/my disk",
        ]

    def test_missing_file(self, tmp_path):
        assert mount.read_mount_table(tmp_path / "missing") == []


class TestMountsUnder:
    """Tests for mounts_under()."""

    def test_filters_by_root(self):
        table = [
            "/",
            "/proc",
            "/tmp/root",
            "/tmp/root/proc",
            "/tmp/root2",
            "/tmp/root/boot/efi/",
        ]

        assert mount.mounts_under("/tmp/root", table) == [
            "/tmp/root",
            "/tmp/root/proc",
            "/tmp/root/boot/efi",
        ]

    def test_removes_duplicates(self):
        """Test that a path mounted twice is listed once."""
        table = ["/tmp/root/dev", "/tmp/root/dev"]

        assert mount.mounts_under("/tmp/root", table) == ["/tmp/root/dev"]


class TestSortDeepestFirst:
    """Tests for sort_deepest_first()."""

    def test_children_before_parents(self):
        paths = ["/r", "/r/boot/efi", "/r/proc", "/r/dev", "/r/mnt/x"]

        assert mount.sort_deepest_first(paths) == [
            "/r/boot/efi", "/r/mnt/x", "/r/proc", "/r/dev", "/r",
        ]

    def test_path_depth(self):
        assert mount.path_depth("/") == 1
        assert mount.path_depth("/tmp/root/proc") == 4


class TestMountOperations:
    """Tests for mount_filesystem(), bind_mount() and unmount()."""

    def test_mount_filesystem_creates_target(self, tmp_path, runner):
        target = tmp_path / "root" / "boot" / "efi"

        mount.mount_filesystem("/dev/nbd0p1", target, "vfat", runner=runner)

        assert target.is_dir()
        assert runner.calls == [["mount", "-t", "vfat", "/dev/nbd0p1", str(target)]]

    def test_mount_filesystem_with_options(self, tmp_path, runner):
        mount.mount_filesystem("/dev/nbd0", tmp_path, "ext4", "noatime", runner=runner)

        assert runner.calls == [["mount", "-t", "ext4", "-o", "noatime", "/dev/nbd0", str(tmp_path)]]

    def test_mount_failure(self, tmp_path, runner):
        runner.fail("mount", stderr="wrong fs type")

        with pytest.raises(MountFailedError) as exc_info:
            mount.mount_filesystem("/dev/nbd0", tmp_path, "ext4", runner=runner)

        assert exc_info.value.target == str(tmp_path)
        assert exc_info.value.exit_code == 3

    def test_bind_mount(self, tmp_path, runner):
        target = tmp_path / "proc"

        mount.bind_mount("/proc", target, runner=runner)

        assert runner.calls == [["mount", "--bind", "/proc", str(target)]]

    def test_unmount(self, runner):
        mount.unmount("/tmp/root/proc", runner=runner)

        assert runner.calls == [["umount", "/tmp/root/proc"]]

    def test_unmount_failure_names_mountpoint_and_device(self, runner):
        runner.fail("umount", stderr="target is busy")

        with pytest.raises(UnmountFailedError) as exc_info:
            mount.unmount("/tmp/root", "/dev/nbd0", runner)

        assert exc_info.value.mountpoint == "/tmp/root"
        assert exc_info.value.device_path == "/dev/nbd0"
        assert exc_info.value.reason == "target is busy"
