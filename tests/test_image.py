"""Tests for storage/image.py."""

from alpine_vm_image.storage import image


def test_regular_file_is_not_block_device(tmp_path):
    path = tmp_path / "a.raw"
    path.touch()

    assert not image.is_block_device(path)
    assert not image.is_block_device(tmp_path / "missing")


def test_create_image(tmp_path, runner):
    path = tmp_path / "a.vmdk"

    assert image.create_image(path, "4G", "vmdk", runner)
    assert runner.calls == [["qemu-img", "create", "-f", "vmdk", str(path), "4G"]]


def test_existing_image_reused(tmp_path, runner):
    path = tmp_path / "a.raw"
    path.touch()

    assert not image.create_image(path, "2G", "raw", runner)
    assert runner.calls == []
