"""Tests for main.py - argument parsing and exit statuses."""

import signal
from pathlib import Path
from unittest.mock import patch

import pytest

from alpine_vm_image import main as main_module
from alpine_vm_image.config.settings import load_settings
from alpine_vm_image.domain.models import BootMode, BuildOptions
from alpine_vm_image.storage.exceptions import (
    BuildInterrupted,
    DeviceExhaustedError,
    PreconditionError,
    ScriptFailedError,
)


@pytest.fixture
def settings(tmp_path):
    return load_settings(tmp_path / "settings.json", environ={})


def parse(*argv):
    return main_module.build_parser().parse_args(list(argv))


class TestParser:
    def test_image_script_and_args(self):
        args = parse("-P", "alpine.qcow2", "setup.sh", "one", "two")

        assert args.image == Path("alpine.qcow2")
        assert args.script == Path("setup.sh")
        assert args.script_args == ["one", "two"]
        assert args.partition
        assert args.cleanup

    def test_no_cleanup(self):
        assert parse("--no-cleanup", "a.img").cleanup is False

    def test_image_required(self):
        with pytest.raises(SystemExit):
            parse()


class TestOptionsFromArgs:
    """Tests for options_from_args()."""

    def test_defaults_from_settings(self, settings):
        options = main_module.options_from_args(parse("-a", "x86_64", "a.qcow2"), settings)

        assert options.arch == "x86_64"
        assert options.boot_mode is BootMode.BIOS
        assert options.kernel_flavor == "virt"
        assert options.branch == "latest-stable"
        assert options.keys_dir == Path("/etc/apk/keys")
        assert options.initfs_features == settings["initfs_features"]

    def test_cli_overrides_settings(self, settings):
        args = parse(
            "-a", "aarch64", "-b", "edge", "-p", "openssh,chrony", "--rootfs", "btrfs",
            "-i", "base nvme", "a.qcow2",
        )

        options = main_module.options_from_args(args, settings)

        assert options.boot_mode is BootMode.UEFI
        assert options.branch == "edge"
        assert options.packages == ["openssh", "chrony"]
        assert options.rootfs == "btrfs"
        assert options.initfs_features == ["base", "nvme"]

    def test_bios_on_arm_rejected(self, settings):
        with pytest.raises(PreconditionError):
            main_module.options_from_args(parse("-a", "aarch64", "-B", "BIOS", "a.img"), settings)


class TestRunBuild:
    """Tests for run_build() exit statuses."""

    @pytest.fixture
    def options(self, tmp_path):
        return BuildOptions(image=tmp_path / "alpine.qcow2", arch="x86_64")

    @pytest.fixture
    def factory(self, make_session):
        return lambda image, cleanup: make_session(image, cleanup=cleanup)

    @patch("alpine_vm_image.main.build_image")
    def test_success(self, mock_build, options, factory):
        assert main_module.run_build(options, {}, factory) == 0
        mock_build.assert_called_once()

    @patch("alpine_vm_image.main.build_image", side_effect=DeviceExhaustedError())
    def test_acquisition_failure(self, mock_build, options, factory):
        assert main_module.run_build(options, {}, factory) == 3

    @patch("alpine_vm_image.main.build_image", side_effect=OSError("disk full"))
    def test_unexpected_os_error(self, mock_build, options, factory):
        assert main_module.run_build(options, {}, factory) == 4

    def test_teardown_failure_wins(self, options, factory, runner, mocker):
        """Test that a leaked mount decides the status over the script failure."""
        runner.fail("umount", stderr="target is busy")

        def build(options, session, settings):
            session.attach("qcow2")
            session.mount_root(session.device_path, "ext4")
            raise ScriptFailedError("setup.sh", 1)

        mocker.patch("alpine_vm_image.main.build_image", side_effect=build)
        critical = mocker.patch.object(main_module.LoggerFactory, "for_system").return_value.critical

        assert main_module.run_build(options, {}, factory) == 5
        assert "target is busy" in critical.call_args.args[0]

    def test_interrupted(self, options, factory, mocker):
        mocker.patch(
            "alpine_vm_image.main.build_image", side_effect=BuildInterrupted(signal.SIGINT)
        )

        assert main_module.run_build(options, {}, factory) == 130


@patch("alpine_vm_image.main.setup_logging")
class TestMain:
    """Tests for main()."""

    @patch("alpine_vm_image.main.run_build", return_value=0)
    @patch("alpine_vm_image.main.ensure_root")
    def test_builds(self, mock_root, mock_run, mock_logging, tmp_path):
        settings_file = tmp_path / "settings.json"

        assert main_module.main(
            ["--settings", str(settings_file), "-a", "x86_64", "-d", str(tmp_path / "a.qcow2")]
        ) == 0

        mock_logging.assert_called_once_with(debug=True, trace=False, log_dir=None)
        options = mock_run.call_args.args[0]
        assert options.image == tmp_path / "a.qcow2"

    @patch("alpine_vm_image.main.run_build")
    @patch("alpine_vm_image.main.ensure_root")
    def test_invalid_options(self, mock_root, mock_run, mock_logging, tmp_path):
        status = main_module.main(
            ["--settings", str(tmp_path / "s.json"), "--rootfs", "zfs", str(tmp_path / "a.img")]
        )

        assert status == 2
        mock_run.assert_not_called()

    @patch("alpine_vm_image.main.run_build")
    @patch(
        "alpine_vm_image.main.ensure_root",
        side_effect=PreconditionError("This program must be run as root"),
    )
    def test_not_root(self, mock_root, mock_run, mock_logging, tmp_path):
        status = main_module.main(["--settings", str(tmp_path / "s.json"), str(tmp_path / "a.img")])

        assert status == 2
        mock_run.assert_not_called()
