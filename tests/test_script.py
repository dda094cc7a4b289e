"""Tests for build/script.py - running the user script."""

import pytest

from alpine_vm_image.build import script as script_module
from alpine_vm_image.storage.exceptions import ScriptFailedError


@pytest.fixture
def user_script(tmp_path):
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    path = scripts / "configure.sh"
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


class TestChrootScriptCommand:
    def test_command(self, tmp_path):
        command = script_module.chroot_script_command(tmp_path, "my script.sh", ["a b", "c"])

        assert command == [
            "chroot",
            str(tmp_path),
            "/bin/sh",
            "-c",
            "cd /mnt && ./'my script.sh' \"$@\"",
            "sh",
            "a b",
            "c",
        ]


class TestRunScript:
    """Tests for run_script()."""

    def test_on_host(self, make_session, runner, user_script):
        with make_session() as session:
            session.attach("raw")
            session.mount_root(session.device_path, "ext4")
            root = str(session.mount_dir)
            script_module.run_script(session, user_script, ["x"], environ={"PATH": "/bin"})

        index = runner.calls.index([str(user_script.resolve()), "x"])
        kwargs = runner.kwargs[index]
        assert kwargs["cwd"] == root
        assert kwargs["env"] == {"PATH": "/bin", "ROOT_DIR": root}
        assert kwargs["capture"] is False
        assert kwargs["check"] is False

    def test_chroot(self, make_session, runner, user_script):
        with make_session() as session:
            session.attach("raw")
            session.mount_root(session.device_path, "ext4")
            root = session.mount_dir
            script_module.run_script(session, user_script, chroot=True, environ={})

        assert ["mount", "--bind", str(user_script.resolve().parent), str(root / "mnt")] in runner.calls
        assert script_module.chroot_script_command(root, "configure.sh", []) in runner.calls
        # The script directory is unmounted before the root.
        unmounted = [call[1] for call in runner.matching("umount")]
        assert unmounted == [str(root / "mnt"), str(root)]

    def test_failure(self, make_session, runner, user_script):
        runner.fail(str(user_script.resolve()), returncode=3)

        with pytest.raises(ScriptFailedError) as exc_info:
            with make_session() as session:
                session.attach("raw")
                session.mount_root(session.device_path, "ext4")
                script_module.run_script(session, user_script, environ={})

        assert exc_info.value.returncode == 3
        assert exc_info.value.exit_code == 4
        assert runner.matching("umount")
