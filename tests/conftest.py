"""
Pytest configuration and shared fixtures for alpine-make-vm-image tests.

Nothing in the test suite touches the host: commands go through FakeRunner,
device nodes live under tmp_path, and sleeps are Mocks.
"""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from alpine_vm_image.session import BuildSession
from alpine_vm_image.storage.exceptions import CommandError


class FakeRunner:
    """Records commands instead of running them.

    Commands whose argument list starts with a configured prefix fail (or
    return canned stdout); everything else succeeds with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.kwargs: List[dict] = []
        self._failures: List[dict] = []
        self._outputs: Dict[tuple, str] = {}

    def fail(
        self,
        *prefix: str,
        returncode: int = 1,
        stderr: str = "failed",
        times: Optional[int] = None,
    ) -> None:
        """Make commands starting with ``prefix`` fail (``times`` times, or always)."""
        self._failures.append(
            {"prefix": list(prefix), "returncode": returncode, "stderr": stderr, "times": times}
        )

    def output(self, *prefix: str, stdout: str) -> None:
        self._outputs[tuple(prefix)] = stdout

    def __call__(
        self,
        command,
        *,
        check=True,
        input_text=None,
        cwd=None,
        env=None,
        capture=True,
    ):
        command = [str(part) for part in command]
        self.calls.append(command)
        self.kwargs.append(
            {"check": check, "input_text": input_text, "cwd": cwd, "env": env, "capture": capture}
        )

        for failure in self._failures:
            prefix = failure["prefix"]
            if command[: len(prefix)] != prefix or failure["times"] == 0:
                continue
            if failure["times"] is not None:
                failure["times"] -= 1
            if check:
                raise CommandError(command, failure["returncode"], failure["stderr"])
            return subprocess.CompletedProcess(
                command, failure["returncode"], stdout="", stderr=failure["stderr"]
            )

        stdout = ""
        for prefix, canned in self._outputs.items():
            if tuple(command[: len(prefix)]) == prefix:
                stdout = canned
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]

    def matching(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def nbd_dirs(tmp_path):
    """Fake /dev and /sys/block with four unused nbd slots."""
    dev_dir = tmp_path / "dev"
    sys_block_dir = tmp_path / "sys" / "block"
    dev_dir.mkdir()
    sys_block_dir.mkdir(parents=True)
    for index in range(4):
        (dev_dir / f"nbd{index}").touch()
        (sys_block_dir / f"nbd{index}").mkdir()
    return dev_dir, sys_block_dir


@pytest.fixture
def mark_busy(nbd_dirs):
    """Mark nbd slots as in use, the way the kernel does while qemu-nbd serves them."""
    _, sys_block_dir = nbd_dirs

    def mark(*names: str) -> None:
        for name in names:
            (sys_block_dir / name / "pid").write_text("1234\n")

    return mark


@pytest.fixture
def make_session(tmp_path, runner, sleep, nbd_dirs):
    """Factory for BuildSessions wired to the fakes above."""
    dev_dir, sys_block_dir = nbd_dirs
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()

    def factory(image: Optional[Path] = None, **overrides) -> BuildSession:
        kwargs = {
            "runner": runner,
            "sleep": sleep,
            "chdir": Mock(),
            "mount_table": lambda: [],
            "tool_exists": lambda name: True,
            "node_exists": lambda path: True,
            "dev_dir": dev_dir,
            "sys_block_dir": sys_block_dir,
            "temp_root": temp_root,
        }
        kwargs.update(overrides)
        return BuildSession(image or tmp_path / "alpine.qcow2", **kwargs)

    return factory
