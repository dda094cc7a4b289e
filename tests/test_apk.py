"""Tests for build/apk.py."""

from alpine_vm_image.build import apk


class TestRepositories:
    def test_urls(self):
        assert apk.repository_urls("https://mirror.example/alpine/", "3.20") == [
            "https://mirror.example/alpine/v3.20/main",
            "https://mirror.example/alpine/v3.20/community",
        ]

    def test_write_default(self, tmp_path):
        path = apk.write_repositories(tmp_path, "https://m", "edge")

        assert path.read_text() == "https://m/edge/main\nhttps://m/edge/community\n"

    def test_write_from_file(self, tmp_path):
        custom = tmp_path / "repositories"
        custom.write_text("https://internal/alpine/main\n")
        root = tmp_path / "root"

        path = apk.write_repositories(root, "https://m", "edge", custom)

        assert path.read_text() == "https://internal/alpine/main\n"


class TestCopyKeys:
    def test_copies_keys(self, tmp_path):
        keys = tmp_path / "keys"
        keys.mkdir()
        (keys / "alpine-devel.rsa.pub").write_text("key")
        root = tmp_path / "root"

        assert apk.copy_keys(root, keys) == 1
        assert (root / "etc" / "apk" / "keys" / "alpine-devel.rsa.pub").read_text() == "key"

    def test_missing_keys_dir(self, tmp_path):
        assert apk.copy_keys(tmp_path, tmp_path / "missing") == 0
        assert (tmp_path / "etc" / "apk" / "keys").is_dir()


class TestInstallPackages:
    def test_initdb(self, tmp_path, runner):
        apk.install_packages(
            tmp_path, ["alpine-base"], arch="x86_64", initdb=True,
            extra_opts=["--no-progress"], runner=runner,
        )

        assert runner.calls == [
            [
                "apk", "add", "--root", str(tmp_path), "--arch", "x86_64",
                "--update-cache", "--initdb", "--no-progress", "alpine-base",
            ]
        ]

    def test_static_apk(self, tmp_path, runner):
        apk.install_packages(
            tmp_path, ["linux-virt"], arch="aarch64", apk="/tmp/x/apk.static", runner=runner
        )

        assert runner.calls[0][0] == "/tmp/x/apk.static"
        assert "--initdb" not in runner.calls[0]

    def test_nothing_to_install(self, tmp_path, runner):
        apk.install_packages(tmp_path, [], arch="x86_64", runner=runner)

        assert runner.calls == []
