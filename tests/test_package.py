"""Tests for Package and Uploader."""

import hashlib
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from xcbuilder import (
    Build,
    BuildContext,
    CommandError,
    ConfigurationError,
    Package,
    PackagingError,
    Project,
    Uploader,
)

HELLO_MD5 = "5eb63bbbe01eeed093cb22bb8f5acdc3"


@pytest.fixture
def ipa(tmp_path):
    """A fake exported ipa."""
    path = tmp_path / "My App.ipa"
    path.write_bytes(b"hello world")
    return path


@pytest.fixture
def package(ipa):
    return Package(ipa, "1234567890", "ios")


@pytest.fixture
def xcode(tmp_path):
    """A fake Xcode install containing iTMSTransporter."""
    developer = tmp_path / "Xcode.app" / "Contents" / "Developer"
    developer.mkdir(parents=True)
    itms = tmp_path / "Xcode.app" / "Contents" / "SharedFrameworks" / "bin"
    itms.mkdir(parents=True)
    transporter = itms / "iTMSTransporter"
    transporter.write_text("#!/bin/sh\n")
    return developer, transporter


class TestPackage:
    """Tests for Package checksum, size and metadata."""

    def test_md5(self, package):
        assert package.md5() == HELLO_MD5

    def test_md5_is_repeatable(self, package):
        assert package.md5() == package.md5()

    def test_md5_spans_chunks(self, tmp_path):
        path = tmp_path / "big.ipa"
        path.write_bytes(b"x" * (Package.CHUNK_SIZE * 2 + 3))
        expected = hashlib.md5(path.read_bytes()).hexdigest()
        assert Package(path, "1", "ios").md5() == expected

    def test_size(self, package):
        assert package.size() == 11

    def test_safe_filename(self, package):
        assert package.safe_filename == "My-App.ipa"

    def test_metadata_xml(self, package):
        xml = package.metadata_xml()
        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert '<package version="software5.3"' in xml
        assert 'apple_id="1234567890"' in xml
        assert 'app_platform="ios"' in xml
        assert "<file_name>My-App.ipa</file_name>" in xml
        assert f'<checksum type="md5">{HELLO_MD5}</checksum>' in xml
        assert "<size>11</size>" in xml

    def test_make_itmsp(self, package, tmp_path):
        target = tmp_path / "out" / "App.itmsp"
        result = package.make_itmsp(target)
        assert result == target
        assert (target / "My-App.ipa").read_bytes() == b"hello world"
        assert (target / "metadata.xml").read_text() == package.metadata_xml()

    def test_for_build(self, tmp_path):
        project = Project(build_dir=tmp_path)
        build = Build(scheme="App", provisioning_profile="D", app_id="99")
        project.add_build(build)
        package = Package.for_build(build)
        assert package.ipa_path == build.ipa_path
        assert package.app_id == "99"
        assert package.platform == "ios"

    def test_for_build_requires_app_id(self, tmp_path):
        project = Project(build_dir=tmp_path)
        build = Build(scheme="App", provisioning_profile="D")
        project.add_build(build)
        with pytest.raises(PackagingError, match="app_id"):
            Package.for_build(build)

    def test_for_build_requires_platform(self, tmp_path):
        project = Project(build_dir=tmp_path)
        build = Build(
            scheme="App", provisioning_profile="D", app_id="1", sdk="watchos"
        )
        project.add_build(build)
        with pytest.raises(PackagingError, match="platform"):
            Package.for_build(build)


class TestUploader:
    """Tests for Uploader command assembly and staging."""

    def test_unknown_tool(self):
        with pytest.raises(ConfigurationError, match="Unknown upload tool"):
            Uploader(BuildContext(environ={}), tool="ftp")

    def test_altool_upload(self, package):
        uploader = Uploader(BuildContext(environ={}, dry_run=False))
        with patch("subprocess.run") as mock_run:
            uploader.upload(package)
        assert mock_run.call_args.args[0] == [
            "xcrun",
            "altool",
            "--upload-app",
            "--type",
            "ios",
            "--file",
            str(package.ipa_path),
            "--username",
            "@env:APP_STORE_CONNECT_USER",
            "--password",
            "@env:APP_STORE_CONNECT_PASSWORD",
        ]

    def test_credentials_never_inlined(self, package):
        context = BuildContext(
            environ={
                "APP_STORE_CONNECT_USER": "me@example.com",
                "APP_STORE_CONNECT_PASSWORD": "secret",
            },
            dry_run=False,
        )
        command = Uploader(context).altool_command(package)
        assert "secret" not in command
        assert "me@example.com" not in command

    def test_transporter_path(self, xcode):
        developer, transporter = xcode
        context = BuildContext(environ={"DEVELOPER_DIR": str(developer)})
        uploader = Uploader(context, tool="transporter")
        assert uploader.transporter_path() == transporter

    def test_transporter_not_found(self, tmp_path):
        developer = tmp_path / "Xcode.app" / "Contents" / "Developer"
        developer.mkdir(parents=True)
        context = BuildContext(environ={"DEVELOPER_DIR": str(developer)})
        with pytest.raises(PackagingError, match="iTMSTransporter not found"):
            Uploader(context, tool="transporter").transporter_path()

    def test_transporter_upload_stages_and_cleans_up(self, package, xcode):
        developer, transporter = xcode
        context = BuildContext(
            environ={"DEVELOPER_DIR": str(developer)}, dry_run=False
        )
        uploader = Uploader(context, tool="transporter")
        staged = {}

        def fake_run(command, **kwargs):
            package_path = Path(command[command.index("-f") + 1])
            staged["path"] = package_path
            staged["files"] = sorted(p.name for p in package_path.iterdir())
            return MagicMock(returncode=0, stdout="", stderr="")

        with patch("subprocess.run", side_effect=fake_run):
            uploader.upload(package)

        assert staged["files"] == ["My-App.ipa", "metadata.xml"]
        assert staged["path"].suffix == ".itmsp"
        assert not staged["path"].exists()

    def test_transporter_failure_still_cleans_up(self, package, xcode):
        developer, _ = xcode
        context = BuildContext(
            environ={"DEVELOPER_DIR": str(developer)}, dry_run=False
        )
        uploader = Uploader(context, tool="transporter")
        staged = {}

        def failing_run(command, **kwargs):
            staged["path"] = Path(command[command.index("-f") + 1])
            raise subprocess.CalledProcessError(1, command)

        with patch("subprocess.run", side_effect=failing_run):
            with pytest.raises(CommandError):
                uploader.upload(package)

        assert not staged["path"].exists()

    def test_transporter_command(self, package, xcode):
        developer, transporter = xcode
        context = BuildContext(environ={"DEVELOPER_DIR": str(developer)})
        command = Uploader(context, tool="transporter").transporter_command(
            transporter, "/tmp/App.itmsp"
        )
        assert command == [
            str(transporter),
            "-m",
            "upload",
            "-f",
            "/tmp/App.itmsp",
            "-u",
            "@env:APP_STORE_CONNECT_USER",
            "-p",
            "@env:APP_STORE_CONNECT_PASSWORD",
            "-v",
            "detailed",
        ]

    def test_upload_packages(self, tmp_path, xcode):
        developer, transporter = xcode
        packages_dir = tmp_path / "Packages"
        (packages_dir / "B.itmsp").mkdir(parents=True)
        (packages_dir / "A.itmsp").mkdir()
        (packages_dir / "notes.txt").write_text("")
        context = BuildContext(
            environ={"DEVELOPER_DIR": str(developer)}, dry_run=False
        )
        uploader = Uploader(context, tool="transporter")

        with patch("subprocess.run") as mock_run:
            uploaded = uploader.upload_packages(packages_dir)

        assert [p.name for p in uploaded] == ["A.itmsp", "B.itmsp"]
        assert mock_run.call_count == 2
        first = mock_run.call_args_list[0].args[0]
        assert first[0] == str(transporter)
        assert first[4] == str(packages_dir / "A.itmsp")

    def test_upload_packages_empty(self, tmp_path):
        uploader = Uploader(BuildContext(environ={}), tool="transporter")
        with patch("subprocess.run") as mock_run:
            assert uploader.upload_packages(tmp_path) == []
        mock_run.assert_not_called()
