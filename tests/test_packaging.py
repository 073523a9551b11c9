"""Tests for the packaging subpackage.

Uses mocked subprocess for the registry CLI.
"""

import json
import os
import stat
import subprocess
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from goldenimage.builds.artifacts import VerifiedArtifact
from goldenimage.credentials.secrets import SecretHandle
from goldenimage.errors import GenerationError, PackagingError
from goldenimage.packaging.box import (
    package_box,
    render_vagrantfile,
    ruby_string,
    sanitize_name,
    write_archive,
)
from goldenimage.packaging.registry import VagrantRegistry, parse_box_list

from conftest import FakeRegistry

BOX_LIST = """\
windows-server-2019-golden (hyperv, 0)
windows-server-2022-golden (hyperv, 0)
generic/ubuntu2204         (virtualbox, 4.3.12)
not a box line
"""


@pytest.fixture
def artifact(tmp_path):
    """Create a verified artifact with one disk."""
    out = tmp_path / "output" / "Virtual Hard Disks"
    out.mkdir(parents=True)
    disk = out / "packer-vm.VHDX"
    disk.write_bytes(b"VHDX" * 64)
    return VerifiedArtifact(
        output_directory=tmp_path / "output",
        disks=[disk],
        verified_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def secret():
    """Create the automation secret."""
    return SecretHandle("automation", b"It's-a\\secret", "gen-1")


class TestHelpers:
    """Tests for naming and quoting helpers."""

    def test_sanitize_name(self):
        """Unsafe characters collapse to dashes."""
        assert sanitize_name("windows server/2022") == "windows-server-2022"
        assert sanitize_name("///") == "disk"

    def test_ruby_string_escapes(self):
        """Quotes and backslashes are escaped."""
        assert ruby_string("a'b\\c") == "'a\\'b\\\\c'"

    def test_render_vagrantfile(self):
        """The Vagrantfile carries credentials and defaults."""
        text = render_vagrantfile("ws-golden", "2022", "vagrant", "pa'ss")
        assert "config.winrm.username = 'vagrant'" in text
        assert "config.winrm.password = 'pa\\'ss'" in text
        assert "config.vm.boot_timeout = 600" in text
        assert "h.enable_secure_boot = false" in text
        assert "h.memory = 2048" in text

    def test_render_overrides(self):
        """Defaults can be overridden."""
        text = render_vagrantfile("ws", "2022", "u", "p", memory=4096)
        assert "h.memory = 4096" in text

    def test_write_archive(self, tmp_path):
        """Archives are owner-only and leave no partial file."""
        src = tmp_path / "src"
        src.mkdir()
        (src / "a.txt").write_text("a")
        dest = tmp_path / "boxes" / "x.box"

        write_archive(src, dest)

        assert stat.S_IMODE(dest.stat().st_mode) == 0o600
        with tarfile.open(dest) as tar:
            assert tar.getnames() == ["a.txt"]
        assert [p.name for p in dest.parent.iterdir()] == ["x.box"]


class TestPackageBox:
    """Tests for package_box."""

    def test_box_contents(self, artifact, paths, secret, settings):
        """The box holds the disk, Vagrantfile, metadata and manifest."""
        registry = FakeRegistry()
        box = package_box(artifact, paths, "vagrant", secret, settings, registry)

        assert box.path == paths.box_path
        assert box.disk_name == "windows-server-2022-golden.vhdx"
        assert [name for name, _ in registry.added] == [paths.artifact_name]
        assert registry.archives == [paths.box_path.read_bytes()]

        with tarfile.open(box.path) as tar:
            names = set(tar.getnames())
            vagrantfile = tar.extractfile("Vagrantfile").read().decode()
            metadata = json.loads(tar.extractfile("metadata.json").read())
            manifest = json.loads(tar.extractfile("manifest.json").read())

        assert "Virtual Hard Disks/windows-server-2022-golden.vhdx" in names
        assert metadata == {"provider": "hyperv"}
        assert ruby_string("It's-a\\secret") in vagrantfile
        assert manifest["artifact_name"] == paths.artifact_name
        assert manifest["artifacts"][0]["labels"] == ["boot_disk"]

    def test_artifact_untouched(self, artifact, paths, secret, settings):
        """Packaging never modifies the verified disk."""
        before = artifact.primary_disk.read_bytes()
        package_box(artifact, paths, "vagrant", secret, settings, FakeRegistry())
        assert artifact.primary_disk.read_bytes() == before
        assert list(settings.scratch_root.iterdir()) == []

    def test_registry_failure(self, artifact, paths, secret, settings):
        """Registration errors propagate as PackagingError."""
        with pytest.raises(PackagingError) as exc_info:
            package_box(
                artifact, paths, "vagrant", secret, settings, FakeRegistry(fail=True)
            )
        assert exc_info.value.code == "registry_failed"
        assert artifact.primary_disk.exists()
        assert not paths.box_path.exists()
        assert list(paths.box_path.parent.iterdir()) == []

    def test_registry_failure_keeps_previous_box(
        self, artifact, paths, secret, settings
    ):
        """A box that failed registration never replaces the previous one."""
        paths.box_path.parent.mkdir(parents=True)
        paths.box_path.write_bytes(b"previous box")
        os.utime(paths.box_path, (1_000_000, 1_000_000))

        with pytest.raises(PackagingError):
            package_box(
                artifact, paths, "vagrant", secret, settings, FakeRegistry(fail=True)
            )

        assert paths.box_path.read_bytes() == b"previous box"
        assert paths.box_path.stat().st_mtime == 1_000_000
        assert list(paths.box_path.parent.iterdir()) == [paths.box_path]

    def test_disposed_secret(self, artifact, paths, secret, settings):
        """A disposed secret cannot be packaged."""
        secret.zero()
        with pytest.raises(GenerationError):
            package_box(artifact, paths, "vagrant", secret, settings, FakeRegistry())
        assert not paths.box_path.exists()


class TestVagrantRegistry:
    """Tests for VagrantRegistry."""

    def test_parse_box_list(self):
        """Golden boxes get their OS version parsed."""
        boxes = parse_box_list(BOX_LIST)
        assert len(boxes) == 3
        assert boxes[1].version == "2022"
        assert boxes[1].os_name == "windows-server-2022"
        assert boxes[2].provider == "virtualbox"
        assert boxes[2].version is None

    def test_add(self, tmp_path):
        """add registers with --force under the given name."""
        registry = VagrantRegistry()
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, "", ""),
        ) as mock_run:
            registry.add("ws-golden", tmp_path / "ws.box")

        assert mock_run.call_args.args[0] == [
            "vagrant",
            "box",
            "add",
            "--name",
            "ws-golden",
            "--force",
            str(tmp_path / "ws.box"),
        ]

    def test_remove(self):
        """remove drops every version."""
        registry = VagrantRegistry(["vagrant", "box"])
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, "", ""),
        ) as mock_run:
            registry.remove("ws-golden")
        assert mock_run.call_args.args[0][2:] == ["remove", "ws-golden", "--all", "--force"]

    def test_list_golden_boxes(self):
        """Only golden boxes are listed, ordered by version."""
        registry = VagrantRegistry()
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, BOX_LIST, ""),
        ):
            golden = registry.list_golden_boxes()
        assert [b.version for b in golden] == ["2019", "2022"]

    def test_failure(self, tmp_path):
        """Non-zero exits raise registry_failed."""
        registry = VagrantRegistry()
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1, "", "box file corrupt"),
        ):
            with pytest.raises(PackagingError) as exc_info:
                registry.add("ws", tmp_path / "ws.box")
        assert exc_info.value.code == "registry_failed"
        assert "box file corrupt" in str(exc_info.value)

    def test_missing_cli(self):
        """A missing CLI raises registry_unavailable."""
        registry = VagrantRegistry()
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            side_effect=FileNotFoundError("vagrant"),
        ):
            with pytest.raises(PackagingError) as exc_info:
                registry.list_boxes()
        assert exc_info.value.code == "registry_unavailable"

    def test_timeout(self):
        """Timeouts raise registry_timeout."""
        registry = VagrantRegistry(timeout=30)
        with patch(
            "goldenimage.packaging.registry.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["vagrant"], 30),
        ):
            with pytest.raises(PackagingError) as exc_info:
                registry.add("ws", Path("/tmp/ws.box"))
        assert exc_info.value.code == "registry_timeout"
