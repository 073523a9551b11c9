"""Shared fixtures and fakes for goldenimage tests.

Disk images are simulated: an "image" file contains the path of a directory
holding its tree. FakeMounter "mounts" an image by returning that directory,
and FakeToolchain stands in for every external command run through
subprocess.run (passphrase generator, compositor, build engine).
"""

import itertools
import shutil
import subprocess
import uuid
from pathlib import Path

import pytest

from goldenimage.catalog.io import load_config_document
from goldenimage.catalog.resolver import resolve_paths
from goldenimage.config import Settings

TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<unattend xmlns="urn:schemas-microsoft-com:unattend">
  <AdministratorPassword><Value>{{ADMIN_PASSWORD}}</Value></AdministratorPassword>
  <LocalAccount>
    <Name>vagrant</Name>
    <Password><Value>{{VAGRANT_PASSWORD}}</Value></Password>
  </LocalAccount>
</unattend>
"""

CONFIG = """\
global:
  storage_root: storage
  rebuild_interval_days: 30
  network: Test Switch
versions:
  2022:
    source_image: media/source-2022.iso
"""


class FakeMounter:
    """ImageMounter whose images are files naming a directory."""

    def __init__(self) -> None:
        self.mounted: dict[Path, Path] = {}
        self.mount_calls: list[Path] = []
        self.unmount_calls: list[Path] = []

    def mount(self, image: Path) -> Path:
        self.mount_calls.append(image)
        root = Path(image.read_text(encoding="utf-8").strip())
        self.mounted[image] = root
        return root

    def unmount(self, image: Path) -> None:
        self.unmount_calls.append(image)
        self.mounted.pop(image, None)


class FakeRegistry:
    """BoxRegistry recording registrations."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.added: list[tuple[str, Path]] = []
        self.archives: list[bytes] = []

    def add(self, name: str, box_path: Path) -> None:
        from goldenimage.errors import PackagingError

        if self.fail:
            raise PackagingError("registry rejected box", code="registry_failed")
        self.added.append((name, box_path))
        self.archives.append(box_path.read_bytes())


def make_image(image: Path, tree: Path) -> Path:
    """Create a simulated image file pointing at tree."""
    image.parent.mkdir(parents=True, exist_ok=True)
    image.write_text(str(tree), encoding="utf-8")
    return image


def make_media_tree(root: Path, bios: bool = True, efi: bool = True) -> Path:
    """Create a Windows-style installation media tree."""
    (root / "sources").mkdir(parents=True, exist_ok=True)
    (root / "sources" / "install.wim").write_bytes(b"WIM")
    if bios:
        (root / "boot").mkdir(parents=True, exist_ok=True)
        (root / "boot" / "etfsboot.com").write_bytes(b"BIOS")
    if efi:
        efi_dir = root / "efi" / "microsoft" / "boot"
        efi_dir.mkdir(parents=True, exist_ok=True)
        (efi_dir / "efisys.bin").write_bytes(b"EFI-PROMPT")
        (efi_dir / "efisys_noprompt.bin").write_bytes(b"EFI-NOPROMPT")
        (efi_dir / "cdboot.efi").write_bytes(b"CDBOOT-PROMPT")
        (efi_dir / "cdboot_noprompt.efi").write_bytes(b"CDBOOT-NOPROMPT")
    return root


def _var(cmd: list[str], name: str) -> str:
    prefix = f"{name}="
    return next(a[len(prefix) :] for a in cmd if a.startswith(prefix))


class FakeToolchain:
    """subprocess.run replacement dispatching on the executable name."""

    def __init__(
        self,
        backing_root: Path,
        engine_exit: int = 0,
        produce_disk: bool = True,
        compositor_exit: int = 0,
    ) -> None:
        self.backing_root = backing_root
        self.engine_exit = engine_exit
        self.produce_disk = produce_disk
        self.compositor_exit = compositor_exit
        self.calls: list[list[str]] = []
        self.engine_env: dict[str, str] | None = None
        self._counter = itertools.count(1)

    def count(self, tool: str) -> int:
        return sum(1 for c in self.calls if c[0] == tool)

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        tool = cmd[0]
        if tool == "pwgen":
            value = f"Pw{next(self._counter):04d}-{uuid.uuid4().hex[:12]}\n"
            return subprocess.CompletedProcess(cmd, 0, value.encode(), b"")
        if tool == "xorriso":
            return self._compose(cmd)
        if tool == "packer":
            return self._build(cmd, kwargs)
        raise AssertionError(f"Unexpected command: {cmd}")

    def _compose(self, cmd: list[str]) -> subprocess.CompletedProcess:
        if self.compositor_exit != 0:
            return subprocess.CompletedProcess(
                cmd, self.compositor_exit, "", "xorriso : FAILURE"
            )
        output = Path(cmd[cmd.index("-o") + 1])
        tree = Path(cmd[-1])
        backing = self.backing_root / uuid.uuid4().hex
        shutil.copytree(tree, backing)
        make_image(output, backing)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _build(self, cmd: list[str], kwargs: dict) -> subprocess.CompletedProcess:
        self.engine_env = kwargs.get("env")
        log = kwargs.get("stdout")
        if log is not None:
            for i in range(30):
                log.write(f"==> hyperv-iso: step {i}\n")
        if self.engine_exit != 0:
            if log is not None:
                log.write("Build 'hyperv-iso' errored: WinRM timeout\n")
            return subprocess.CompletedProcess(cmd, self.engine_exit)
        if self.produce_disk:
            disk_dir = Path(_var(cmd, "output_directory")) / "Virtual Hard Disks"
            disk_dir.mkdir(parents=True, exist_ok=True)
            (disk_dir / "packer-vm.vhdx").write_bytes(b"VHDX" * 256)
        return subprocess.CompletedProcess(cmd, 0)


@pytest.fixture
def fake_mounter() -> FakeMounter:
    """Create a FakeMounter."""
    return FakeMounter()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Create a FakeRegistry."""
    return FakeRegistry()


@pytest.fixture
def toolchain(tmp_path) -> FakeToolchain:
    """Create a FakeToolchain with its own backing directory."""
    backing = tmp_path / "backing"
    backing.mkdir()
    return FakeToolchain(backing)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Create settings rooted in tmp_path."""
    return Settings(
        config_path=tmp_path / "project" / "golden-images.yaml",
        scratch_root=tmp_path / "scratch",
        db_url="sqlite:///:memory:",
    )


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """Create a hybrid-boot installation media tree."""
    return make_media_tree(tmp_path / "source-tree")


@pytest.fixture
def project(tmp_path, source_tree) -> Path:
    """Create a project directory with config, template and engine config."""
    root = tmp_path / "project"
    (root / "templates").mkdir(parents=True)
    (root / "templates" / "autounattend-2022.xml").write_text(TEMPLATE)
    (root / "packer").mkdir()
    (root / "packer" / "windows-server-2022.pkr.hcl").write_text("source {}\n")
    make_image(root / "media" / "source-2022.iso", source_tree)
    (root / "golden-images.yaml").write_text(CONFIG)
    return root


@pytest.fixture
def document(project):
    """Load the sample configuration document."""
    return load_config_document(project / "golden-images.yaml")


@pytest.fixture
def paths(document, project):
    """Resolve the PathSet for version 2022."""
    return resolve_paths(document, "2022", base_dir=project)
