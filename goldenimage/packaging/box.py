"""Box packaging.

Turns a verified build artifact into a distributable Vagrant box:

    Virtual Hard Disks/<name>.vhdx
    Vagrantfile        (embeds the automation credential)
    metadata.json      ({"provider": "hyperv"})
    manifest.json      (artifact hashes)

The archive is written next to its destination under a pending name,
registered with the artifact registry from there, and only then moved onto
the destination.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tarfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from goldenimage.builds.artifacts import (
    VerifiedArtifact,
    describe_artifacts,
    generate_manifest,
    write_manifest,
)
from goldenimage.catalog.resolver import PathSet
from goldenimage.config import Settings
from goldenimage.credentials.descriptor import write_private_file
from goldenimage.credentials.secrets import SecretHandle
from goldenimage.errors import PackagingError
from goldenimage.media.workspace import BOX_PREFIX, scratch_workspace

logger = logging.getLogger(__name__)

PROVIDER = "hyperv"
DISK_DIR = "Virtual Hard Disks"

# Vagrantfile defaults for the consuming environment
VAGRANTFILE_DEFAULTS: dict[str, Any] = {
    "boot_timeout": 600,
    "graceful_halt_timeout": 600,
    "winrm_timeout": 300,
    "winrm_retry_limit": 20,
    "winrm_retry_delay": 10,
    "cpus": 2,
    "memory": 2048,
}


class BoxRegistry(Protocol):
    """Registers packaged boxes by name."""

    def add(self, name: str, box_path: Path) -> None:
        """Register box_path under name, replacing prior registrations."""
        ...


@dataclass(frozen=True)
class PackagedBox:
    """A packaged and registered box.

    Attributes:
        name: Registered name.
        path: Archive location.
        disk_name: Disk file name inside the archive.
    """

    name: str
    path: Path
    disk_name: str


def sanitize_name(name: str) -> str:
    """Make a name safe for use as a file name inside the box."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-.")
    return cleaned or "disk"


def ruby_string(value: str) -> str:
    """Render a value as a single-quoted Ruby string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _template_env() -> Environment:
    env = Environment(
        loader=PackageLoader("goldenimage.packaging", "templates"),
        autoescape=False,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters["ruby_string"] = ruby_string
    return env


def render_vagrantfile(
    artifact_name: str,
    os_version: str,
    username: str,
    password: str,
    **overrides: Any,
) -> str:
    """Render the embedded Vagrantfile.

    Raises:
        PackagingError: If the template cannot be rendered.
    """
    context = {
        **VAGRANTFILE_DEFAULTS,
        **overrides,
        "artifact_name": artifact_name,
        "os_version": os_version,
        "username": username,
        "password": password,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        return _template_env().get_template("Vagrantfile.j2").render(**context)
    except TemplateError as e:
        raise PackagingError(
            f"Failed to render Vagrantfile: {e}", code="template_error"
        ) from e


def write_archive(source_dir: Path, destination: Path) -> Path:
    """Tar+gzip a directory's contents into destination.

    The archive is created with mode 0600 under a temporary sibling name and
    moved into place only when complete.

    Raises:
        PackagingError: If the archive cannot be written.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(
        f".{destination.name}.{uuid.uuid4().hex[:8]}.partial"
    )
    try:
        fd = os.open(partial, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as raw, tarfile.open(fileobj=raw, mode="w:gz") as tar:
            for item in sorted(source_dir.iterdir()):
                tar.add(item, arcname=item.name)
        os.replace(partial, destination)
    except (OSError, tarfile.TarError) as e:
        raise PackagingError(
            f"Failed to write box archive {destination}: {e}", code="archive_failed"
        ) from e
    finally:
        partial.unlink(missing_ok=True)

    logger.info("Wrote box archive %s", destination)
    return destination


def package_box(
    artifact: VerifiedArtifact,
    paths: PathSet,
    username: str,
    secret: SecretHandle,
    settings: Settings,
    registry: BoxRegistry,
) -> PackagedBox:
    """Package a verified artifact into a box and register it.

    Args:
        artifact: Verified build artifact.
        paths: Resolved PathSet (box_path and artifact_name are used).
        username: Automation account name.
        secret: Automation account credential embedded in the Vagrantfile.
        settings: Application settings.
        registry: Artifact registry.

    Returns:
        PackagedBox.

    Raises:
        PackagingError: If staging, archiving or registration fails. The
            verified artifact is never modified and box_path is left as it
            was, so an unregistered box never looks fresh.
    """
    disk = artifact.primary_disk
    disk_name = f"{sanitize_name(paths.artifact_name)}{disk.suffix.lower()}"
    logger.info("Packaging %s as %s", disk, paths.artifact_name)

    with scratch_workspace(settings.scratch_root, prefix=BOX_PREFIX) as staging:
        try:
            disk_dir = staging / DISK_DIR
            disk_dir.mkdir()
            staged_disk = disk_dir / disk_name
            # Hard link when possible; disks are large
            try:
                os.link(disk, staged_disk)
            except OSError:
                shutil.copy2(disk, staged_disk)

            write_private_file(
                staging / "Vagrantfile",
                render_vagrantfile(
                    paths.artifact_name,
                    paths.version,
                    username,
                    secret.reveal(),
                ),
            )
            (staging / "metadata.json").write_text(
                json.dumps({"provider": PROVIDER}), encoding="utf-8"
            )
            manifest = generate_manifest(
                describe_artifacts([staged_disk], staging),
                artifact_name=paths.artifact_name,
                os_version=paths.version,
                extra_metadata={"provider": PROVIDER},
            )
            write_manifest(manifest, staging / "manifest.json")
        except OSError as e:
            raise PackagingError(
                f"Failed to stage box contents: {e}", code="staging_failed"
            ) from e

        pending = paths.box_path.with_name(
            f".{paths.box_path.stem}.{uuid.uuid4().hex[:8]}.pending.box"
        )
        write_archive(staging, pending)

    # box_path only ever holds a registered box; its mtime drives rebuilds
    try:
        registry.add(paths.artifact_name, pending)
        os.replace(pending, paths.box_path)
    except OSError as e:
        raise PackagingError(
            f"Failed to move registered box into place at {paths.box_path}: {e}",
            code="archive_failed",
        ) from e
    finally:
        pending.unlink(missing_ok=True)

    logger.info("Registered %s from %s", paths.artifact_name, paths.box_path)
    return PackagedBox(name=paths.artifact_name, path=paths.box_path, disk_name=disk_name)


__all__ = [
    "BoxRegistry",
    "PackagedBox",
    "package_box",
    "render_vagrantfile",
    "ruby_string",
    "sanitize_name",
    "write_archive",
]
