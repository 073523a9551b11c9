"""Build artifact discovery, verification and manifest generation.

This module handles:
- Discovering disk files written by the build engine
- Classifying and hashing them
- Deciding whether an engine output directory is a valid artifact
- Generating the manifest shipped inside the box
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from goldenimage.errors import ArtifactError
from goldenimage.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Disk formats the build engine may produce, by extension
DISK_EXTENSIONS = {"vhdx", "vhd", "vmdk", "qcow2", "vdi", "raw", "img"}

# Default chunk size for hashing
HASH_CHUNK_SIZE = 1024 * 1024  # 1MiB

MANIFEST_VERSION = "1.0"


@dataclass
class VerifiedArtifact:
    """Engine output that passed verification.

    Attributes:
        output_directory: Engine output directory.
        disks: Disk files of the expected format, largest first.
        verified_at: Verification time.
    """

    output_directory: Path
    disks: list[Path] = field(default_factory=list)
    verified_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def primary_disk(self) -> Path:
        """The disk that gets packaged (the largest one)."""
        return self.disks[0]


def classify_artifact(filename: str) -> str:
    """Classify an engine output file by extension.

    Returns:
        'disk', 'config' (VM definition files) or 'other'.
    """
    suffix = Path(filename).suffix.lower().lstrip(".")
    if suffix in DISK_EXTENSIONS:
        return "disk"
    if suffix in {"vmcx", "vmrs", "vmgs", "xml", "ovf", "vmx"}:
        return "config"
    return "other"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def find_disks(output_directory: Path, disk_format: str) -> list[Path]:
    """Find disk files of the given format, largest first."""
    suffix = "." + disk_format.lower().lstrip(".")
    disks = [
        p
        for p in output_directory.rglob("*")
        if p.is_file() and p.suffix.lower() == suffix
    ]
    return sorted(disks, key=lambda p: (-p.stat().st_size, p.as_posix()))


def verify_artifact(output_directory: Path, disk_format: str) -> VerifiedArtifact:
    """Verify the build engine's output directory.

    Args:
        output_directory: Engine output directory.
        disk_format: Expected disk file extension (e.g. 'vhdx').

    Returns:
        VerifiedArtifact listing the disk files.

    Raises:
        ArtifactError: If the directory is missing or holds no disk file
            of the expected format.
    """
    if not output_directory.is_dir():
        raise ArtifactError(f"Build output directory not found: {output_directory}")

    disks = find_disks(output_directory, disk_format)
    if not disks:
        raise ArtifactError(
            f"No .{disk_format} disk found in build output {output_directory}"
        )

    logger.info(
        "Verified build artifact: %d disk(s) in %s", len(disks), output_directory
    )
    return VerifiedArtifact(output_directory=output_directory, disks=disks)


def describe_artifacts(
    paths: list[Path],
    root: Path,
) -> list[ArtifactInfo]:
    """Hash and classify files for a manifest.

    Args:
        paths: Files to describe.
        root: Directory relative paths are computed against.

    Returns:
        List of ArtifactInfo.
    """
    artifacts: list[ArtifactInfo] = []
    for path in sorted(paths):
        try:
            relative_path = path.relative_to(root).as_posix()
        except ValueError:
            relative_path = path.name

        artifact = ArtifactInfo(
            filename=path.name,
            relative_path=relative_path,
            size_bytes=path.stat().st_size,
            sha256=compute_file_hash(path),
            kind=classify_artifact(path.name),
        )
        if artifact.kind == "disk":
            artifact.labels.append("boot_disk")
        artifacts.append(artifact)
        logger.debug(
            "Described artifact: %s (kind=%s, size=%d)",
            path.name,
            artifact.kind,
            artifact.size_bytes,
        )
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    artifact_name: str | None = None,
    os_version: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a box manifest.

    Args:
        artifacts: Described artifacts.
        artifact_name: Registered box name.
        os_version: OS version tag.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }
    if artifact_name:
        manifest["artifact_name"] = artifact_name
    if os_version:
        manifest["os_version"] = os_version
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "DISK_EXTENSIONS",
    "HASH_CHUNK_SIZE",
    "VerifiedArtifact",
    "classify_artifact",
    "compute_file_hash",
    "describe_artifacts",
    "find_disks",
    "generate_manifest",
    "verify_artifact",
    "write_manifest",
]
