"""Per-version path resolution.

Turns the configuration document's path templates into an immutable PathSet
for one OS version. Inputs (templates, engine config, source media, scripts)
resolve against the document's directory; products (synthesized media, engine
output, boxes, credential records) resolve against the storage root.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from goldenimage.catalog.schema import ConfigDocument
from goldenimage.errors import ValidationError

logger = logging.getLogger(__name__)


class PathSet(BaseModel):
    """Resolved file names and paths for one OS version.

    Attributes:
        version: Version tag (e.g. '2022').
        os_name: Family-qualified OS name (e.g. 'windows-server-2022').
        source_image: Pristine installation media.
        descriptor_template: Unattended descriptor template.
        engine_config: Build engine configuration file.
        synthesized_image: Where synthesized media is written.
        output_directory: Build engine output directory.
        artifact_name: Registry name of the packaged box.
        box_path: Persistent location of the packaged box.
        credentials_dir: Directory receiving credential records.
        storage_root: Persistent storage root (leases, engine logs).
        scripts_dir: Optional post-install scripts overlaid onto the media.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    os_name: str
    source_image: Path
    descriptor_template: Path
    engine_config: Path
    synthesized_image: Path
    output_directory: Path
    artifact_name: str
    box_path: Path
    credentials_dir: Path
    storage_root: Path
    scripts_dir: Path | None = None


def _render(template: str, version: str, os_name: str) -> str:
    try:
        return template.format(version=version, os_name=os_name)
    except (KeyError, IndexError, ValueError) as e:
        raise ValidationError(
            f"Invalid path template '{template}': {e}", code="invalid_template"
        ) from e


def _anchor(path_str: str, base: Path) -> Path:
    path = Path(path_str).expanduser()
    return path if path.is_absolute() else base / path


def resolve_paths(
    document: ConfigDocument,
    version: str,
    base_dir: Path,
    check_inputs: bool = True,
) -> PathSet:
    """Resolve the PathSet for one OS version.

    Args:
        document: Validated configuration document.
        version: Version tag to resolve.
        base_dir: Directory relative input paths are anchored to
            (normally the configuration document's directory).
        check_inputs: Require the descriptor template and engine config
            to exist.

    Returns:
        Immutable PathSet.

    Raises:
        ValidationError: If the version is unknown, a template is malformed,
            or a required input file is missing.
    """
    entry = document.versions.get(version)
    if entry is None:
        available = ", ".join(sorted(document.versions)) or "(none)"
        raise ValidationError(
            f"Unknown OS version '{version}'. Available: {available}",
            code="unknown_version",
        )

    glob = document.global_
    os_name = f"{glob.os_family}-{version}"
    storage_root = _anchor(glob.storage_root, base_dir)

    def render(template: str) -> str:
        return _render(template, version, os_name)

    artifact_name = render(entry.artifact_name)
    if not artifact_name or "/" in artifact_name:
        raise ValidationError(
            f"Invalid artifact name '{artifact_name}'", code="invalid_artifact_name"
        )

    paths = PathSet(
        version=version,
        os_name=os_name,
        source_image=_anchor(render(entry.source_image), base_dir),
        descriptor_template=_anchor(render(entry.descriptor_template), base_dir),
        engine_config=_anchor(render(entry.engine_config), base_dir),
        synthesized_image=_anchor(
            render(entry.synthesized_image), storage_root / glob.media_dir
        ),
        output_directory=_anchor(
            render(entry.output_directory), storage_root / glob.output_root
        ),
        artifact_name=artifact_name,
        box_path=storage_root / glob.box_dir / f"{artifact_name}.box",
        credentials_dir=storage_root / glob.credentials_dir,
        storage_root=storage_root,
        scripts_dir=(
            _anchor(render(entry.scripts_dir), base_dir) if entry.scripts_dir else None
        ),
    )

    if check_inputs:
        for label, path in (
            ("Descriptor template", paths.descriptor_template),
            ("Build engine config", paths.engine_config),
        ):
            if not path.is_file():
                raise ValidationError(f"{label} not found: {path}", code="input_missing")
        if paths.scripts_dir is not None and not paths.scripts_dir.is_dir():
            raise ValidationError(
                f"Scripts directory not found: {paths.scripts_dir}",
                code="input_missing",
            )

    logger.debug("Resolved paths for %s: %s", version, paths)
    return paths


__all__ = ["PathSet", "resolve_paths"]
