"""Build service layer.

Entry points shared by the CLI: run a build for one OS version with all
collaborators wired from settings, and query build history.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from goldenimage.builds.context import BuildContext
from goldenimage.builds.models import BuildRecord
from goldenimage.builds.orchestrator import BuildOrchestrator, BuildOutcome
from goldenimage.catalog.io import load_config_document
from goldenimage.catalog.resolver import resolve_paths
from goldenimage.config import get_settings
from goldenimage.errors import GoldenImageError
from goldenimage.media.mount import ImageMounter, LoopMounter
from goldenimage.media.workspace import purge_stale_workspaces
from goldenimage.packaging.box import BoxRegistry
from goldenimage.packaging.registry import VagrantRegistry
from goldenimage.types import BuildState

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from goldenimage.config import Settings

logger = logging.getLogger(__name__)


class BuildNotFoundError(GoldenImageError):
    """Build history record not found."""

    def __init__(self, build_id: int) -> None:
        super().__init__(f"Build not found: {build_id}", code="build_not_found")
        self.build_id = build_id


def build_golden_image(
    version: str,
    settings: Settings | None = None,
    force: bool = False,
    session_factory: sessionmaker[Session] | None = None,
    mounter: ImageMounter | None = None,
    registry: BoxRegistry | None = None,
    config_path: Path | None = None,
) -> BuildOutcome:
    """Build (or confirm freshness of) the golden box for one OS version.

    Args:
        version: OS version tag from the configuration document.
        settings: Application settings.
        force: Rebuild even if the existing box is fresh.
        session_factory: Optional session factory for build history.
        mounter: Image mounter (default: LoopMounter under the scratch root).
        registry: Artifact registry (default: VagrantRegistry).
        config_path: Configuration document (default: settings.config_path).

    Returns:
        BuildOutcome of the attempt.

    Raises:
        ValidationError: If the configuration document or the version's
            inputs are invalid. Nothing has been written at that point.
    """
    if settings is None:
        settings = get_settings()
    if config_path is None:
        config_path = settings.config_path

    document = load_config_document(config_path)
    paths = resolve_paths(document, version, base_dir=config_path.parent)

    context = BuildContext(
        settings=settings,
        paths=paths,
        global_config=document.global_,
        mounter=mounter
        or LoopMounter(
            settings.scratch_root,
            mount_command=settings.mount_command,
            umount_command=settings.umount_command,
            timeout=settings.mount_timeout,
        ),
        registry=registry
        or VagrantRegistry(settings.registry_command, timeout=settings.registry_timeout),
        force=force,
        session_factory=session_factory,
    )
    logger.info("Starting build of %s (%s)", paths.artifact_name, version)
    return BuildOrchestrator(context).run()


def clean_scratch(settings: Settings | None = None) -> tuple[list[Path], list[Path]]:
    """Remove scratch directories left by interrupted runs.

    Returns:
        Tuple of (removed paths, paths that could not be removed).
    """
    if settings is None:
        settings = get_settings()
    return purge_stale_workspaces(
        settings.scratch_root, settings.stale_workspace_grace_hours
    )


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    version: str | None = None,
    state: BuildState | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records, newest first.

    Args:
        session: Database session.
        version: Filter by OS version.
        state: Filter by final state.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if version is not None:
        stmt = stmt.where(BuildRecord.version == version)
    if state is not None:
        stmt = stmt.where(BuildRecord.state == state.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "build_golden_image",
    "clean_scratch",
    "get_build",
    "list_builds",
]
