"""Per-invocation build context.

Everything a build attempt needs is gathered once into a BuildContext and
passed to every stage; stages read nothing from module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from goldenimage.catalog.resolver import PathSet
from goldenimage.catalog.schema import GlobalSchema
from goldenimage.config import Settings
from goldenimage.media.mount import ImageMounter
from goldenimage.packaging.box import BoxRegistry

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker


@dataclass(frozen=True)
class BuildContext:
    """Immutable inputs of one build attempt.

    Attributes:
        settings: Application settings.
        paths: Resolved PathSet for the target version.
        global_config: Global section of the configuration document.
        mounter: Image mounter used for media synthesis.
        registry: Artifact registry for packaged boxes.
        force: Rebuild even when the existing box is fresh.
        session_factory: Optional session factory for build history.
    """

    settings: Settings
    paths: PathSet
    global_config: GlobalSchema
    mounter: ImageMounter
    registry: BoxRegistry
    force: bool = False
    session_factory: sessionmaker[Session] | None = None

    @property
    def version(self) -> str:
        """Target OS version tag."""
        return self.paths.version


__all__ = ["BuildContext"]
