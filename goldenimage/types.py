"""Shared type definitions for goldenimage.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildState(str, Enum):
    """State of a build attempt in the orchestrator state machine."""

    IDLE = "idle"
    DECIDING_REBUILD = "deciding_rebuild"
    PREPARING_MEDIA = "preparing_media"
    BUILDING = "building"
    VERIFYING_ARTIFACT = "verifying_artifact"
    PACKAGING = "packaging"
    PERSISTING_CREDENTIALS = "persisting_credentials"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in (BuildState.SUCCEEDED, BuildState.FAILED)


class MediaStrategy(str, Enum):
    """How installation media is prepared for a build."""

    INCREMENTAL = "incremental"
    FULL = "full"


class BootMode(str, Enum):
    """Boot capability of composed installation media."""

    HYBRID = "hybrid"
    BIOS = "bios"
    EFI = "efi"


@dataclass
class ArtifactInfo:
    """Information about a build artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BootMode",
    "BuildState",
    "MediaStrategy",
]
