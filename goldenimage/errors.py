"""Error taxonomy for goldenimage.

Every fatal error carries a stable ``code`` for structured reporting, the
same way all service-level errors in this package do.
"""

from __future__ import annotations


class GoldenImageError(Exception):
    """Base error for golden image operations."""

    def __init__(self, message: str, code: str = "golden_image_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(GoldenImageError):
    """Bad or missing input paths, malformed configuration or template."""

    def __init__(self, message: str, code: str = "validation_error") -> None:
        super().__init__(message, code=code)


class MediaError(GoldenImageError):
    """Mount, copy or composite failure, or missing boot structure."""

    def __init__(self, message: str, code: str = "media_error") -> None:
        super().__init__(message, code=code)


class GenerationError(GoldenImageError):
    """The secret generator is unavailable or produced no output."""

    def __init__(self, message: str, code: str = "generation_error") -> None:
        super().__init__(message, code=code)


class BuildEngineError(GoldenImageError):
    """The external build engine failed.

    Attributes:
        exit_code: Process exit code (None if the process never ran).
        log_tail: Last lines of the engine log, for diagnostics.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_tail: list[str] | None = None,
        code: str = "build_engine_error",
    ) -> None:
        if log_tail:
            message = message + "\nLast engine log lines:\n" + "\n".join(log_tail)
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.log_tail = log_tail or []


class ArtifactError(BuildEngineError):
    """The engine reported success but left no usable disk artifact."""

    def __init__(self, message: str, code: str = "artifact_missing") -> None:
        super().__init__(message, code=code)


class PackagingError(GoldenImageError):
    """Archive creation or registry registration failed."""

    def __init__(self, message: str, code: str = "packaging_error") -> None:
        super().__init__(message, code=code)


class LeaseError(GoldenImageError):
    """Another invocation holds the build lease for this version."""

    def __init__(
        self, message: str, owner: dict[str, object] | None = None
    ) -> None:
        super().__init__(message, code="lease_held")
        self.owner = owner or {}


class CleanupWarning(UserWarning):
    """Non-fatal cleanup problem; logged, never aborts a run."""


__all__ = [
    "ArtifactError",
    "BuildEngineError",
    "CleanupWarning",
    "GenerationError",
    "GoldenImageError",
    "LeaseError",
    "MediaError",
    "PackagingError",
    "ValidationError",
]
