"""Configuration document handling.

This module handles:
- Schema validation of the configuration document (YAML/JSON)
- Resolving per-version path templates into an immutable PathSet
"""

from goldenimage.catalog.io import load_config_document
from goldenimage.catalog.resolver import PathSet, resolve_paths
from goldenimage.catalog.schema import (
    ConfigDocument,
    GlobalSchema,
    RoleSchema,
    VersionSchema,
)

__all__ = [
    "ConfigDocument",
    "GlobalSchema",
    "PathSet",
    "RoleSchema",
    "VersionSchema",
    "load_config_document",
    "resolve_paths",
]
