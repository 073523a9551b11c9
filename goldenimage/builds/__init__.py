"""Build orchestration module.

This module handles:
- Rebuild decisions and the build state machine
- Running the external build engine
- Artifact verification and manifests
- Advisory build leases
- Build history records
"""

from goldenimage.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Submodules import the media, credential and packaging layers; access them
# as goldenimage.builds.orchestrator etc. to avoid circular imports.
