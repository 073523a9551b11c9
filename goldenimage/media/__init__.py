"""Installation media synthesis.

This module handles:
- Scoped mounting of disk images
- Boot catalog detection and compositor arguments
- Scratch workspaces
- Full synthesis and incremental descriptor patching
"""

from goldenimage.media.mount import ImageMounter, LoopMounter, mounted_image
from goldenimage.media.synthesizer import (
    SynthesizedImage,
    full_synthesize,
    incremental_patch,
)

__all__ = [
    "ImageMounter",
    "LoopMounter",
    "SynthesizedImage",
    "full_synthesize",
    "incremental_patch",
    "mounted_image",
]
