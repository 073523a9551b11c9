"""Box packaging and registration.

This module handles:
- Staging a verified disk with its Vagrantfile, metadata and manifest
- Archiving the staged box
- Registering boxes with the vagrant CLI
"""

from goldenimage.packaging.box import PackagedBox, package_box
from goldenimage.packaging.registry import RegisteredBox, VagrantRegistry

__all__ = [
    "PackagedBox",
    "RegisteredBox",
    "VagrantRegistry",
    "package_box",
]
