"""Golden Image Builder - reproducible VM golden images with per-build secrets.

This package synthesizes unattended installation media, drives an external
VM-build engine against it, and packages the resulting disk as a versioned
Vagrant box.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
