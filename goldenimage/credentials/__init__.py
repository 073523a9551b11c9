"""Per-build credential handling.

This module handles:
- Generating secrets from an external passphrase generator (stdout only)
- Embedding secrets into the unattended descriptor
- Persisting the credential record after a verified build
- Zeroing secret handles on cleanup
"""

from goldenimage.credentials.lifecycle import CredentialLifecycle
from goldenimage.credentials.secrets import SecretHandle

__all__ = ["CredentialLifecycle", "SecretHandle"]
