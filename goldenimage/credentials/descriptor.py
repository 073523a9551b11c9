"""Unattended descriptor rendering.

Credentials are embedded by literal placeholder substitution. Each role's
placeholder must occur exactly once in the template. Placeholder-looking
tokens that belong to no role are left verbatim and reported as a warning;
they are not silently corrected.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

from goldenimage.credentials.secrets import SecretHandle
from goldenimage.errors import ValidationError

logger = logging.getLogger(__name__)

PLACEHOLDER_TOKEN = re.compile(r"\{\{[A-Za-z0-9_]+\}\}")

# Fixed name the installer looks for at the media root
DESCRIPTOR_NAME = "Autounattend.xml"


def validate_template(template: str, placeholders: Mapping[str, str]) -> None:
    """Check that every role placeholder occurs exactly once.

    Args:
        template: Descriptor template text.
        placeholders: Mapping of role name to placeholder token.

    Raises:
        ValidationError: If a placeholder is missing or repeated.
    """
    for role, token in placeholders.items():
        count = template.count(token)
        if count != 1:
            raise ValidationError(
                f"Descriptor template must contain placeholder {token} "
                f"for role '{role}' exactly once (found {count})",
                code="malformed_template",
            )


def find_unmatched_placeholders(
    template: str, placeholders: Mapping[str, str]
) -> list[str]:
    """Return placeholder-looking tokens that belong to no role."""
    known = set(placeholders.values())
    return sorted({t for t in PLACEHOLDER_TOKEN.findall(template) if t not in known})


def ensure_single_generation(secrets_by_role: Mapping[str, SecretHandle]) -> str:
    """Return the shared generation id of a set of secrets.

    Raises:
        ValidationError: If the secrets come from different generation events.
    """
    ids = {s.generation_id for s in secrets_by_role.values()}
    if len(ids) != 1:
        raise ValidationError(
            "Credentials from different generation events cannot be combined",
            code="mixed_generation",
        )
    return ids.pop()


def embed_in_descriptor(
    template: str,
    secrets_by_role: Mapping[str, SecretHandle],
    placeholders: Mapping[str, str],
) -> str:
    """Substitute role secrets into a descriptor template.

    Args:
        template: Descriptor template text.
        secrets_by_role: Secrets keyed by role name.
        placeholders: Placeholder token keyed by role name.

    Returns:
        Rendered descriptor text.

    Raises:
        ValidationError: If roles and secrets do not line up, the template is
            malformed, or secrets come from different generation events.
    """
    if set(secrets_by_role) != set(placeholders):
        raise ValidationError(
            f"Secrets for roles {sorted(secrets_by_role)} do not match "
            f"configured roles {sorted(placeholders)}",
            code="role_mismatch",
        )
    ensure_single_generation(secrets_by_role)
    validate_template(template, placeholders)

    unmatched = find_unmatched_placeholders(template, placeholders)
    if unmatched:
        logger.warning(
            "Descriptor template has unmatched placeholders left verbatim: %s",
            ", ".join(unmatched),
        )

    rendered = template
    for role, token in placeholders.items():
        rendered = rendered.replace(token, secrets_by_role[role].reveal())
    return rendered


def write_private_file(destination: Path, content: str) -> Path:
    """Write text readable only by the owner; never overwrites.

    Raises:
        FileExistsError: If destination already exists.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(destination), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    return destination


def load_template(template_path: Path, placeholders: Mapping[str, str]) -> str:
    """Read and validate a descriptor template.

    Raises:
        ValidationError: If the template cannot be read or is malformed.
    """
    try:
        template = template_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ValidationError(
            f"Cannot read descriptor template {template_path}: {e}",
            code="input_missing",
        ) from e
    validate_template(template, placeholders)
    return template


def render_descriptor_file(
    template_path: Path,
    destination: Path,
    secrets_by_role: Mapping[str, SecretHandle],
    placeholders: Mapping[str, str],
) -> Path:
    """Render the descriptor template to a private file.

    Raises:
        ValidationError: If the template cannot be read or is malformed.
    """
    template = load_template(template_path, placeholders)
    rendered = embed_in_descriptor(template, secrets_by_role, placeholders)
    write_private_file(destination, rendered)
    logger.info("Rendered unattended descriptor to %s", destination)
    return destination


__all__ = [
    "DESCRIPTOR_NAME",
    "PLACEHOLDER_TOKEN",
    "embed_in_descriptor",
    "ensure_single_generation",
    "find_unmatched_placeholders",
    "load_template",
    "render_descriptor_file",
    "validate_template",
    "write_private_file",
]
