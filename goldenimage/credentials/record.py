"""Credential record persistence.

A credential record is written once per successful build. It is sensitive:
created owner-only and never overwritten. After it is written the operator
owns it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from goldenimage.catalog.schema import RoleSchema
from goldenimage.credentials.descriptor import (
    ensure_single_generation,
    write_private_file,
)
from goldenimage.credentials.secrets import SecretHandle
from goldenimage.errors import GoldenImageError, ValidationError

logger = logging.getLogger(__name__)


class RoleCredential(BaseModel):
    """Credential of one role as stored in the record."""

    username: str
    password: str
    description: str = ""


class CredentialRecord(BaseModel):
    """Human-readable record of a build's credentials."""

    created_at: datetime
    os_version: str
    artifact_name: str
    generation_id: str
    credentials: dict[str, RoleCredential] = Field(default_factory=dict)


def record_path_for(
    credentials_dir: Path, artifact_name: str, created_at: datetime
) -> Path:
    """Return the record path for a build finished at created_at."""
    stamp = created_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S.%fZ")
    return credentials_dir / f"{artifact_name}-credentials-{stamp}.json"


def persist_record(
    secrets_by_role: Mapping[str, SecretHandle],
    destination: Path,
    roles: Mapping[str, RoleSchema],
    os_version: str,
    artifact_name: str,
    created_at: datetime | None = None,
) -> Path:
    """Write the credential record exactly once.

    Args:
        secrets_by_role: Secrets keyed by role name.
        destination: Record file path; must not exist.
        roles: Role definitions (username, description).
        os_version: Target OS version tag.
        artifact_name: Name of the registered box.
        created_at: Record timestamp (default: now, UTC).

    Returns:
        Path to the written record.

    Raises:
        ValidationError: If a role is undefined or the record already exists.
        GoldenImageError: If the record cannot be written.
    """
    generation_id = ensure_single_generation(secrets_by_role)
    unknown = set(secrets_by_role) - set(roles)
    if unknown:
        raise ValidationError(
            f"No role definition for {sorted(unknown)}", code="role_mismatch"
        )

    record = CredentialRecord(
        created_at=created_at or datetime.now(timezone.utc),
        os_version=os_version,
        artifact_name=artifact_name,
        generation_id=generation_id,
        credentials={
            role: RoleCredential(
                username=roles[role].username,
                password=secret.reveal(),
                description=roles[role].description,
            )
            for role, secret in secrets_by_role.items()
        },
    )
    content = json.dumps(record.model_dump(mode="json"), indent=2) + "\n"

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise GoldenImageError(
            f"Cannot create credential directory {destination.parent}: {e}",
            code="record_write_failed",
        ) from e

    try:
        write_private_file(destination, content)
    except FileExistsError as e:
        raise ValidationError(
            f"Credential record already exists: {destination}", code="record_exists"
        ) from e
    except OSError as e:
        raise GoldenImageError(
            f"Failed to write credential record {destination}: {e}",
            code="record_write_failed",
        ) from e

    logger.info("Wrote credential record to %s", destination)
    return destination


def load_record(path: Path) -> CredentialRecord:
    """Load a credential record from disk."""
    return CredentialRecord.model_validate_json(path.read_text(encoding="utf-8"))


__all__ = [
    "CredentialRecord",
    "RoleCredential",
    "load_record",
    "persist_record",
    "record_path_for",
]
