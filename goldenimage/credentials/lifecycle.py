"""Credential lifecycle for one build attempt.

A CredentialLifecycle generates every role's secret in a single generation
event, embeds them in the unattended descriptor, persists the record once the
build artifact is verified, and zeroes all handles on dispose.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from goldenimage.catalog.schema import RoleSchema
from goldenimage.credentials.descriptor import load_template, render_descriptor_file
from goldenimage.credentials.record import persist_record, record_path_for
from goldenimage.credentials.secrets import SecretHandle, generate_secret
from goldenimage.errors import GenerationError, ValidationError

if TYPE_CHECKING:
    from goldenimage.builds.artifacts import VerifiedArtifact

logger = logging.getLogger(__name__)


class CredentialLifecycle:
    """Owns the secrets of one build attempt.

    Usable as a context manager; leaving the block disposes every handle.
    """

    def __init__(
        self,
        roles: Mapping[str, RoleSchema],
        command: list[str],
        timeout: int | None = None,
    ) -> None:
        self.roles = dict(roles)
        self.command = list(command)
        self.timeout = timeout
        self.generation_id: str | None = None
        self._handles: dict[str, SecretHandle] = {}
        self._record_path: Path | None = None

    @property
    def placeholders(self) -> dict[str, str]:
        """Placeholder token per role."""
        return {name: role.placeholder for name, role in self.roles.items()}

    @property
    def secrets(self) -> dict[str, SecretHandle]:
        """Outstanding secret handles keyed by role."""
        return dict(self._handles)

    @property
    def record_path(self) -> Path | None:
        """Path of the persisted record, if any."""
        return self._record_path

    def generate(self) -> dict[str, SecretHandle]:
        """Generate fresh secrets for every role in one generation event.

        A role whose secret collides with an earlier role's is regenerated
        once before giving up.

        Returns:
            Secret handles keyed by role.

        Raises:
            GenerationError: If the generator fails or keeps repeating itself,
                or secrets were already generated by this lifecycle.
        """
        if self.generation_id is not None:
            raise GenerationError(
                "Secrets were already generated for this build",
                code="already_generated",
            )
        self.generation_id = uuid.uuid4().hex
        logger.info(
            "Generating credentials for roles %s (generation %s)",
            ", ".join(self.roles),
            self.generation_id[:8],
        )

        try:
            for role in self.roles:
                handle = self._generate_distinct(role)
                self._handles[role] = handle
        except GenerationError:
            self.dispose()
            raise
        return self.secrets

    def _generate_distinct(self, role: str) -> SecretHandle:
        assert self.generation_id is not None
        for _ in range(2):
            handle = generate_secret(
                role, self.command, self.generation_id, timeout=self.timeout
            )
            if not any(handle.matches(other) for other in self._handles.values()):
                return handle
            handle.zero()
            logger.warning("Generator repeated a secret for role %s, retrying", role)
        raise GenerationError(
            f"Passphrase generator repeated secrets for role '{role}'",
            code="generator_repeated",
        )

    def secret_for(self, role: str) -> SecretHandle:
        """Return the handle for one role.

        Raises:
            GenerationError: If no secret exists for the role.
        """
        try:
            return self._handles[role]
        except KeyError:
            raise GenerationError(
                f"No secret generated for role '{role}'", code="secret_missing"
            ) from None

    def check_template(self, template_path: Path) -> None:
        """Validate the descriptor template against this lifecycle's roles."""
        load_template(template_path, self.placeholders)

    def render_descriptor(self, template_path: Path, destination: Path) -> Path:
        """Embed the current secrets into the descriptor template."""
        return render_descriptor_file(
            template_path, destination, self._handles, self.placeholders
        )

    def persist(
        self,
        credentials_dir: Path,
        os_version: str,
        artifact_name: str,
        artifact: VerifiedArtifact | None,
        created_at: datetime | None = None,
    ) -> Path:
        """Write the credential record for a verified build.

        Args:
            credentials_dir: Directory for credential records.
            os_version: Target OS version tag.
            artifact_name: Registered box name.
            artifact: Verified build artifact; the record is refused without one.
            created_at: Optional record timestamp.

        Returns:
            Path to the written record.

        Raises:
            ValidationError: If the artifact is not verified or a record was
                already written by this lifecycle.
        """
        if artifact is None or not artifact.disks:
            raise ValidationError(
                "Credential record requires a verified build artifact",
                code="artifact_unverified",
            )
        if self._record_path is not None:
            raise ValidationError(
                f"Credential record already written: {self._record_path}",
                code="record_exists",
            )

        record = persist_record(
            self._handles,
            record_path_for(credentials_dir, artifact_name, artifact.verified_at),
            roles=self.roles,
            os_version=os_version,
            artifact_name=artifact_name,
            created_at=created_at,
        )
        self._record_path = record
        return record

    def dispose(self) -> None:
        """Zero and release every outstanding handle. Idempotent."""
        if self._handles:
            logger.debug("Disposing %d credential handle(s)", len(self._handles))
        for handle in self._handles.values():
            handle.zero()
        self._handles.clear()

    def __enter__(self) -> CredentialLifecycle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()


__all__ = ["CredentialLifecycle"]
