"""Pydantic models for the configuration document.

The configuration document holds global settings (storage roots, rebuild
interval, network identifier, credential roles) and per-version path
templates. Templates may reference ``{version}`` and ``{os_name}``.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

VERSION_TAG_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
PLACEHOLDER_PATTERN = re.compile(r"^\{\{[A-Za-z0-9_]+\}\}$")


class RoleSchema(BaseModel):
    """Credential role embedded into the unattended descriptor.

    Attributes:
        username: Account name created by the unattended install.
        placeholder: Literal token replaced in the descriptor template.
        description: Human-readable purpose, copied to the credential record.
        automation: Whether this credential is handed to the box consumer.
    """

    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1)
    placeholder: str
    description: str = ""
    automation: bool = False

    @field_validator("placeholder")
    @classmethod
    def validate_placeholder(cls, v: str) -> str:
        """Validate placeholder looks like {{NAME}}."""
        if not PLACEHOLDER_PATTERN.match(v):
            raise ValueError(f"placeholder must look like '{{{{NAME}}}}', got '{v}'")
        return v


def _default_roles() -> dict[str, RoleSchema]:
    return {
        "administrator": RoleSchema(
            username="Administrator",
            placeholder="{{ADMIN_PASSWORD}}",
            description="Built-in administrator account",
        ),
        "automation": RoleSchema(
            username="vagrant",
            placeholder="{{VAGRANT_PASSWORD}}",
            description="Provisioning account used over WinRM",
            automation=True,
        ),
    }


class GlobalSchema(BaseModel):
    """Global settings shared by every OS version."""

    model_config = ConfigDict(extra="forbid")

    storage_root: str = Field(description="Persistent storage root")
    media_dir: str = Field(default="media", description="Synthesized media dir")
    output_root: str = Field(default="output", description="Engine output root")
    box_dir: str = Field(default="boxes", description="Packaged box storage")
    credentials_dir: str = Field(
        default="credentials", description="Credential record directory"
    )
    rebuild_interval_days: int = Field(default=30, ge=0)
    network: str = Field(default="Default Switch", description="VM network/switch")
    os_family: str = Field(default="windows-server")
    roles: dict[str, RoleSchema] = Field(default_factory=_default_roles)

    @model_validator(mode="after")
    def validate_roles(self) -> "GlobalSchema":
        """Require one automation role and distinct placeholders."""
        if not self.roles:
            raise ValueError("at least one credential role is required")
        automation = [name for name, r in self.roles.items() if r.automation]
        if len(automation) != 1:
            raise ValueError(
                f"exactly one role must be marked automation, got {automation}"
            )
        placeholders = [r.placeholder for r in self.roles.values()]
        if len(set(placeholders)) != len(placeholders):
            raise ValueError("role placeholders must be distinct")
        return self

    @property
    def automation_role(self) -> str:
        """Name of the role whose credential is embedded in the box."""
        return next(name for name, r in self.roles.items() if r.automation)


class VersionSchema(BaseModel):
    """Path templates for one OS version."""

    model_config = ConfigDict(extra="forbid")

    source_image: str = Field(description="Pristine vendor installation media")
    descriptor_template: str = "templates/autounattend-{version}.xml"
    engine_config: str = "packer/{os_name}.pkr.hcl"
    synthesized_image: str = "{os_name}-unattended.iso"
    output_directory: str = "output-{os_name}"
    artifact_name: str = "{os_name}-golden"
    scripts_dir: str | None = None


class ConfigDocument(BaseModel):
    """Complete configuration document."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    global_: GlobalSchema = Field(alias="global")
    versions: dict[str, VersionSchema] = Field(default_factory=dict)

    @field_validator("versions", mode="before")
    @classmethod
    def stringify_version_keys(cls, v: Any) -> Any:
        """YAML reads bare years as ints; version tags are strings."""
        if isinstance(v, dict):
            return {str(k): val for k, val in v.items()}
        return v

    @field_validator("versions")
    @classmethod
    def validate_version_tags(
        cls, v: dict[str, VersionSchema]
    ) -> dict[str, VersionSchema]:
        """Validate version tags are filesystem-safe."""
        for tag in v:
            if not VERSION_TAG_PATTERN.match(tag):
                raise ValueError(f"invalid version tag '{tag}'")
        return v


__all__ = [
    "ConfigDocument",
    "GlobalSchema",
    "PLACEHOLDER_PATTERN",
    "RoleSchema",
    "VERSION_TAG_PATTERN",
    "VersionSchema",
]
