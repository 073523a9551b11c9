"""Configuration settings for goldenimage.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Per-OS-version paths live in a separate configuration document, see
goldenimage.catalog.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_path() -> Path:
    """Return the default configuration document path."""
    return Path.cwd() / "config" / "golden-images.yaml"


def _default_scratch_root() -> Path:
    """Return the default scratch root for workspaces."""
    return Path.home() / ".cache" / "goldenimage" / "scratch"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "goldenimage" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the GOLDEN_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="GOLDEN_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    config_path: Path = Field(
        default_factory=_default_config_path,
        description="Configuration document with global and per-version settings",
    )
    scratch_root: Path = Field(
        default_factory=_default_scratch_root,
        description="Writable scratch root on fast local storage",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for build history",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # External tools
    engine_command: list[str] = Field(
        default_factory=lambda: ["packer", "build", "-force"],
        description="Build engine command prefix",
    )
    compositor_command: list[str] = Field(
        default_factory=lambda: ["xorriso", "-as", "mkisofs"],
        description="Bootable image compositor command prefix",
    )
    passphrase_command: list[str] = Field(
        default_factory=lambda: ["pwgen", "-s", "-c", "-n", "24", "1"],
        description="Passphrase generator; must print the secret on stdout",
    )
    registry_command: list[str] = Field(
        default_factory=lambda: ["vagrant", "box"],
        description="Artifact registry command prefix",
    )
    mount_command: list[str] = Field(
        default_factory=lambda: ["mount", "-o", "loop,ro"],
        description="Command used to mount disk images",
    )
    umount_command: list[str] = Field(
        default_factory=lambda: ["umount"],
        description="Command used to unmount disk images",
    )

    # Build engine
    disk_format: str = Field(
        default="vhdx",
        description="Expected disk file extension produced by the build engine",
    )
    log_tail_lines: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Number of engine log lines attached to build errors",
    )

    # Housekeeping
    stale_workspace_grace_hours: float = Field(
        default=24.0,
        ge=0,
        description="Age after which leftover scratch workspaces are removed",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=14400,
        ge=60,
        description="Timeout for build engine runs",
    )
    compositor_timeout: int = Field(
        default=1800,
        ge=30,
        description="Timeout for media compositing",
    )
    generator_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for the passphrase generator",
    )
    registry_timeout: int = Field(
        default=1800,
        ge=30,
        description="Timeout for artifact registry operations",
    )
    mount_timeout: int = Field(
        default=120,
        ge=5,
        description="Timeout for mount and unmount commands",
    )
    lease_timeout: float = Field(
        default=0,
        ge=0,
        description="Seconds to wait for a held build lease (0 = fail fast)",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
