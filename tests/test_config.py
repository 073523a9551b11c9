"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from goldenimage.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.scratch_root == Path.home() / ".cache" / "goldenimage" / "scratch"
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.engine_command[0] == "packer"
        assert settings.compositor_command[:3] == ["xorriso", "-as", "mkisofs"]
        assert settings.disk_format == "vhdx"
        assert settings.lease_timeout == 0

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "GOLDEN_IMG_LOG_LEVEL": "DEBUG",
                "GOLDEN_IMG_BUILD_TIMEOUT": "600",
                "GOLDEN_IMG_DISK_FORMAT": "vmdk",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.build_timeout == 600
            assert settings.disk_format == "vmdk"

    def test_command_list_from_env(self) -> None:
        """List-valued settings should parse JSON from env."""
        with patch.dict(
            os.environ,
            {"GOLDEN_IMG_PASSPHRASE_COMMAND": '["openssl", "rand", "-base64", "18"]'},
        ):
            settings = Settings()
            assert settings.passphrase_command == ["openssl", "rand", "-base64", "18"]

    def test_scratch_root_from_env(self) -> None:
        """Scratch root should be configurable via env."""
        with patch.dict(os.environ, {"GOLDEN_IMG_SCRATCH_ROOT": "/tmp/gi-scratch"}):
            settings = Settings()
            assert settings.scratch_root == Path("/tmp/gi-scratch")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "scratch_root" in parsed
        assert "engine_command" in parsed
        assert parsed["log_level"] == "INFO"
