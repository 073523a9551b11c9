"""Tests for credentials/descriptor.py module."""

import logging
import stat

import pytest

from goldenimage.credentials.descriptor import (
    embed_in_descriptor,
    ensure_single_generation,
    find_unmatched_placeholders,
    render_descriptor_file,
    validate_template,
    write_private_file,
)
from goldenimage.credentials.secrets import SecretHandle
from goldenimage.errors import ValidationError

PLACEHOLDERS = {"administrator": "{{ADMIN_PASSWORD}}", "automation": "{{VAGRANT_PASSWORD}}"}
TEMPLATE = "<a>{{ADMIN_PASSWORD}}</a><b>{{VAGRANT_PASSWORD}}</b>"


@pytest.fixture
def secrets():
    """Create one generation of secrets."""
    return {
        "administrator": SecretHandle("administrator", b"AdminPw1", "gen-1"),
        "automation": SecretHandle("automation", b"VagrantPw2", "gen-1"),
    }


class TestValidateTemplate:
    """Tests for validate_template."""

    def test_valid(self):
        """Each placeholder exactly once passes."""
        validate_template(TEMPLATE, PLACEHOLDERS)

    def test_missing_placeholder(self):
        """A missing placeholder is malformed_template."""
        with pytest.raises(ValidationError) as exc_info:
            validate_template("<a>{{ADMIN_PASSWORD}}</a>", PLACEHOLDERS)
        assert exc_info.value.code == "malformed_template"
        assert "{{VAGRANT_PASSWORD}}" in str(exc_info.value)

    def test_repeated_placeholder(self):
        """A repeated placeholder is malformed_template."""
        with pytest.raises(ValidationError) as exc_info:
            validate_template(TEMPLATE + "{{ADMIN_PASSWORD}}", PLACEHOLDERS)
        assert "found 2" in str(exc_info.value)


class TestEmbedInDescriptor:
    """Tests for embed_in_descriptor."""

    def test_substitutes_literally(self, secrets):
        """Placeholders are replaced by the role secrets."""
        rendered = embed_in_descriptor(TEMPLATE, secrets, PLACEHOLDERS)
        assert rendered == "<a>AdminPw1</a><b>VagrantPw2</b>"

    def test_unmatched_left_verbatim(self, secrets, caplog):
        """Unknown {{...}} tokens are kept and logged as a warning."""
        template = TEMPLATE + "<c>{{PRODUCT_KEY}}</c>"
        with caplog.at_level(logging.WARNING):
            rendered = embed_in_descriptor(template, secrets, PLACEHOLDERS)
        assert "{{PRODUCT_KEY}}" in rendered
        assert "{{PRODUCT_KEY}}" in caplog.text
        assert "AdminPw1" not in caplog.text

    def test_role_mismatch(self, secrets):
        """Secrets must cover exactly the configured roles."""
        del secrets["automation"]
        with pytest.raises(ValidationError) as exc_info:
            embed_in_descriptor(TEMPLATE, secrets, PLACEHOLDERS)
        assert exc_info.value.code == "role_mismatch"

    def test_mixed_generation(self, secrets):
        """Secrets from two generation events are rejected."""
        secrets["automation"] = SecretHandle("automation", b"Other", "gen-2")
        with pytest.raises(ValidationError) as exc_info:
            embed_in_descriptor(TEMPLATE, secrets, PLACEHOLDERS)
        assert exc_info.value.code == "mixed_generation"


class TestHelpers:
    """Tests for helper functions."""

    def test_find_unmatched(self):
        """Only tokens outside the role set are reported."""
        found = find_unmatched_placeholders(TEMPLATE + "{{X}}{{X}}{{Y}}", PLACEHOLDERS)
        assert found == ["{{X}}", "{{Y}}"]

    def test_ensure_single_generation(self, secrets):
        """Returns the shared generation id."""
        assert ensure_single_generation(secrets) == "gen-1"

    def test_write_private_file(self, tmp_path):
        """Files are owner-only and never overwritten."""
        dest = tmp_path / "sub" / "secret.txt"
        write_private_file(dest, "data")
        assert stat.S_IMODE(dest.stat().st_mode) == 0o600
        with pytest.raises(FileExistsError):
            write_private_file(dest, "again")
        assert dest.read_text() == "data"


class TestRenderDescriptorFile:
    """Tests for render_descriptor_file."""

    def test_renders_private_file(self, tmp_path, secrets):
        """Renders the template to a 0600 file."""
        template = tmp_path / "t.xml"
        template.write_text(TEMPLATE)
        dest = tmp_path / "run" / "Autounattend.xml"

        render_descriptor_file(template, dest, secrets, PLACEHOLDERS)

        assert dest.read_text() == "<a>AdminPw1</a><b>VagrantPw2</b>"
        assert stat.S_IMODE(dest.stat().st_mode) == 0o600

    def test_missing_template(self, tmp_path, secrets):
        """An unreadable template is a ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            render_descriptor_file(
                tmp_path / "missing.xml", tmp_path / "out.xml", secrets, PLACEHOLDERS
            )
        assert exc_info.value.code == "input_missing"
        assert not (tmp_path / "out.xml").exists()
