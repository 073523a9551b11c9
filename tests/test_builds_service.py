"""Tests for builds/service.py and builds/models.py.

Build history queries run against an in-memory SQLite database.
"""

import os
import time
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from goldenimage.builds.models import BuildRecord
from goldenimage.builds.service import (
    BuildNotFoundError,
    build_golden_image,
    clean_scratch,
    get_build,
    list_builds,
)
from goldenimage.db import Base, create_all_tables
from goldenimage.errors import ValidationError
from goldenimage.types import BuildState


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _add(session, version, state, artifact="ws-golden"):
    record = BuildRecord(version=version, artifact_name=artifact, state=state.value)
    session.add(record)
    session.commit()
    return record


class TestBuildRecord:
    """Tests for the BuildRecord model."""

    def test_tables_registered(self):
        """create_all_tables registers build_records."""
        assert "build_records" in Base.metadata.tables

    def test_mark_state_terminal(self, session):
        """Terminal states stamp finished_at."""
        record = _add(session, "2022", BuildState.IDLE)
        record.mark_state(BuildState.BUILDING)
        assert record.finished_at is None
        record.mark_state(BuildState.FAILED)
        assert record.finished_at is not None
        assert not record.is_succeeded()

    def test_mark_failed(self, session):
        """Failure details are attached."""
        record = _add(session, "2022", BuildState.FAILED)
        record.mark_failed("build_failed", "exit 1")
        session.commit()
        assert record.error_type == "build_failed"
        assert record.error_message == "exit 1"
        assert "2022" in repr(record)

    def test_requested_at_default(self, session):
        """requested_at is filled by the database."""
        record = _add(session, "2022", BuildState.IDLE)
        session.refresh(record)
        assert record.requested_at is not None


class TestQueries:
    """Tests for get_build and list_builds."""

    def test_get_build(self, session):
        """get_build returns the record."""
        record = _add(session, "2022", BuildState.SUCCEEDED)
        assert get_build(session, record.id).version == "2022"

    def test_get_build_missing(self, session):
        """Unknown IDs raise BuildNotFoundError."""
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 999)
        assert exc_info.value.code == "build_not_found"

    def test_list_newest_first(self, session):
        """Records are listed newest first."""
        first = _add(session, "2019", BuildState.SUCCEEDED)
        second = _add(session, "2022", BuildState.FAILED)
        assert [b.id for b in list_builds(session)] == [second.id, first.id]

    def test_list_filters(self, session):
        """Version and state filters apply."""
        _add(session, "2019", BuildState.SUCCEEDED)
        _add(session, "2022", BuildState.FAILED)
        _add(session, "2022", BuildState.SUCCEEDED)

        assert len(list_builds(session, version="2022")) == 2
        failed = list_builds(session, state=BuildState.FAILED)
        assert [b.version for b in failed] == ["2022"]
        assert len(list_builds(session, limit=1)) == 1


class TestBuildGoldenImage:
    """Tests for build_golden_image wiring."""

    def test_builds_from_settings(
        self, settings, project, fake_mounter, fake_registry, toolchain,
        session_factory,
    ):
        """Paths resolve against the configuration document's directory."""
        with patch("subprocess.run", toolchain):
            outcome = build_golden_image(
                "2022",
                settings=settings,
                session_factory=session_factory,
                mounter=fake_mounter,
                registry=fake_registry,
            )

        assert outcome.succeeded
        assert outcome.box_path == project / "storage" / "boxes" / (
            "windows-server-2022-golden.box"
        )
        with session_factory() as session:
            assert [b.state for b in list_builds(session)] == ["succeeded"]

    def test_unknown_version(self, settings, project, toolchain):
        """Unknown versions fail before anything runs."""
        with patch("subprocess.run", toolchain):
            with pytest.raises(ValidationError) as exc_info:
                build_golden_image("1999", settings=settings)
        assert exc_info.value.code == "unknown_version"
        assert toolchain.calls == []
        assert not (project / "storage").exists()

    def test_explicit_config_path(self, settings, tmp_path):
        """A missing explicit document is reported."""
        with pytest.raises(ValidationError) as exc_info:
            build_golden_image(
                "2022", settings=settings, config_path=tmp_path / "other.yaml"
            )
        assert exc_info.value.code == "config_not_found"


class TestCleanScratch:
    """Tests for clean_scratch."""

    def test_removes_stale(self, settings):
        """Stale scratch directories are removed."""
        stale = settings.scratch_root / "gi-run-abc"
        stale.mkdir(parents=True)
        past = time.time() - 72 * 3600
        os.utime(stale, (past, past))

        removed, failed = clean_scratch(settings)

        assert removed == [stale]
        assert failed == []
        assert not stale.exists()
