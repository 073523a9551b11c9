"""Build history ORM model.

One BuildRecord row per orchestrator run, updated as the run moves through
its states.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from goldenimage.db import Base
from goldenimage.types import BuildState


class BuildRecord(Base):
    """ORM model for build attempts.

    Attributes:
        id: Primary key.
        version: OS version tag.
        artifact_name: Registered box name.
        state: Last state reached (see BuildState).
        media_strategy: Media strategy that produced the image, if any.
        short_circuited: Whether the run ended because the box was fresh.
        box_path: Packaged box path (if packaged).
        log_path: Engine log path (if the engine ran).
        record_path: Credential record path (if persisted).
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
        requested_at: When the run started.
        finished_at: When the run reached a terminal state.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    version: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)

    state: Mapped[str] = mapped_column(
        String(30), nullable=False, default=BuildState.IDLE.value, index=True
    )
    media_strategy: Mapped[str | None] = mapped_column(String(20), nullable=True)
    short_circuited: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    box_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    record_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_build_records_version_state", "version", "state"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, version='{self.version}', "
            f"state='{self.state}')>"
        )

    def mark_state(self, state: BuildState) -> None:
        """Record a state transition."""
        self.state = state.value
        if state.is_terminal:
            self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Attach failure details.

        Args:
            error_type: Error code.
            message: Error message details.
        """
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.state == BuildState.SUCCEEDED.value


__all__ = ["BuildRecord"]
