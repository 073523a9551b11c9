"""Build orchestration state machine.

One BuildOrchestrator drives one build attempt:

    IDLE -> DECIDING_REBUILD -> PREPARING_MEDIA -> BUILDING
         -> VERIFYING_ARTIFACT -> PACKAGING -> PERSISTING_CREDENTIALS
         -> CLEANING_UP -> {SUCCEEDED, FAILED}

A fresh box short-circuits DECIDING_REBUILD straight to SUCCEEDED without
spawning any process. Every other path, including failures and
interruptions, passes through CLEANING_UP, which deletes the synthesized
image (it carries plaintext credentials), removes scratch directories and
zeroes secret handles.

The credential record is written if and only if the build artifact was
verified: a packaging failure still persists it, since the verified disk
left on disk for recovery carries those credentials.
"""

from __future__ import annotations

import logging
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from goldenimage.builds.artifacts import VerifiedArtifact, verify_artifact
from goldenimage.builds.context import BuildContext
from goldenimage.builds.lease import BuildLease, lease_path_for
from goldenimage.builds.models import BuildRecord
from goldenimage.builds.runner import run_engine
from goldenimage.credentials.descriptor import DESCRIPTOR_NAME
from goldenimage.credentials.lifecycle import CredentialLifecycle
from goldenimage.db import get_session
from goldenimage.errors import (
    BuildEngineError,
    CleanupWarning,
    GoldenImageError,
    MediaError,
    PackagingError,
    ValidationError,
)
from goldenimage.media.bootcatalog import volume_label
from goldenimage.media.synthesizer import (
    SynthesizedImage,
    full_synthesize,
    incremental_patch,
)
from goldenimage.media.workspace import RUN_PREFIX, purge_stale_workspaces, remove_tree
from goldenimage.packaging.box import PackagedBox, package_box
from goldenimage.types import BuildState, MediaStrategy

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
LOG_DIR_NAME = "logs"

TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.IDLE: frozenset({BuildState.DECIDING_REBUILD}),
    BuildState.DECIDING_REBUILD: frozenset(
        {BuildState.PREPARING_MEDIA, BuildState.SUCCEEDED, BuildState.CLEANING_UP}
    ),
    BuildState.PREPARING_MEDIA: frozenset(
        {BuildState.BUILDING, BuildState.CLEANING_UP}
    ),
    BuildState.BUILDING: frozenset(
        {BuildState.VERIFYING_ARTIFACT, BuildState.CLEANING_UP}
    ),
    BuildState.VERIFYING_ARTIFACT: frozenset(
        {BuildState.PACKAGING, BuildState.CLEANING_UP}
    ),
    BuildState.PACKAGING: frozenset(
        {BuildState.PERSISTING_CREDENTIALS, BuildState.CLEANING_UP}
    ),
    BuildState.PERSISTING_CREDENTIALS: frozenset({BuildState.CLEANING_UP}),
    BuildState.CLEANING_UP: frozenset({BuildState.SUCCEEDED, BuildState.FAILED}),
    BuildState.SUCCEEDED: frozenset(),
    BuildState.FAILED: frozenset(),
}


class StateTransitionError(GoldenImageError):
    """A transition not present in TRANSITIONS was requested."""

    def __init__(self, current: BuildState, target: BuildState) -> None:
        super().__init__(
            f"Invalid build state transition {current.value} -> {target.value}",
            code="invalid_transition",
        )
        self.current = current
        self.target = target


@dataclass
class BuildOutcome:
    """Result of one build attempt.

    Attributes:
        version: OS version tag.
        state: Terminal state.
        error: Error that failed the run, if any.
        box_path: Packaged box (also set for a short-circuited run).
        record_path: Credential record, if persisted.
        log_path: Engine log, if the engine ran.
        media_strategy: Strategy that produced the media, if any.
        states: Every state visited, in order.
        short_circuited: Whether the existing box was fresh.
        warnings: Non-fatal cleanup problems.
        history_id: Build history row id, if history is recorded.
    """

    version: str
    state: BuildState
    error: GoldenImageError | None = None
    box_path: Path | None = None
    record_path: Path | None = None
    log_path: Path | None = None
    media_strategy: MediaStrategy | None = None
    states: list[BuildState] = field(default_factory=list)
    short_circuited: bool = False
    warnings: list[CleanupWarning] = field(default_factory=list)
    history_id: int | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the run ended in SUCCEEDED."""
        return self.state is BuildState.SUCCEEDED


def needs_rebuild(
    box_path: Path,
    interval_days: int,
    force: bool = False,
    now: float | None = None,
) -> bool:
    """Decide whether the box for a version must be rebuilt.

    Only the box's modification time is consulted; no process is spawned.

    Args:
        box_path: Packaged box location.
        interval_days: Maximum box age in days (0 = always rebuild).
        force: Rebuild regardless of age.
        now: Current time as epoch seconds (default: time.time()).

    Returns:
        True if the box is missing, stale, unreadable or force is set.
    """
    if force:
        logger.info("Rebuild forced for %s", box_path.name)
        return True
    try:
        mtime = box_path.stat().st_mtime
    except FileNotFoundError:
        logger.info("No existing box at %s, building", box_path)
        return True
    except OSError as e:
        logger.warning("Cannot stat %s (%s), rebuilding", box_path, e)
        return True

    now = time.time() if now is None else now
    age_days = (now - mtime) / SECONDS_PER_DAY
    if age_days >= interval_days:
        logger.info(
            "Box %s is %.1f days old (limit %d), rebuilding",
            box_path.name,
            age_days,
            interval_days,
        )
        return True

    logger.info(
        "Box %s is %.1f days old (limit %d), nothing to do",
        box_path.name,
        age_days,
        interval_days,
    )
    return False


def select_media_strategies(existing_image: bool) -> list[MediaStrategy]:
    """Return media strategies to try, in order.

    A leftover synthesized image is patched in place first, with a single
    full synthesis fallback; otherwise only full synthesis is attempted.
    """
    if existing_image:
        return [MediaStrategy.INCREMENTAL, MediaStrategy.FULL]
    return [MediaStrategy.FULL]


class BuildOrchestrator:
    """Runs one build attempt through the state machine.

    Args:
        context: Build context.
        lifecycle: Credential lifecycle (default: one built from the
            configured roles and passphrase generator).
    """

    def __init__(
        self,
        context: BuildContext,
        lifecycle: CredentialLifecycle | None = None,
    ) -> None:
        self.context = context
        self.lifecycle = lifecycle or CredentialLifecycle(
            context.global_config.roles,
            context.settings.passphrase_command,
            timeout=context.settings.generator_timeout,
        )
        self.state = BuildState.IDLE
        self.states: list[BuildState] = [BuildState.IDLE]

        self._error: BaseException | None = None
        self._warnings: list[CleanupWarning] = []
        self._short_circuited = False
        self._lease: BuildLease | None = None
        self._owns_media = False
        self._run_dir: Path | None = None
        self._image: SynthesizedImage | None = None
        self._log_path: Path | None = None
        self._artifact: VerifiedArtifact | None = None
        self._box: PackagedBox | None = None
        self._record_path: Path | None = None
        self._history_id: int | None = None

    # -- state handling -------------------------------------------------

    def _transition(self, target: BuildState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise StateTransitionError(self.state, target)
        logger.info(
            "[%s] %s -> %s", self.context.version, self.state.value, target.value
        )
        self.state = target
        self.states.append(target)
        self._update_history()

    def _record_error(self, error: BaseException) -> None:
        if self._error is None:
            self._error = error
            logger.error("[%s] Build failed: %s", self.context.version, error)
        else:
            logger.error(
                "[%s] Further error after failure: %s", self.context.version, error
            )

    def _warn(self, message: str) -> None:
        warning = CleanupWarning(message)
        self._warnings.append(warning)
        logger.warning("[%s] %s", self.context.version, message)

    # -- build history --------------------------------------------------

    def _start_history(self) -> None:
        factory = self.context.session_factory
        if factory is None:
            return
        try:
            with get_session(factory) as session:
                record = BuildRecord(
                    version=self.context.version,
                    artifact_name=self.context.paths.artifact_name,
                    state=self.state.value,
                )
                session.add(record)
                session.flush()
                self._history_id = record.id
        except SQLAlchemyError as e:
            logger.warning("Failed to record build history: %s", e)

    def _update_history(self) -> None:
        factory = self.context.session_factory
        if factory is None or self._history_id is None:
            return
        try:
            with get_session(factory) as session:
                record = session.get(BuildRecord, self._history_id)
                if record is None:
                    return
                record.mark_state(self.state)
                record.short_circuited = self._short_circuited
                if self._image is not None:
                    record.media_strategy = self._image.strategy.value
                if self._log_path is not None:
                    record.log_path = str(self._log_path)
                if self._box is not None:
                    record.box_path = str(self._box.path)
                if self._record_path is not None:
                    record.record_path = str(self._record_path)
                if self._error is not None:
                    record.mark_failed(
                        getattr(self._error, "code", type(self._error).__name__),
                        str(self._error),
                    )
        except SQLAlchemyError as e:
            logger.warning("Failed to update build history: %s", e)

    # -- stages ---------------------------------------------------------

    def _prepare_media(self) -> None:
        ctx = self.context
        paths = ctx.paths

        # Input validation and generation happen before anything is written
        self.lifecycle.check_template(paths.descriptor_template)
        if not paths.synthesized_image.exists() and not paths.source_image.is_file():
            raise ValidationError(
                f"Source media not found: {paths.source_image}", code="source_missing"
            )
        self.lifecycle.generate()

        self._lease = BuildLease(
            lease_path_for(paths.storage_root, paths.version),
            paths.version,
            timeout=ctx.settings.lease_timeout,
        )
        self._lease.acquire()
        self._owns_media = True

        ctx.settings.scratch_root.mkdir(parents=True, exist_ok=True)
        self._run_dir = Path(
            tempfile.mkdtemp(prefix=RUN_PREFIX, dir=ctx.settings.scratch_root)
        )
        descriptor = self.lifecycle.render_descriptor(
            paths.descriptor_template, self._run_dir / DESCRIPTOR_NAME
        )

        label = volume_label(paths.os_name)
        strategies = select_media_strategies(paths.synthesized_image.exists())
        for attempt, strategy in enumerate(strategies, start=1):
            try:
                if strategy is MediaStrategy.INCREMENTAL:
                    self._image = incremental_patch(
                        paths.synthesized_image,
                        descriptor,
                        ctx.mounter,
                        ctx.settings,
                        label,
                    )
                else:
                    self._image = full_synthesize(
                        paths.source_image,
                        descriptor,
                        paths.synthesized_image,
                        ctx.mounter,
                        ctx.settings,
                        label,
                        scripts_dir=paths.scripts_dir,
                    )
            except MediaError as e:
                if attempt == len(strategies):
                    raise
                logger.warning(
                    "[%s] %s media preparation failed, falling back to %s: %s",
                    ctx.version,
                    strategy.value,
                    strategies[attempt].value,
                    e,
                )
                continue
            break

    def _build(self) -> None:
        ctx = self.context
        assert self._image is not None
        output = ctx.paths.output_directory
        if output.exists():
            logger.warning(
                "[%s] Removing output of an earlier attempt at %s", ctx.version, output
            )
            if not remove_tree(output):
                raise BuildEngineError(
                    f"Cannot clear earlier build output at {output}",
                    code="stale_output",
                )
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self._log_path = (
            ctx.paths.storage_root
            / LOG_DIR_NAME
            / f"{ctx.paths.artifact_name}-{stamp}.log"
        )
        secrets_env = {
            f"PKR_VAR_{role}_password": handle.reveal()
            for role, handle in self.lifecycle.secrets.items()
        }
        run_engine(
            ctx.paths,
            self._image.path,
            ctx.global_config.network,
            self._log_path,
            ctx.settings.engine_command,
            timeout=ctx.settings.build_timeout,
            env_override=secrets_env,
            tail_lines=ctx.settings.log_tail_lines,
        )

    def _verify(self) -> None:
        self._artifact = verify_artifact(
            self.context.paths.output_directory, self.context.settings.disk_format
        )

    def _package(self) -> None:
        ctx = self.context
        assert self._artifact is not None
        role = ctx.global_config.automation_role
        self._box = package_box(
            self._artifact,
            ctx.paths,
            ctx.global_config.roles[role].username,
            self.lifecycle.secret_for(role),
            ctx.settings,
            ctx.registry,
        )

    def _persist_credentials(self) -> None:
        paths = self.context.paths
        self._record_path = self.lifecycle.persist(
            paths.credentials_dir,
            paths.version,
            paths.artifact_name,
            self._artifact,
        )

    def _cleanup(self) -> None:
        ctx = self.context
        image = ctx.paths.synthesized_image

        if self._owns_media:
            try:
                image.unlink(missing_ok=True)
            except OSError as e:
                self._warn(f"Failed to delete synthesized image {image}: {e}")
        elif image.exists():
            logger.info(
                "[%s] Leaving %s alone, it belongs to another build",
                ctx.version,
                image,
            )

        if self._run_dir is not None and not remove_tree(self._run_dir):
            self._warn(f"Failed to remove run directory {self._run_dir}")

        try:
            _, failed = purge_stale_workspaces(
                ctx.settings.scratch_root, ctx.settings.stale_workspace_grace_hours
            )
        except OSError as e:
            self._warn(f"Failed to scan scratch root {ctx.settings.scratch_root}: {e}")
        else:
            for path in failed:
                self._warn(f"Stale scratch directory could not be removed: {path}")

        self.lifecycle.dispose()

        if self._lease is not None:
            try:
                self._lease.release()
            except OSError as e:
                self._warn(f"Failed to release build lease {self._lease.path}: {e}")

    # -- driver ---------------------------------------------------------

    def _run_stages(self) -> None:
        self._transition(BuildState.PREPARING_MEDIA)
        self._prepare_media()

        self._transition(BuildState.BUILDING)
        self._build()

        self._transition(BuildState.VERIFYING_ARTIFACT)
        self._verify()

        self._transition(BuildState.PACKAGING)
        try:
            self._package()
        except PackagingError as e:
            logger.error(
                "[%s] Verified artifact kept for recovery at %s",
                self.context.version,
                self.context.paths.output_directory,
            )
            self._record_error(e)

        self._transition(BuildState.PERSISTING_CREDENTIALS)
        self._persist_credentials()

    def _finish(self) -> None:
        self._transition(BuildState.CLEANING_UP)
        self._cleanup()
        self._transition(
            BuildState.FAILED if self._error is not None else BuildState.SUCCEEDED
        )

    def _outcome(self) -> BuildOutcome:
        error = self._error if isinstance(self._error, GoldenImageError) else None
        box_path = self._box.path if self._box is not None else None
        if self._short_circuited:
            box_path = self.context.paths.box_path
        return BuildOutcome(
            version=self.context.version,
            state=self.state,
            error=error,
            box_path=box_path,
            record_path=self._record_path,
            log_path=self._log_path,
            media_strategy=self._image.strategy if self._image is not None else None,
            states=list(self.states),
            short_circuited=self._short_circuited,
            warnings=list(self._warnings),
            history_id=self._history_id,
        )

    def run(self) -> BuildOutcome:
        """Run the build attempt to a terminal state.

        Returns:
            BuildOutcome. Build failures are reported through the outcome,
            not raised.

        Raises:
            StateTransitionError: If this orchestrator already ran.
            BaseException: Interruptions and unexpected errors are re-raised
                after cleanup.
        """
        ctx = self.context
        if self.state is not BuildState.IDLE:
            raise StateTransitionError(self.state, BuildState.DECIDING_REBUILD)
        self._start_history()
        self._transition(BuildState.DECIDING_REBUILD)

        if not needs_rebuild(
            ctx.paths.box_path,
            ctx.global_config.rebuild_interval_days,
            force=ctx.force,
        ):
            self._short_circuited = True
            self._transition(BuildState.SUCCEEDED)
            return self._outcome()

        try:
            self._run_stages()
        except GoldenImageError as e:
            self._record_error(e)
        except BaseException as e:
            self._record_error(e)
            self._finish()
            raise

        self._finish()
        outcome = self._outcome()
        logger.info(
            "[%s] Build finished: %s", ctx.version, outcome.state.value.upper()
        )
        return outcome


__all__ = [
    "TRANSITIONS",
    "BuildOrchestrator",
    "BuildOutcome",
    "StateTransitionError",
    "needs_rebuild",
    "select_media_strategies",
]
