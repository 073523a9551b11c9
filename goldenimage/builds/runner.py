"""Build runner for executing the external VM-build engine.

This module handles:
- Composing the engine command from a PathSet
- Executing the engine with subprocess, output captured to a log file
- Enforcing build timeouts
- Tailing the log for diagnostics

A failed engine run is never retried.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from goldenimage.catalog.resolver import PathSet
from goldenimage.errors import BuildEngineError

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    """Result of a build engine execution.

    Attributes:
        exit_code: Process exit code.
        output_directory: Directory the engine wrote into.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
    """

    exit_code: int
    output_directory: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def duration(self) -> float:
        """Build duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()


def compose_engine_command(
    prefix: list[str],
    paths: PathSet,
    image_path: Path,
    network: str,
) -> list[str]:
    """Compose the build engine command.

    Args:
        prefix: Engine command prefix (e.g. ['packer', 'build', '-force']).
        paths: Resolved PathSet.
        image_path: Synthesized installation media.
        network: Network/switch identifier for the build VM.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [
        *prefix,
        "-var",
        f"iso_url={image_path}",
        "-var",
        "iso_checksum=none",
        "-var",
        f"output_directory={paths.output_directory}",
        "-var",
        f"switch_name={network}",
        "-var",
        f"vm_name={paths.artifact_name}",
        str(paths.engine_config),
    ]


def tail_log(log_path: Path, lines: int = 20) -> list[str]:
    """Return the last lines of a log file (empty if unreadable)."""
    try:
        with log_path.open(encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except OSError:
        return []


def run_engine(
    paths: PathSet,
    image_path: Path,
    network: str,
    log_path: Path,
    command_prefix: list[str],
    timeout: int | None = None,
    env_override: Mapping[str, str] | None = None,
    tail_lines: int = 20,
) -> EngineResult:
    """Execute the build engine against synthesized media.

    Args:
        paths: Resolved PathSet.
        image_path: Synthesized installation media.
        network: Network/switch identifier.
        log_path: Engine log file (stdout and stderr).
        command_prefix: Engine command prefix.
        timeout: Build timeout in seconds (None = no timeout).
        env_override: Extra environment variables; values never reach the log.
        tail_lines: Log lines attached to errors.

    Returns:
        EngineResult for a successful (exit code 0) run.

    Raises:
        BuildEngineError: If the engine cannot start, times out, or exits
            non-zero. The error carries the tail of the engine log.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    paths.output_directory.parent.mkdir(parents=True, exist_ok=True)

    cmd = compose_engine_command(command_prefix, paths, image_path, network)
    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)
    logger.info("Engine log: %s", log_path)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    try:
        with log_path.open("w", encoding="utf-8") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=paths.engine_config.parent,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )
    except subprocess.TimeoutExpired as e:
        with log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise BuildEngineError(
            f"Build timed out after {timeout} seconds. See log: {log_path}",
            exit_code=-1,
            log_tail=tail_log(log_path, tail_lines),
            code="build_timeout",
        ) from e
    except OSError as e:
        raise BuildEngineError(
            f"Failed to execute build engine: {e}",
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode
    with log_path.open("a", encoding="utf-8") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(
            f"# Duration: {(finished_at - started_at).total_seconds():.1f}s\n"
        )

    if exit_code != 0:
        logger.error("Build failed with exit code %d. See log: %s", exit_code, log_path)
        raise BuildEngineError(
            f"Build engine failed with exit code {exit_code}. See log: {log_path}",
            exit_code=exit_code,
            log_tail=tail_log(log_path, tail_lines),
            code="build_failed",
        )

    return EngineResult(
        exit_code=exit_code,
        output_directory=paths.output_directory,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


__all__ = [
    "EngineResult",
    "compose_engine_command",
    "run_engine",
    "tail_log",
]
