"""Scratch workspaces and tree staging.

This module handles:
- Creating freshly randomized scratch directories under the scratch root
- Copying read-only media trees into a writable workspace
- Overlaying auxiliary post-install scripts into a media tree
- Removing workspaces, including leftovers of interrupted runs

Workspaces may hold plaintext credentials (the rendered descriptor), so
removal is attempted on every exit path.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from goldenimage.errors import MediaError
from goldenimage.media.mount import MOUNT_PREFIX

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "gi-ws-"
RUN_PREFIX = "gi-run-"
BOX_PREFIX = "gi-box-"
SCRATCH_PREFIXES = (WORKSPACE_PREFIX, RUN_PREFIX, BOX_PREFIX, MOUNT_PREFIX)


def _make_writable(path: Path) -> None:
    mode = path.lstat().st_mode
    if not stat.S_ISLNK(mode):
        path.chmod(stat.S_IMODE(mode) | stat.S_IWUSR | stat.S_IRUSR | stat.S_IXUSR)


def make_tree_writable(root: Path) -> None:
    """Grant the owner write access throughout a tree.

    Trees copied from read-only media keep their 0444/0555 modes, which
    would make them impossible to modify or delete.
    """
    _make_writable(root)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            _make_writable(Path(dirpath) / name)


def remove_tree(path: Path) -> bool:
    """Remove a directory tree, fixing permissions as needed.

    Returns:
        True if the tree is gone, False if removal failed (logged).
    """
    if not path.exists():
        return True

    def _retry_writable(func, failed_path, _exc):  # type: ignore[no-untyped-def]
        parent = Path(failed_path).parent
        _make_writable(parent)
        if Path(failed_path).exists() and not Path(failed_path).is_symlink():
            _make_writable(Path(failed_path))
        func(failed_path)

    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_retry_writable)
        else:
            shutil.rmtree(path, onerror=_retry_writable)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
        return False
    return True


@contextmanager
def scratch_workspace(
    scratch_root: Path,
    prefix: str = WORKSPACE_PREFIX,
) -> Iterator[Path]:
    """Create a randomized scratch directory, removed on exit.

    Args:
        scratch_root: Writable scratch root.
        prefix: Directory name prefix.

    Yields:
        Path to the new, empty directory.
    """
    scratch_root.mkdir(parents=True, exist_ok=True)
    workspace = Path(tempfile.mkdtemp(prefix=prefix, dir=scratch_root))
    logger.debug("Created scratch workspace %s", workspace)
    try:
        yield workspace
    finally:
        if not remove_tree(workspace):
            logger.error("Scratch workspace left behind: %s", workspace)


def copy_tree(source_root: Path, dest: Path) -> None:
    """Copy a (possibly read-only) media tree into a writable destination.

    Raises:
        MediaError: If the copy fails.
    """
    try:
        shutil.copytree(source_root, dest, symlinks=False, dirs_exist_ok=True)
        make_tree_writable(dest)
    except (OSError, shutil.Error) as e:
        raise MediaError(
            f"Failed to copy media tree {source_root} -> {dest}: {e}",
            code="copy_failed",
        ) from e


def stage_directory(source_dir: Path, dest_dir: Path) -> None:
    """Overlay a directory onto dest_dir, preserving relative layout.

    Symlinks are copied as their target content and must not point outside
    the source tree.

    Raises:
        MediaError: If staging fails or a symlink escapes the source tree.
    """
    source_dir_resolved = source_dir.resolve()

    try:
        for item in sorted(source_dir.rglob("*")):
            rel_path = item.relative_to(source_dir)
            dest_path = dest_dir / rel_path

            if item.is_symlink():
                target = item.resolve()
                try:
                    target.relative_to(source_dir_resolved)
                except ValueError:
                    raise MediaError(
                        f"Symlink {item} points outside source tree: {target}",
                        code="symlink_escape",
                    ) from None

            if item.is_dir() and not item.is_symlink():
                dest_path.mkdir(parents=True, exist_ok=True)
            elif item.is_file():
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(item.resolve(), dest_path)
    except OSError as e:
        raise MediaError(
            f"Failed to stage directory {source_dir}: {e}",
            code="dir_stage_error",
        ) from e


def purge_stale_workspaces(
    scratch_root: Path,
    grace_hours: float,
    now: float | None = None,
) -> tuple[list[Path], list[Path]]:
    """Remove scratch directories left behind by interrupted runs.

    Only directories carrying one of the scratch prefixes and older than the
    grace period are touched. Active mountpoints are never removed.

    Args:
        scratch_root: Scratch root to scan.
        grace_hours: Minimum age before a directory counts as stale.
        now: Current time as epoch seconds (default: time.time()).

    Returns:
        Tuple of (removed paths, paths that could not be removed).
    """
    removed: list[Path] = []
    failed: list[Path] = []
    if not scratch_root.is_dir():
        return removed, failed

    now = time.time() if now is None else now
    cutoff = now - grace_hours * 3600

    for child in sorted(scratch_root.iterdir()):
        if not child.is_dir() or child.is_symlink():
            continue
        if not child.name.startswith(SCRATCH_PREFIXES):
            continue
        try:
            mtime = child.stat().st_mtime
        except OSError:
            continue
        if mtime > cutoff:
            continue
        if os.path.ismount(child):
            logger.warning("Stale mountpoint still mounted, skipping: %s", child)
            failed.append(child)
            continue

        logger.info("Removing stale scratch directory %s", child)
        if remove_tree(child):
            removed.append(child)
        else:
            failed.append(child)

    return removed, failed


__all__ = [
    "BOX_PREFIX",
    "RUN_PREFIX",
    "SCRATCH_PREFIXES",
    "WORKSPACE_PREFIX",
    "copy_tree",
    "make_tree_writable",
    "purge_stale_workspaces",
    "remove_tree",
    "scratch_workspace",
    "stage_directory",
]
