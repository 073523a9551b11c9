"""Advisory build lease.

A lease is an fcntl lock on ``<storage_root>/locks/<version>.lease``. While
held, the file also records who holds it (host, pid, acquisition time) so a
refused invocation can report the owner.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import time
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from goldenimage.errors import LeaseError

logger = logging.getLogger(__name__)

LOCK_DIR_NAME = "locks"


def lease_path_for(storage_root: Path, version: str) -> Path:
    """Return the lease file path for a version."""
    safe_version = version.replace("/", "_").replace(":", "_")
    return storage_root / LOCK_DIR_NAME / f"{safe_version}.lease"


def read_owner(path: Path) -> dict[str, object]:
    """Read the owner information of a lease file (empty if unreadable)."""
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


class BuildLease:
    """Advisory lease serializing builds of one version across processes.

    Usage:
        with BuildLease(path, version="2022"):
            ...

    Args:
        path: Lease file.
        version: Version the lease guards (for messages).
        timeout: Seconds to wait for a held lease; 0 fails immediately.
    """

    def __init__(self, path: Path, version: str, timeout: float = 0) -> None:
        self.path = path
        self.version = version
        self.timeout = timeout
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        """Whether this instance currently holds the lease."""
        return self._fd is not None

    def acquire(self) -> None:
        """Acquire the lease.

        Raises:
            LeaseError: If another invocation holds the lease past the timeout.
        """
        if self._fd is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= self.timeout:
                        owner = read_owner(self.path)
                        raise LeaseError(
                            f"Build of version {self.version} already in progress "
                            f"(holder: {owner or 'unknown'})",
                            owner=owner,
                        ) from None
                    time.sleep(0.1)
        except BaseException:
            os.close(fd)
            raise

        owner = {
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "version": self.version,
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(owner).encode("utf-8"))
        os.fsync(fd)
        self._fd = fd
        logger.debug("Build lease acquired: %s", self.path)

    def release(self) -> None:
        """Release the lease; a no-op if not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
        except OSError as e:
            logger.warning("Failed to clear lease owner %s: %s", self.path, e)
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        logger.debug("Build lease released: %s", self.path)

    def __enter__(self) -> BuildLease:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["BuildLease", "lease_path_for", "read_owner"]
