"""Disk image mounting.

Mounting is a scoped resource: use mounted_image() so every mount is paired
with an unmount regardless of exceptions. Mount state outlives the process if
an unmount is skipped, and a leaked mount blocks the next run's cleanup.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from goldenimage.errors import MediaError

logger = logging.getLogger(__name__)

MOUNT_PREFIX = "gi-mnt-"


class ImageMounter(Protocol):
    """Mounts disk images read-only and returns their root directory."""

    def mount(self, image: Path) -> Path:
        """Mount image and return the mountpoint."""
        ...

    def unmount(self, image: Path) -> None:
        """Unmount a previously mounted image."""
        ...


class LoopMounter:
    """Loop-device mounter backed by the system mount/umount commands.

    Mountpoints are created as fresh directories under mount_root.
    """

    def __init__(
        self,
        mount_root: Path,
        mount_command: list[str] | None = None,
        umount_command: list[str] | None = None,
        timeout: int | None = 120,
    ) -> None:
        self.mount_root = mount_root
        self.mount_command = mount_command or ["mount", "-o", "loop,ro"]
        self.umount_command = umount_command or ["umount"]
        self.timeout = timeout
        self._mounts: dict[Path, Path] = {}

    @property
    def active_mounts(self) -> dict[Path, Path]:
        """Currently mounted images and their mountpoints."""
        return dict(self._mounts)

    def _run(self, cmd: list[str], code: str) -> None:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise MediaError(
                f"'{cmd[0]}' timed out after {self.timeout} seconds", code=code
            ) from e
        except OSError as e:
            raise MediaError(f"Failed to run '{cmd[0]}': {e}", code=code) from e
        if result.returncode != 0:
            raise MediaError(
                f"'{cmd[0]}' failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                code=code,
            )

    def mount(self, image: Path) -> Path:
        """Mount image read-only under a fresh mountpoint.

        Raises:
            MediaError: If the image is already mounted by this mounter or the
                mount command fails.
        """
        image = image.resolve()
        if image in self._mounts:
            raise MediaError(f"Image already mounted: {image}", code="already_mounted")

        self.mount_root.mkdir(parents=True, exist_ok=True)
        mountpoint = Path(tempfile.mkdtemp(prefix=MOUNT_PREFIX, dir=self.mount_root))
        try:
            self._run(
                [*self.mount_command, str(image), str(mountpoint)], "mount_failed"
            )
        except MediaError:
            mountpoint.rmdir()
            raise

        self._mounts[image] = mountpoint
        logger.info("Mounted %s at %s", image, mountpoint)
        return mountpoint

    def unmount(self, image: Path) -> None:
        """Unmount image and remove its mountpoint. No-op if not mounted.

        Raises:
            MediaError: If the unmount command fails.
        """
        image = image.resolve()
        mountpoint = self._mounts.get(image)
        if mountpoint is None:
            return

        self._run([*self.umount_command, str(mountpoint)], "unmount_failed")
        del self._mounts[image]
        try:
            mountpoint.rmdir()
        except OSError as e:
            logger.warning("Could not remove mountpoint %s: %s", mountpoint, e)
        logger.info("Unmounted %s", image)


@contextmanager
def mounted_image(mounter: ImageMounter, image: Path) -> Iterator[Path]:
    """Mount an image for the duration of a block.

    The image is unmounted on exit whether or not the block raised. An
    unmount failure while another exception propagates is logged rather
    than masking the original error.

    Args:
        mounter: ImageMounter implementation.
        image: Disk image to mount.

    Yields:
        Root directory of the mounted image.

    Raises:
        MediaError: If the image does not exist or mounting fails.
    """
    if not image.is_file():
        raise MediaError(f"Disk image not found: {image}", code="image_not_found")

    root = mounter.mount(image)
    failed = False
    try:
        yield root
    except BaseException:
        failed = True
        raise
    finally:
        try:
            mounter.unmount(image)
        except MediaError as e:
            if not failed:
                raise
            logger.error("Unmount of %s failed during error handling: %s", image, e)


__all__ = ["ImageMounter", "LoopMounter", "MOUNT_PREFIX", "mounted_image"]
