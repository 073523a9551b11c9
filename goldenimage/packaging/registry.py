"""Artifact registry client.

Wraps the ``vagrant box`` CLI: register a packaged box by name (replacing any
prior registration), remove it, and list the golden boxes already registered.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from goldenimage.errors import PackagingError

logger = logging.getLogger(__name__)

# "windows-server-2022-golden (hyperv, 0)"
_BOX_LINE = re.compile(
    r"^(?P<name>\S+)\s+\((?P<provider>[^,\s)]+)(?:,\s*(?P<box_version>[^)]+))?\)"
)
GOLDEN_NAME_PATTERN = re.compile(r"^(?P<os_name>.+-(?P<version>[^-]+))-golden$")


@dataclass(frozen=True)
class RegisteredBox:
    """A box known to the registry.

    Attributes:
        name: Registered name.
        provider: Hypervisor provider (e.g. 'hyperv').
        box_version: Registry version string.
        os_name: OS name derived from a golden box name.
        version: OS version tag derived from a golden box name.
    """

    name: str
    provider: str
    box_version: str | None = None
    os_name: str | None = None
    version: str | None = None


def parse_box_list(output: str) -> list[RegisteredBox]:
    """Parse ``vagrant box list`` output."""
    boxes: list[RegisteredBox] = []
    for line in output.splitlines():
        match = _BOX_LINE.match(line.strip())
        if not match:
            continue
        name = match.group("name")
        golden = GOLDEN_NAME_PATTERN.match(name)
        boxes.append(
            RegisteredBox(
                name=name,
                provider=match.group("provider"),
                box_version=match.group("box_version"),
                os_name=golden.group("os_name") if golden else None,
                version=golden.group("version") if golden else None,
            )
        )
    return boxes


class VagrantRegistry:
    """Registry operations through the vagrant CLI.

    Args:
        command: Command prefix (default ['vagrant', 'box']).
        timeout: Timeout for each registry call in seconds.
    """

    def __init__(self, command: list[str] | None = None, timeout: int | None = 1800):
        self.command = list(command or ["vagrant", "box"])
        self.timeout = timeout

    def _run(self, args: list[str], action: str) -> str:
        cmd = [*self.command, *args]
        logger.debug("Registry command: %s", cmd)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise PackagingError(
                f"Registry CLI not found: {cmd[0]}", code="registry_unavailable"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise PackagingError(
                f"Registry {action} timed out after {self.timeout} seconds",
                code="registry_timeout",
            ) from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise PackagingError(
                f"Registry {action} failed with exit code {result.returncode}: "
                f"{detail}",
                code="registry_failed",
            )
        return result.stdout or ""

    def add(self, name: str, box_path: Path) -> None:
        """Register a box, replacing any prior registration under name.

        Raises:
            PackagingError: If registration fails.
        """
        logger.info("Registering box %s from %s", name, box_path)
        self._run(["add", "--name", name, "--force", str(box_path)], "add")

    def remove(self, name: str) -> None:
        """Remove every registered version of a box.

        Raises:
            PackagingError: If removal fails.
        """
        logger.info("Removing box %s", name)
        self._run(["remove", name, "--all", "--force"], "remove")

    def list_boxes(self) -> list[RegisteredBox]:
        """List registered boxes."""
        return parse_box_list(self._run(["list"], "list"))

    def list_golden_boxes(self) -> list[RegisteredBox]:
        """List registered golden boxes, ordered by OS version."""
        golden = [box for box in self.list_boxes() if box.version is not None]
        return sorted(golden, key=lambda box: (box.version or "", box.name))


__all__ = [
    "GOLDEN_NAME_PATTERN",
    "RegisteredBox",
    "VagrantRegistry",
    "parse_box_list",
]
