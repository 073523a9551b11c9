"""Boot catalog detection and compositor argument composition.

Detection is a pure function from the set of boot files present in a media
tree to the compositor's El Torito arguments, so it can be tested without
mounting anything. Fallback order: hybrid (BIOS + EFI) > BIOS-only >
EFI-only > fail.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from goldenimage.errors import MediaError
from goldenimage.types import BootMode

# Canonical (lowercase) media paths
BIOS_BOOT_FILE = "boot/etfsboot.com"
EFI_BOOT_FILE = "efi/microsoft/boot/efisys.bin"
BOOT_CATALOG = "boot/boot.cat"

# (original, no-prompt variant) pairs swapped in so EFI boot skips
# "Press any key to boot from CD or DVD"
NOPROMPT_VARIANTS = (
    ("efi/microsoft/boot/efisys.bin", "efi/microsoft/boot/efisys_noprompt.bin"),
    ("efi/microsoft/boot/cdboot.efi", "efi/microsoft/boot/cdboot_noprompt.efi"),
)

# Windows boot sector loads 8 virtual sectors
BIOS_LOAD_SIZE = "8"

_LABEL_INVALID = re.compile(r"[^A-Z0-9_]")


@dataclass(frozen=True)
class BootLayout:
    """Boot capability of a media tree and the arguments that compose it."""

    mode: BootMode
    args: tuple[str, ...]


def find_case_insensitive(root: Path, relative: str) -> Path | None:
    """Find a path under root matching relative, ignoring case.

    ISO9660/Joliet media may present names in either case depending on how
    it was mounted.

    Returns:
        The matching path, or None if any component is missing.
    """
    current = root
    for part in Path(relative).parts:
        exact = current / part
        if exact.exists():
            current = exact
            continue
        if not current.is_dir():
            return None
        wanted = part.lower()
        match = next(
            (child for child in current.iterdir() if child.name.lower() == wanted),
            None,
        )
        if match is None:
            return None
        current = match
    return current


def scan_boot_files(root: Path) -> dict[str, str]:
    """Return the boot files present under root.

    Returns:
        Mapping of canonical boot file path to its actual relative path.
    """
    found: dict[str, str] = {}
    for canonical in (BIOS_BOOT_FILE, EFI_BOOT_FILE):
        path = find_case_insensitive(root, canonical)
        if path is not None and path.is_file():
            found[canonical] = path.relative_to(root).as_posix()
    return found


def detect_boot_mode(boot_files: Mapping[str, str]) -> BootMode:
    """Pick the boot mode for a set of present boot files.

    Raises:
        MediaError: If no bootable content type is present.
    """
    has_bios = BIOS_BOOT_FILE in boot_files
    has_efi = EFI_BOOT_FILE in boot_files
    if has_bios and has_efi:
        return BootMode.HYBRID
    if has_bios:
        return BootMode.BIOS
    if has_efi:
        return BootMode.EFI
    raise MediaError(
        "No bootable content found (neither BIOS nor EFI boot file present)",
        code="no_boot_files",
    )


def compose_boot_args(boot_files: Mapping[str, str]) -> BootLayout:
    """Compose El Torito arguments for the present boot files.

    Args:
        boot_files: Canonical boot file path -> actual relative path,
            as returned by scan_boot_files().

    Returns:
        BootLayout with the selected mode and argument tuple.

    Raises:
        MediaError: If no bootable content type is present.
    """
    mode = detect_boot_mode(boot_files)
    args: list[str] = ["-c", BOOT_CATALOG]

    if mode in (BootMode.HYBRID, BootMode.BIOS):
        args += [
            "-b",
            boot_files[BIOS_BOOT_FILE],
            "-no-emul-boot",
            "-boot-load-size",
            BIOS_LOAD_SIZE,
        ]
    if mode == BootMode.HYBRID:
        args.append("-eltorito-alt-boot")
    if mode in (BootMode.HYBRID, BootMode.EFI):
        args += ["-e", boot_files[EFI_BOOT_FILE], "-no-emul-boot"]

    return BootLayout(mode=mode, args=tuple(args))


def volume_label(name: str) -> str:
    """Derive an ISO volume label (A-Z, 0-9, _; max 32 chars)."""
    label = _LABEL_INVALID.sub("_", name.upper())
    return label[:32] or "GOLDEN_IMAGE"


def compose_compositor_command(
    prefix: list[str],
    tree: Path,
    output: Path,
    label: str,
    layout: BootLayout,
) -> list[str]:
    """Compose the full compositor command line.

    Args:
        prefix: Compositor command prefix (e.g. ['xorriso', '-as', 'mkisofs']).
        tree: Media tree to compose.
        output: Output image path.
        label: Volume label.
        layout: Boot layout from compose_boot_args().

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [
        *prefix,
        "-iso-level",
        "3",
        "-J",
        "-joliet-long",
        "-D",
        "-N",
        "-relaxed-filenames",
        "-V",
        label,
        *layout.args,
        "-o",
        str(output),
        str(tree),
    ]


__all__ = [
    "BIOS_BOOT_FILE",
    "BOOT_CATALOG",
    "BootLayout",
    "EFI_BOOT_FILE",
    "NOPROMPT_VARIANTS",
    "compose_boot_args",
    "compose_compositor_command",
    "detect_boot_mode",
    "find_case_insensitive",
    "scan_boot_files",
    "volume_label",
]
