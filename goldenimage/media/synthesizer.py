"""Installation media synthesis.

This module handles:
- Full synthesis: pristine source media -> media with the unattended
  descriptor, no-prompt EFI loaders and optional post-install scripts
- Incremental patch: an already-synthesized image with only its descriptor
  replaced, so rotating credentials never re-reads the (large, possibly
  removable) pristine source
- Post-build verification of the composed image

Both operations compose into a temporary sibling path and move the result
into place, so no partial image is ever left at the destination.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path

from goldenimage.config import Settings
from goldenimage.credentials.descriptor import DESCRIPTOR_NAME
from goldenimage.errors import GoldenImageError, MediaError, ValidationError
from goldenimage.media.bootcatalog import (
    NOPROMPT_VARIANTS,
    BootLayout,
    compose_boot_args,
    compose_compositor_command,
    find_case_insensitive,
    scan_boot_files,
)
from goldenimage.media.mount import ImageMounter, mounted_image
from goldenimage.media.workspace import copy_tree, scratch_workspace, stage_directory
from goldenimage.types import BootMode, MediaStrategy

logger = logging.getLogger(__name__)

# Main installation payload; one of these must exist on valid media
PAYLOAD_CANDIDATES = ("sources/install.wim", "sources/install.esd")

ORIGINAL_SUFFIX = ".orig"

# Lines of compositor output kept in error messages
_ERROR_TAIL_LINES = 10


@dataclass(frozen=True)
class SynthesizedImage:
    """Installation media produced or patched by this package.

    Attributes:
        path: Image location.
        strategy: How the image was produced.
        boot_mode: Boot capability of the image.
        boot_args: El Torito arguments the image was composed with.
    """

    path: Path
    strategy: MediaStrategy
    boot_mode: BootMode
    boot_args: tuple[str, ...]


def place_descriptor(tree: Path, descriptor_path: Path) -> Path:
    """Write the descriptor at the tree root under its fixed name.

    Any existing descriptor, in whatever case the media presents it, is
    replaced.

    Raises:
        ValidationError: If the descriptor file is missing.
        MediaError: If it cannot be written.
    """
    if not descriptor_path.is_file():
        raise ValidationError(
            f"Unattended descriptor not found: {descriptor_path}",
            code="descriptor_missing",
        )

    dest = tree / DESCRIPTOR_NAME
    try:
        existing = find_case_insensitive(tree, DESCRIPTOR_NAME)
        if existing is not None:
            existing.unlink()
        shutil.copyfile(descriptor_path, dest)
    except OSError as e:
        raise MediaError(
            f"Failed to place descriptor in {tree}: {e}", code="descriptor_write_failed"
        ) from e
    return dest


def apply_noprompt_variants(tree: Path) -> bool:
    """Swap in no-prompt EFI boot binaries when all variants are present.

    Originals are kept next to the replacement with an ``.orig`` suffix.

    Returns:
        True if the variants were applied, False if the originals were kept.
    """
    pairs: list[tuple[Path, Path]] = []
    for original, variant in NOPROMPT_VARIANTS:
        original_path = find_case_insensitive(tree, original)
        variant_path = find_case_insensitive(tree, variant)
        if original_path is None or variant_path is None:
            logger.warning(
                "No-prompt boot variants not found (%s); media will wait for a "
                "key press on EFI boot",
                variant,
            )
            return False
        pairs.append((original_path, variant_path))

    try:
        for original_path, variant_path in pairs:
            backup = original_path.with_name(original_path.name + ORIGINAL_SUFFIX)
            original_path.replace(backup)
            shutil.copy2(variant_path, original_path)
            logger.debug("Swapped %s for %s", original_path.name, variant_path.name)
    except OSError as e:
        raise MediaError(
            f"Failed to apply no-prompt boot variants: {e}", code="noprompt_failed"
        ) from e
    return True


def _tail(text: str | None, lines: int = _ERROR_TAIL_LINES) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


def composite_image(
    tree: Path,
    output: Path,
    settings: Settings,
    label: str,
) -> BootLayout:
    """Compose a bootable image from a media tree.

    The compositor writes to a temporary sibling which is moved onto output
    only after it exits successfully.

    Args:
        tree: Media tree to compose.
        output: Destination image path.
        settings: Settings supplying the compositor command and timeout.
        label: Volume label.

    Returns:
        BootLayout used for the image.

    Raises:
        MediaError: If no boot files are present or the compositor fails.
    """
    layout = compose_boot_args(scan_boot_files(tree))
    output.parent.mkdir(parents=True, exist_ok=True)
    partial = output.with_name(f".{output.name}.{uuid.uuid4().hex[:8]}.partial")
    cmd = compose_compositor_command(
        settings.compositor_command, tree, partial, label, layout
    )

    logger.info("Composing %s image %s", layout.mode.value, output)
    logger.debug("Compositor command: %s", cmd)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=settings.compositor_timeout,
            check=False,
        )
        if result.returncode != 0:
            raise MediaError(
                f"Compositor failed with exit code {result.returncode}:\n"
                f"{_tail(result.stderr) or _tail(result.stdout)}",
                code="compositor_failed",
            )
        if not partial.is_file():
            raise MediaError(
                "Compositor reported success but wrote no image",
                code="compositor_failed",
            )
        os.replace(partial, output)
    except FileNotFoundError as e:
        raise MediaError(
            f"Compositor not found: {cmd[0]}", code="compositor_unavailable"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise MediaError(
            f"Compositor timed out after {settings.compositor_timeout} seconds",
            code="compositor_timeout",
        ) from e
    except OSError as e:
        raise MediaError(
            f"Failed to compose image {output}: {e}", code="compositor_failed"
        ) from e
    finally:
        partial.unlink(missing_ok=True)

    return layout


def verify_image(image: Path, mounter: ImageMounter) -> None:
    """Mount a composed image and check its required content.

    Raises:
        MediaError: If the descriptor, the installation payload or the boot
            files are missing.
    """
    with mounted_image(mounter, image) as root:
        if find_case_insensitive(root, DESCRIPTOR_NAME) is None:
            raise MediaError(
                f"Descriptor {DESCRIPTOR_NAME} missing from {image}",
                code="descriptor_missing",
            )
        if not any(find_case_insensitive(root, p) for p in PAYLOAD_CANDIDATES):
            raise MediaError(
                f"Installation payload missing from {image} "
                f"(expected one of {', '.join(PAYLOAD_CANDIDATES)})",
                code="payload_missing",
            )
        if not scan_boot_files(root):
            raise MediaError(
                f"Boot files missing from {image}", code="boot_structure_missing"
            )
    logger.info("Verified image %s", image)


def _discard(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Failed to delete %s: %s", path, e)


def full_synthesize(
    source_image: Path,
    descriptor_path: Path,
    output_path: Path,
    mounter: ImageMounter,
    settings: Settings,
    label: str,
    scripts_dir: Path | None = None,
) -> SynthesizedImage:
    """Produce installation media from pristine source media.

    Mounts the source, copies it into a fresh workspace, writes the
    descriptor, swaps in no-prompt EFI binaries when available, overlays
    post-install scripts, composes the image and verifies it. The source
    and the new image are always unmounted and the workspace always removed.

    Args:
        source_image: Pristine installation media.
        descriptor_path: Rendered unattended descriptor.
        output_path: Destination image path.
        mounter: ImageMounter implementation.
        settings: Application settings.
        label: Volume label for the new image.
        scripts_dir: Optional post-install scripts overlaid onto the tree.

    Returns:
        SynthesizedImage describing the new image.

    Raises:
        ValidationError: If the source image or descriptor is missing.
        MediaError: If any media step fails. No file is left at output_path.
    """
    if not source_image.is_file():
        raise ValidationError(
            f"Source installation media not found: {source_image}",
            code="source_missing",
        )

    logger.info("Full synthesis of %s from %s", output_path, source_image)
    try:
        with scratch_workspace(settings.scratch_root) as workspace:
            tree = workspace / "tree"
            with mounted_image(mounter, source_image) as source_root:
                copy_tree(source_root, tree)

            place_descriptor(tree, descriptor_path)
            apply_noprompt_variants(tree)
            if scripts_dir is not None:
                logger.info("Overlaying post-install scripts from %s", scripts_dir)
                stage_directory(scripts_dir, tree)

            layout = composite_image(tree, output_path, settings, label)

        verify_image(output_path, mounter)
    except BaseException:
        _discard(output_path)
        raise

    return SynthesizedImage(
        path=output_path,
        strategy=MediaStrategy.FULL,
        boot_mode=layout.mode,
        boot_args=layout.args,
    )


def incremental_patch(
    existing_image: Path,
    descriptor_path: Path,
    mounter: ImageMounter,
    settings: Settings,
    label: str,
) -> SynthesizedImage:
    """Replace only the descriptor of an already-synthesized image.

    The patched image is composed with the same boot detection as a full
    synthesis, verified, and atomically moved over the existing image.

    Args:
        existing_image: Previously synthesized image.
        descriptor_path: Newly rendered unattended descriptor.
        mounter: ImageMounter implementation.
        settings: Application settings.
        label: Volume label for the patched image.

    Returns:
        SynthesizedImage at the same path.

    Raises:
        MediaError: On any failure. The broken existing image is deleted so
            the caller can fall back to full synthesis.
    """
    patched = existing_image.with_name(
        f".{existing_image.name}.{uuid.uuid4().hex[:8]}.patch"
    )
    logger.info("Incremental patch of %s", existing_image)
    try:
        with scratch_workspace(settings.scratch_root) as workspace:
            tree = workspace / "tree"
            with mounted_image(mounter, existing_image) as root:
                copy_tree(root, tree)
            place_descriptor(tree, descriptor_path)
            layout = composite_image(tree, patched, settings, label)

        verify_image(patched, mounter)
        os.replace(patched, existing_image)
    except (GoldenImageError, OSError) as e:
        logger.warning("Incremental patch failed, discarding %s: %s", existing_image, e)
        _discard(patched, existing_image)
        raise MediaError(
            f"Incremental patch of {existing_image} failed: {e}",
            code="incremental_patch_failed",
        ) from e
    except BaseException:
        _discard(patched, existing_image)
        raise

    return SynthesizedImage(
        path=existing_image,
        strategy=MediaStrategy.INCREMENTAL,
        boot_mode=layout.mode,
        boot_args=layout.args,
    )


__all__ = [
    "PAYLOAD_CANDIDATES",
    "SynthesizedImage",
    "apply_noprompt_variants",
    "composite_image",
    "full_synthesize",
    "incremental_patch",
    "place_descriptor",
    "verify_image",
]
