"""Per-build secret generation and in-memory handling.

Secrets come from an external high-entropy passphrase generator that must
print the secret on standard output. The value is held in a mutable buffer
so it can be overwritten once the build no longer needs it.
"""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timezone

from goldenimage.errors import GenerationError

logger = logging.getLogger(__name__)


class SecretHandle:
    """Zeroable holder for one plaintext secret.

    The plaintext lives in a bytearray owned by the handle. ``zero()``
    overwrites it in place; any later ``reveal()`` fails. The handle never
    renders its value in repr/str, so it is safe to pass to loggers.

    Note that ``reveal()`` necessarily creates an immutable str copy; callers
    should keep such copies short-lived.
    """

    __slots__ = ("_buffer", "_disposed", "generated_at", "generation_id", "role")

    def __init__(
        self,
        role: str,
        value: bytes | bytearray,
        generation_id: str,
        generated_at: datetime | None = None,
    ) -> None:
        self.role = role
        self.generation_id = generation_id
        self.generated_at = generated_at or datetime.now(timezone.utc)
        self._buffer = bytearray(value)
        self._disposed = False

    @property
    def disposed(self) -> bool:
        """Whether the secret has been zeroed."""
        return self._disposed

    def reveal(self) -> str:
        """Return the plaintext value.

        Raises:
            GenerationError: If the handle was already disposed.
        """
        if self._disposed:
            raise GenerationError(
                f"Secret for role '{self.role}' was already disposed",
                code="secret_disposed",
            )
        return self._buffer.decode("utf-8")

    def matches(self, other: SecretHandle) -> bool:
        """Compare two secrets without revealing either."""
        return not self._disposed and self._buffer == other._buffer

    def zero(self) -> None:
        """Overwrite and release the plaintext. Idempotent."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer.clear()
        self._disposed = True

    def __enter__(self) -> SecretHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.zero()

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "***"
        return f"<SecretHandle(role='{self.role}', value={state})>"

    __str__ = __repr__


def generate_secret(
    role: str,
    command: list[str],
    generation_id: str,
    timeout: int | None = None,
) -> SecretHandle:
    """Run the passphrase generator and capture its stdout as a secret.

    Only the first non-empty line of stdout is used; stderr is used for
    diagnostics and never contains the secret.

    Args:
        role: Role the secret is generated for.
        command: Generator command (e.g. ['pwgen', '-s', '24', '1']).
        generation_id: Identifier of the generation event.
        timeout: Timeout in seconds.

    Returns:
        SecretHandle wrapping the generated value.

    Raises:
        GenerationError: If the generator is missing, fails, times out,
            prints nothing, or prints something that is not UTF-8 text.
    """
    if not command:
        raise GenerationError(
            "No passphrase generator configured", code="generator_unavailable"
        )

    logger.debug("Generating secret for role %s via %s", role, command[0])
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise GenerationError(
            f"Passphrase generator not found: {command[0]}",
            code="generator_unavailable",
        ) from e
    except subprocess.TimeoutExpired as e:
        raise GenerationError(
            f"Passphrase generator timed out after {timeout} seconds",
            code="generator_timeout",
        ) from e
    except OSError as e:
        raise GenerationError(
            f"Failed to run passphrase generator: {e}",
            code="generator_unavailable",
        ) from e

    if result.returncode != 0:
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        raise GenerationError(
            f"Passphrase generator exited with code {result.returncode}: {stderr}",
            code="generator_failed",
        )

    value = b""
    for line in (result.stdout or b"").splitlines():
        if line.strip():
            value = line.strip()
            break
    if not value:
        raise GenerationError(
            "Passphrase generator returned empty output", code="generator_empty"
        )
    try:
        value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise GenerationError(
            "Passphrase generator output is not valid UTF-8",
            code="generator_invalid_output",
        ) from e

    return SecretHandle(role=role, value=value, generation_id=generation_id)


__all__ = ["SecretHandle", "generate_secret"]
