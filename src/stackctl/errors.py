"""Error taxonomy shared by the update and backup workflows.

Every failure surfaced to callers derives from :class:`StackctlError` so the
CLI can map a whole family to an exit code. Component adapters do not raise
for recoverable problems; they report them through
:class:`stackctl.components.base.ComponentResult` instead.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from .exit_codes import ExitCode

if TYPE_CHECKING:
    from .health import HealthReport


class StackctlError(RuntimeError):
    """Base class for stackctl failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class NotFoundError(StackctlError):
    """Raised when a target, snapshot, archive or remote object is missing."""

    exit_code = ExitCode.ENVIRONMENT


class StackIOError(StackctlError):
    """Raised when a filesystem read or write fails."""


class CryptoError(StackctlError):
    """Raised for missing passwords, wrong passwords and corrupted ciphertext."""


class ValidationError(StackctlError):
    """Raised when manifest validation fails or input is malformed."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        """Store *message* plus the individual validation *errors*."""
        super().__init__(message)
        self.errors: list[str] = list(errors or [])


class HealthCheckError(StackctlError):
    """Raised when a restarted target failed health evaluation and was rolled back."""

    exit_code = ExitCode.ROLLED_BACK

    def __init__(self, message: str, report: HealthReport | None = None) -> None:
        """Store *message* and the failing health *report*."""
        super().__init__(message)
        self.report = report


class ExternalToolError(StackctlError):
    """Raised when a container runtime, database or archive command fails."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        """Store the failing *command*, its exit status and captured output."""
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output


class PolicyError(StackctlError):
    """Raised for unknown backup types, bad retention values or invalid transitions."""

    exit_code = ExitCode.VALIDATION


__all__ = [
    "CryptoError",
    "ExternalToolError",
    "HealthCheckError",
    "NotFoundError",
    "PolicyError",
    "StackIOError",
    "StackctlError",
    "ValidationError",
]
