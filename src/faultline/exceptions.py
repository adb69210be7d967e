"""Centralized exception hierarchy for the faultline package.

All domain-specific exceptions inherit from ``FaultlineError`` so
callers can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations


class FaultlineError(Exception):
    """Base exception for all faultline errors."""


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class InputValidationError(FaultlineError):
    """Raised when a required input is missing or malformed.

    These are the caller's fault and are never retried.
    """


class ConflictError(FaultlineError):
    """Raised when a workload name is already in use."""


class NotFoundError(FaultlineError):
    """Raised when a workload or build descriptor does not exist."""


# ---------------------------------------------------------------------------
# External tool errors
# ---------------------------------------------------------------------------


class ExternalToolError(FaultlineError):
    """Raised when a clone, build, or container runtime call fails.

    Attributes:
        tool: Name of the external tool (``docker``, ``git``...).
        returncode: Process exit status, if the tool ran at all.
        stderr: Captured error output, trimmed.
    """

    def __init__(
        self,
        message: str,
        *,
        tool: str = "",
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class ExternalTimeoutError(ExternalToolError, TimeoutError):
    """Raised when a clone or build exceeds its time budget."""


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


class SmokeTestError(FaultlineError):
    """Raised when a freshly deployed workload fails its smoke test."""
