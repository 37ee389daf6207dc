"""
Error types for the appliance updater.

This module defines the UpdaterError base class and one subclass per failure
category of an update pass. Pipeline stages raise these errors instead of
returning ad-hoc status codes; the orchestrator decides which of them abort
the pass and which are isolated to a single subsystem.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for update failures.

    Attributes:
        error_code: Internal error code string (e.g., "version_unreadable",
            "transport_failure", "filesystem_failure").
        message: Human-readable error message.
        details: Optional structured details (step, expected vs actual, paths).

    Example:
        >>> raise UpdaterError(
        ...     error_code="filesystem_failure",
        ...     message="Failed to move working directory",
        ...     details={"step": "swap", "path": "/home/admin/.node-red"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdaterError):
    """
    Error raised for malformed input such as an unparseable version string.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class LockHeldError(UpdaterError):
    """
    Error raised when another pass already holds the run lock.

    This is not a failure of the appliance: the caller exits quietly.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a LockHeldError."""
        super().__init__(error_code="lock_held", message=message, details=details)


class VersionUnreadableError(UpdaterError):
    """
    Error raised when a persisted or remote version is missing or empty.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VersionUnreadableError."""
        super().__init__(
            error_code="version_unreadable", message=message, details=details
        )


class TransportFailureError(UpdaterError):
    """
    Error raised when fetching a version, cloning a payload or running an
    installer fails.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransportFailureError."""
        super().__init__(
            error_code="transport_failure", message=message, details=details
        )


class FilesystemFailureError(UpdaterError):
    """
    Error raised when a copy, move, delete or ownership change fails.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FilesystemFailureError."""
        super().__init__(
            error_code="filesystem_failure", message=message, details=details
        )


class PersistenceMismatchError(UpdaterError):
    """
    Error raised when a version write affects no row or reads back a
    different value than the one written.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PersistenceMismatchError."""
        super().__init__(
            error_code="persistence_mismatch", message=message, details=details
        )


class ServiceControlFailureError(UpdaterError):
    """
    Error raised when the service manager cannot stop or start a service.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceControlFailureError."""
        super().__init__(
            error_code="service_control_failure", message=message, details=details
        )


class UpdateInterruptedError(UpdaterError):
    """
    Error recorded when a termination signal aborts the primary update
    before the working directory swap.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UpdateInterruptedError."""
        super().__init__(error_code="interrupted", message=message, details=details)
