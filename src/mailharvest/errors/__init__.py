"""Centralized error definitions for mailharvest.

Usage:
    from mailharvest.errors import MailHarvestError, format_error_for_cli

    try:
        folders = await session.list_folders()
    except MailHarvestError as e:
        print(format_error_for_cli(e))

Connection *failures* inside the IMAP layer are not raised: they are
classified into :class:`mailharvest.imap.error_classifier.ErrorType` and
returned as structured results. The exceptions below cover programmer
errors, operations on sessions that cannot be recovered, and timeouts.
"""

from __future__ import annotations

from mailharvest.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MailHarvestError(Exception):
    """Base exception for all mailharvest errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MAILHARVEST_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Connection Errors
# =============================================================================


class ImapConnectionError(MailHarvestError):
    """The mailbox connection could not be established or was lost."""

    code = "IMAP_CONNECTION_ERROR"
    default_message = "IMAP connection failed"


class NotConnectedError(ImapConnectionError):
    """An operation was attempted on a session that was never connected."""

    code = "NOT_CONNECTED"
    default_message = "Not connected. Call connect() first."
    recoverable = False


class OperationTimeoutError(MailHarvestError):
    """An IMAP operation exceeded its time budget.

    The message always mentions "timeout" so the error classifier maps it to
    the timeout category.
    """

    code = "OPERATION_TIMEOUT"
    default_message = "Operation timeout"

    def __init__(self, message: str | None = None, *, timeout: float | None = None) -> None:
        details = {"timeout_seconds": timeout} if timeout is not None else None
        super().__init__(message, details=details)
        self.timeout = timeout


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MailHarvestError):
    """Base error for configuration issues."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


class MissingCredentialsError(ConfigurationError):
    """No password could be resolved for a mailbox."""

    code = "MISSING_CREDENTIALS"
    default_message = "Missing mailbox password"


# =============================================================================
# Processing Errors
# =============================================================================


class ExtractionError(MailHarvestError):
    """Applying an extraction pattern to a message failed."""

    code = "EXTRACTION_ERROR"
    default_message = "Extraction failed"


class InvalidPatternError(ExtractionError):
    """The extraction pattern does not compile."""

    code = "INVALID_PATTERN"
    default_message = "Invalid extraction pattern"
    recoverable = False


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable."""
    if isinstance(error, MailHarvestError):
        return error.recoverable
    return False


__all__ = [
    "MailHarvestError",
    "ImapConnectionError",
    "NotConnectedError",
    "OperationTimeoutError",
    "ConfigurationError",
    "MissingCredentialsError",
    "ExtractionError",
    "InvalidPatternError",
    "is_recoverable",
    "format_error_for_cli",
    "format_error_for_user",
]
