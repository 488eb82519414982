"""User-friendly error messages for mailharvest.

Maps error codes to short human-readable messages and recovery suggestions
so CLI users never see raw IMAP protocol errors.

Privacy Note:
- Error messages NEVER include credentials
- Message bodies are never echoed back
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Connection errors
    "IMAP_CONNECTION_ERROR": "We couldn't connect to the mail server.",
    "NOT_CONNECTED": "There is no open mailbox connection.",
    "OPERATION_TIMEOUT": "The mail server took too long to respond.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "MISSING_CREDENTIALS": "No password is available for this mailbox.",
    # Processing errors
    "EXTRACTION_ERROR": "Couldn't extract data from the message.",
    "INVALID_PATTERN": "The extraction pattern is not a valid regular expression.",
    # Generic
    "MAILHARVEST_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "IMAP_CONNECTION_ERROR": "Check your network connection and that IMAP access is enabled.",
    "NOT_CONNECTED": "Connect first: mailharvest imap check --email <address>",
    "OPERATION_TIMEOUT": "Retry later or narrow the search filter.",
    "CONFIGURATION_ERROR": "Check config: mailharvest config show",
    "MISSING_CREDENTIALS": "Store one with: mailharvest config set-password <address>",
    "EXTRACTION_ERROR": "Inspect the message and adjust the pattern.",
    "INVALID_PATTERN": "Test the pattern in a regex tool before running an extraction.",
    "MAILHARVEST_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Retry the command. Report if the issue continues.",
}


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error or error code."""
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error or error code."""
    return RECOVERY_SUGGESTIONS.get(_error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message.

    Args:
        error: The error to format

    Returns:
        Complete error message with recovery suggestion
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output, hiding sensitive details."""
    code = getattr(error, "code", "ERROR")
    lines = [
        f"Error [{code}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]

    if getattr(error, "details", None):
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            if key not in ("password", "body", "token"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
]
