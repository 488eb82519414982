"""Failure classification and recovery strategies for IMAP connections.

Every raw failure seen by the IMAP layer is mapped onto one of six
:class:`ErrorType` categories by inspecting its message text. Each category
has a recovery strategy (retry or not, how long to wait, how many attempts,
and what to tell the user).

Classification checks categories in a fixed priority order because server
responses often contain several indicator words at once, e.g.
``"Connection closed: AUTHENTICATIONFAILED"`` is an authentication failure
even though it also mentions the connection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Pattern, Tuple, Union


class ErrorType(str, Enum):
    """Closed set of failure categories."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RecoveryStrategy:
    """How to react to a classified failure.

    Attributes:
        should_retry: Whether another attempt is worthwhile
        delay: Seconds to wait before the next attempt
        max_attempts: Attempt budget for this category
        user_message: Short description suitable for display
    """

    should_retry: bool
    delay: float
    max_attempts: int
    user_message: str

    @property
    def delay_ms(self) -> int:
        return int(self.delay * 1000)


# Checked in order; first match wins.
_CLASSIFICATION_RULES: Tuple[Tuple[ErrorType, Pattern[str]], ...] = (
    (ErrorType.AUTHENTICATION, re.compile(r"auth|credential|password|login|authenticationfailed")),
    (ErrorType.RATE_LIMIT, re.compile(r"rate limit|too many|quota|bandwidth|overquota")),
    (ErrorType.TIMEOUT, re.compile(r"timeout|timed out")),
    (ErrorType.NETWORK, re.compile(r"network|connection|econnrefused|enotfound|socket")),
    (ErrorType.SERVER_ERROR, re.compile(r"server error|internal error|\b5\d\d\b|unavailable")),
)

_USER_MESSAGES = {
    ErrorType.AUTHENTICATION: (
        "Authentication failed. Check the e-mail address and app-specific password."
    ),
    ErrorType.RATE_LIMIT: "The provider is rate limiting this account. Retrying in one minute.",
    ErrorType.NETWORK: "Network connection error, retrying...",
    ErrorType.TIMEOUT: "The connection timed out, retrying...",
    ErrorType.SERVER_ERROR: "The mail server reported an error, retrying...",
    ErrorType.UNKNOWN: "Unexpected error, retrying...",
}


class ErrorClassifier:
    """Categorizes IMAP failures and suggests recovery strategies."""

    def classify(self, error: Union[BaseException, str, None]) -> ErrorType:
        """Map an exception (or its message) to an :class:`ErrorType`.

        Never raises; anything unrecognised, including an empty message, is
        :attr:`ErrorType.UNKNOWN`.
        """
        message = _message_of(error).lower()
        for error_type, pattern in _CLASSIFICATION_RULES:
            if pattern.search(message):
                return error_type
        return ErrorType.UNKNOWN

    def get_recovery_strategy(self, error_type: ErrorType, attempt: int) -> RecoveryStrategy:
        """Return the recovery strategy for ``error_type`` at a 1-based ``attempt``.

        Network and timeout delays grow exponentially with the attempt
        number until they reach their cap, then stay flat.
        """
        message = _USER_MESSAGES[error_type]
        if error_type is ErrorType.AUTHENTICATION:
            return RecoveryStrategy(should_retry=False, delay=0.0, max_attempts=0, user_message=message)
        if error_type is ErrorType.RATE_LIMIT:
            return RecoveryStrategy(should_retry=True, delay=60.0, max_attempts=3, user_message=message)
        if error_type is ErrorType.NETWORK:
            delay = min(2.0 * (2**attempt), 30.0)
            return RecoveryStrategy(should_retry=True, delay=delay, max_attempts=5, user_message=message)
        if error_type is ErrorType.TIMEOUT:
            delay = min(3.0 * (2**attempt), 60.0)
            return RecoveryStrategy(should_retry=True, delay=delay, max_attempts=3, user_message=message)
        if error_type is ErrorType.SERVER_ERROR:
            return RecoveryStrategy(should_retry=True, delay=5.0, max_attempts=3, user_message=message)
        return RecoveryStrategy(should_retry=True, delay=3.0, max_attempts=2, user_message=message)

    def strategy_for(self, error: Union[BaseException, str, None], attempt: int) -> RecoveryStrategy:
        """Classify ``error`` and return its strategy in one step."""
        return self.get_recovery_strategy(self.classify(error), attempt)


def _message_of(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    try:
        return str(error)
    except Exception:  # noqa: BLE001 - broken __str__ must not break classification
        return ""


__all__ = ["ErrorClassifier", "ErrorType", "RecoveryStrategy"]
