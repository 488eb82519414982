"""Tests for the error hierarchy and user-facing messages."""

from __future__ import annotations

import pytest

from mailharvest.errors import (
    ConfigurationError,
    ImapConnectionError,
    InvalidPatternError,
    MailHarvestError,
    MissingCredentialsError,
    NotConnectedError,
    OperationTimeoutError,
    format_error_for_cli,
    format_error_for_user,
    is_recoverable,
)


@pytest.mark.parametrize(
    ("error", "recoverable"),
    [
        (ImapConnectionError(), True),
        (OperationTimeoutError(timeout=3), True),
        (MissingCredentialsError(), True),
        (NotConnectedError(), False),
        (InvalidPatternError(), False),
        (ValueError("plain"), False),
    ],
)
def test_is_recoverable(error, recoverable):
    assert is_recoverable(error) is recoverable


def test_default_and_custom_messages():
    assert str(NotConnectedError()) == "Not connected. Call connect() first."
    assert str(ImapConnectionError("socket closed")) == "socket closed"
    assert isinstance(NotConnectedError(), ImapConnectionError)
    assert isinstance(MissingCredentialsError(), ConfigurationError)


def test_to_dict():
    error = OperationTimeoutError("NOOP timeout after 5s", timeout=5)

    assert error.to_dict() == {
        "code": "OPERATION_TIMEOUT",
        "message": "NOOP timeout after 5s",
        "user_message": "The mail server took too long to respond.",
        "recoverable": True,
        "details": {"timeout_seconds": 5},
    }


def test_user_message_override():
    error = MailHarvestError("internal", user_message="Try again later.")

    assert error.user_message == "Try again later."


def test_format_error_for_user():
    text = format_error_for_user(MissingCredentialsError())

    assert text.startswith("No password is available for this mailbox.")
    assert "Suggestion: Store one with: mailharvest config set-password" in text


def test_format_error_for_cli_hides_sensitive_details():
    error = ConfigurationError(details={"path": "/tmp/c.json", "password": "hunter2"})

    text = format_error_for_cli(error)

    assert text.startswith("Error [CONFIGURATION_ERROR]:")
    assert "path: /tmp/c.json" in text
    assert "hunter2" not in text


def test_unknown_errors_get_generic_message():
    text = format_error_for_cli(KeyError("x"))

    assert "Error [ERROR]: Something went wrong." in text
