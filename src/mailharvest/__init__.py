"""Regex extraction from IMAP mailboxes over resilient connections."""

__version__ = "0.1.0"
