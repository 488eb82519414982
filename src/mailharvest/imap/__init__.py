"""IMAP connection management: sessions, providers, classification and fetching."""

from .error_classifier import ErrorClassifier, ErrorType, RecoveryStrategy
from .fetcher import FetchFilter, MailboxFetcher, RawEmail, build_search_criteria, filter_emails
from .providers import (
    PROVIDER_PROFILES,
    EmailProvider,
    ProviderProfile,
    detect_email_provider,
    get_imap_settings,
    get_provider_profile,
)
from .registry import SessionRegistry, SweepReport
from .session import ConnectionMetrics, ConnectionResult, ConnectionState, ImapSession
from .timeouts import with_timeout
from .transport import ImapClientTransport, ImapConfig, ImapHandle, ImapTransport

__all__ = [
    "ConnectionMetrics",
    "ConnectionResult",
    "ConnectionState",
    "EmailProvider",
    "ErrorClassifier",
    "ErrorType",
    "FetchFilter",
    "ImapClientTransport",
    "ImapConfig",
    "ImapHandle",
    "ImapSession",
    "ImapTransport",
    "MailboxFetcher",
    "PROVIDER_PROFILES",
    "ProviderProfile",
    "RawEmail",
    "RecoveryStrategy",
    "SessionRegistry",
    "SweepReport",
    "build_search_criteria",
    "detect_email_provider",
    "filter_emails",
    "get_imap_settings",
    "get_provider_profile",
    "with_timeout",
]
