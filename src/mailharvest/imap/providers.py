"""Provider-specific IMAP settings and connection tuning.

Different webmail providers behave differently under load. Gmail answers
slowly during large searches and benefits from longer timeouts and a larger
retry budget; Yahoo is quick to respond but drops idle connections sooner,
so it gets shorter timeouts and more frequent keep-alive NOOPs. Unknown
providers fall back to a balanced profile.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EmailProvider(str, Enum):
    """Supported provider hints."""

    YAHOO = "yahoo"
    GMAIL = "gmail"
    CUSTOM = "custom"


class ProviderProfile(BaseModel):
    """Immutable timeout/retry/keep-alive bundle for one provider.

    All durations are in seconds.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Profile identifier")
    max_retries: int = Field(..., ge=1, le=10, description="Connect attempts before giving up")
    retry_delay_base: float = Field(..., ge=0, description="Fixed delay between connect attempts")
    retry_delay_max: float = Field(..., ge=0, description="Upper bound for any retry delay")
    connection_timeout: float = Field(..., gt=0, description="Handshake and socket timeout")
    operation_timeout: float = Field(..., gt=0, description="Timeout for a single IMAP command")
    idle_timeout: float = Field(
        ...,
        ge=60,
        le=600,
        description="Keep-alive interval; servers drop idle sessions after roughly 10 minutes",
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> "ProviderProfile":
        if self.retry_delay_base > self.retry_delay_max:
            raise ValueError("retry_delay_base must not exceed retry_delay_max")
        if self.operation_timeout > self.connection_timeout:
            raise ValueError("operation_timeout must not exceed connection_timeout")
        return self


class ImapServerSettings(BaseModel):
    """Host/port/TLS defaults for a provider."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(993, ge=1, le=65535)
    use_tls: bool = True


YAHOO_IMAP_DEFAULTS = ImapServerSettings(host="imap.mail.yahoo.com", port=993, use_tls=True)
GMAIL_IMAP_DEFAULTS = ImapServerSettings(host="imap.gmail.com", port=993, use_tls=True)


PROVIDER_PROFILES: Mapping[str, ProviderProfile] = MappingProxyType(
    {
        # Fast and stable, but idle connections are reaped early.
        "yahoo": ProviderProfile(
            name="yahoo",
            max_retries=3,
            retry_delay_base=2.0,
            retry_delay_max=10.0,
            connection_timeout=30.0,
            operation_timeout=20.0,
            idle_timeout=180.0,
        ),
        # Slow responses on large mailboxes: longer timeouts, more retries.
        "gmail": ProviderProfile(
            name="gmail",
            max_retries=5,
            retry_delay_base=2.0,
            retry_delay_max=30.0,
            connection_timeout=60.0,
            operation_timeout=45.0,
            idle_timeout=300.0,
        ),
        "default": ProviderProfile(
            name="default",
            max_retries=3,
            retry_delay_base=2.0,
            retry_delay_max=15.0,
            connection_timeout=40.0,
            operation_timeout=30.0,
            idle_timeout=240.0,
        ),
    }
)


def _coerce_provider(provider: Union[EmailProvider, str]) -> EmailProvider:
    if isinstance(provider, EmailProvider):
        return provider
    try:
        return EmailProvider(provider.lower())
    except ValueError:
        return EmailProvider.CUSTOM


def get_provider_profile(provider: Union[EmailProvider, str]) -> ProviderProfile:
    """Return the profile for ``provider``; unknown providers get ``default``."""
    resolved = _coerce_provider(provider)
    if resolved is EmailProvider.CUSTOM:
        return PROVIDER_PROFILES["default"]
    return PROVIDER_PROFILES[resolved.value]


def get_imap_settings(provider: Union[EmailProvider, str]) -> ImapServerSettings:
    """Return server defaults for ``provider``.

    Custom providers have no known host and default to Yahoo's settings;
    callers are expected to pass an explicit host for them.
    """
    if _coerce_provider(provider) is EmailProvider.GMAIL:
        return GMAIL_IMAP_DEFAULTS
    return YAHOO_IMAP_DEFAULTS


def detect_email_provider(email: str) -> EmailProvider:
    """Guess the provider from an address' domain."""
    _, separator, domain = email.rpartition("@")
    domain = domain.lower() if separator else ""
    if any(marker in domain for marker in ("yahoo", "ymail", "rocketmail")):
        return EmailProvider.YAHOO
    if "gmail" in domain or "googlemail" in domain:
        return EmailProvider.GMAIL
    return EmailProvider.CUSTOM


__all__ = [
    "EmailProvider",
    "GMAIL_IMAP_DEFAULTS",
    "ImapServerSettings",
    "PROVIDER_PROFILES",
    "ProviderProfile",
    "YAHOO_IMAP_DEFAULTS",
    "detect_email_provider",
    "get_imap_settings",
    "get_provider_profile",
]
