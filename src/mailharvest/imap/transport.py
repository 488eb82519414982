"""IMAP transport: opening authenticated client handles.

The session layer only needs ``open(config, timeout) -> handle``. The default
transport wraps :class:`imapclient.IMAPClient` with a TLS 1.2+ context backed
by ``certifi``'s CA bundle. Tests substitute an in-memory transport.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, List, Optional, Protocol

import certifi
from imapclient import IMAPClient
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .providers import EmailProvider, get_imap_settings


logger = logging.getLogger(__name__)


class ImapConfig(BaseModel):
    """Credentials and server address for one mailbox.

    Held by a session for as long as it is open so that it can be replayed
    on reconnect.
    """

    model_config = ConfigDict(frozen=True)

    email: str = Field(..., min_length=1)
    password: SecretStr
    host: str = Field(..., min_length=1)
    port: int = Field(993, ge=1, le=65535)
    use_tls: bool = True

    @classmethod
    def for_provider(
        cls,
        email: str,
        password: str,
        provider: EmailProvider | str,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> "ImapConfig":
        """Build a config from provider defaults, overriding host/port if given."""
        settings = get_imap_settings(provider)
        return cls(
            email=email,
            password=SecretStr(password),
            host=host or settings.host,
            port=port or settings.port,
            use_tls=settings.use_tls,
        )


class ImapHandle(Protocol):
    """Subset of the ``IMAPClient`` API used by mailharvest."""

    def noop(self) -> Any: ...

    def logout(self) -> Any: ...

    def list_folders(self, directory: str = "", pattern: str = "*") -> List[Any]: ...

    def select_folder(self, folder: str, readonly: bool = False) -> Any: ...

    def search(self, criteria: Any = "ALL", charset: Optional[str] = None) -> List[int]: ...

    def fetch(self, messages: Any, data: Any, modifiers: Any = None) -> Any: ...

    def unselect_folder(self) -> Any: ...


class ImapTransport(Protocol):
    """Factory for authenticated handles. May block, raise or hang."""

    def open(self, config: ImapConfig, timeout: float) -> ImapHandle: ...


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


class ImapClientTransport:
    """Opens ``IMAPClient`` connections and logs in with an app password."""

    def open(self, config: ImapConfig, timeout: float) -> IMAPClient:
        if not config.use_tls:
            logger.warning("Opening plaintext IMAP connection to %s:%s", config.host, config.port)
        client = IMAPClient(
            host=config.host,
            port=config.port,
            ssl=config.use_tls,
            ssl_context=create_ssl_context() if config.use_tls else None,
            timeout=timeout,
            use_uid=True,
        )
        try:
            client.login(config.email, config.password.get_secret_value())
        except Exception:
            try:
                client.shutdown()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error closing socket after failed login", exc_info=exc)
            raise
        return client


__all__ = [
    "ImapClientTransport",
    "ImapConfig",
    "ImapHandle",
    "ImapTransport",
    "create_ssl_context",
]
