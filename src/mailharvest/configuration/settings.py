"""Typed settings for mailharvest.

User configuration lives in a JSON file validated by Pydantic models so the
CLI and the IMAP layer can rely on typed values. Mailbox passwords are never
written to that file; they are kept in the system keychain through
:class:`SecretStore` or supplied through the environment.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from pydantic import BaseModel, Field, ValidationError, field_validator

from mailharvest.errors import ConfigurationError, MissingCredentialsError
from mailharvest.imap.providers import EmailProvider, detect_email_provider


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".mailharvest" / "config.json"
DEFAULT_SECRETS_SERVICE = "mailharvest"
PASSWORD_ENV_VAR = "MAILHARVEST_IMAP_PASSWORD"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class AccountSettings(BaseModel):
    """The mailbox to connect to."""

    email: str = Field(..., min_length=3, description="Mailbox address, also the login name")
    provider: Optional[EmailProvider] = Field(
        default=None, description="Provider hint; detected from the address when omitted"
    )
    host: Optional[str] = Field(default=None, description="Override IMAP host")
    port: int = Field(993, ge=1, le=65535)
    use_tls: bool = Field(True, description="Connect over implicit TLS")

    @field_validator("email")
    def _validate_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.strip()

    @property
    def resolved_provider(self) -> EmailProvider:
        return self.provider or detect_email_provider(self.email)


class SessionSettings(BaseModel):
    """Session registry maintenance intervals, in seconds."""

    health_check_interval_seconds: float = Field(120.0, gt=0)
    idle_timeout_seconds: float = Field(600.0, gt=0)


class ExtractionSettings(BaseModel):
    folder: str = Field("INBOX", min_length=1)
    fetch_batch_size: int = Field(50, ge=1, le=1000)
    strip_html: bool = False


class Settings(BaseModel):
    """Root configuration state."""

    account: Optional[AccountSettings] = None
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    log_level: str = Field("WARNING", description="Root log level for the CLI")

    @field_validator("log_level")
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(sorted(_LOG_LEVELS))}")
        return level


@dataclass
class SecretStore:
    """Keyring abstraction for mailbox passwords."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except Exception as exc:
            errors = getattr(self.keyring_module, "errors", None)
            password_error = getattr(errors, "PasswordDeleteError", None)
            if password_error and isinstance(exc, password_error):
                return
            raise


def password_key(email: str) -> str:
    return f"imap:{email.lower()}"


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk.

    Raises:
        FileNotFoundError: no settings file at ``path``
        ConfigurationError: the file is not valid JSON or fails validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationError(
            f"Invalid configuration: {exc}", details={"path": str(path)}
        ) from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    payload = settings.model_dump(mode="json", exclude_none=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
    persist: bool = True,
) -> Settings:
    """Create or load settings, then apply explicit and environment overrides.

    Overrides are resolved once here so the rest of the program only ever sees
    a validated :class:`Settings`.
    """
    settings = load_settings(path) if path.exists() else Settings()

    merged = settings.model_dump(mode="python")
    merged = _apply_overrides(merged, overrides or {})
    merged = _apply_env_overrides(merged)

    try:
        resolved = Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    if persist:
        save_settings(resolved, path)
    return resolved


def resolve_password(
    email: str,
    *,
    secret_store: Optional[SecretStore] = None,
    explicit: Optional[str] = None,
) -> str:
    """Find the password for ``email``.

    Checked in order: ``explicit``, the ``MAILHARVEST_IMAP_PASSWORD``
    environment variable, then the keychain.

    Raises:
        MissingCredentialsError: no source had a password
    """
    if explicit:
        return explicit
    from_env = os.getenv(PASSWORD_ENV_VAR)
    if from_env:
        return from_env
    store = secret_store or SecretStore()
    stored = store.get_secret(password_key(email))
    if stored:
        return stored
    raise MissingCredentialsError(
        f"No password found for {email}", details={"email": email}
    )


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _apply_overrides(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    if os.getenv("MAILHARVEST_EMAIL"):
        account = data.get("account") or {}
        data["account"] = account
        _set_env_override(account, "email", "MAILHARVEST_EMAIL")
    account = data.get("account")
    if account is not None:
        _set_env_override(account, "provider", "MAILHARVEST_PROVIDER")
        _set_env_override(account, "host", "MAILHARVEST_IMAP_HOST")
        _set_env_override(account, "port", "MAILHARVEST_IMAP_PORT", cast_int=True)
        _set_env_override(account, "use_tls", "MAILHARVEST_IMAP_TLS", cast_bool=True)

    sessions = data.setdefault("sessions", {})
    _set_env_override(
        sessions, "health_check_interval_seconds", "MAILHARVEST_HEALTH_CHECK_INTERVAL", cast_float=True
    )
    _set_env_override(sessions, "idle_timeout_seconds", "MAILHARVEST_IDLE_TIMEOUT", cast_float=True)

    extraction = data.setdefault("extraction", {})
    _set_env_override(extraction, "folder", "MAILHARVEST_FOLDER")
    _set_env_override(extraction, "fetch_batch_size", "MAILHARVEST_BATCH_SIZE", cast_int=True)

    _set_env_override(data, "log_level", "MAILHARVEST_LOG_LEVEL")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    try:
        if cast_bool:
            mapping[key] = raw.lower() in {"1", "true", "yes"}
        elif cast_int:
            mapping[key] = int(raw)
        elif cast_float:
            mapping[key] = float(raw)
        else:
            mapping[key] = raw
    except ValueError as exc:
        raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}") from exc


__all__ = [
    "AccountSettings",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_SECRETS_SERVICE",
    "ExtractionSettings",
    "PASSWORD_ENV_VAR",
    "SecretStore",
    "SessionSettings",
    "Settings",
    "bootstrap_settings",
    "load_settings",
    "password_key",
    "resolve_password",
    "save_settings",
]
