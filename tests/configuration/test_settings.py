"""Tests for mailharvest configuration settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict

import pytest

from mailharvest.configuration.settings import (
    PASSWORD_ENV_VAR,
    SecretStore,
    Settings,
    bootstrap_settings,
    load_settings,
    password_key,
    resolve_password,
    save_settings,
)
from mailharvest.errors import ConfigurationError, MissingCredentialsError
from mailharvest.imap.providers import EmailProvider


class InMemorySecretStore(SecretStore):
    def __init__(self) -> None:
        super().__init__(service_name="test", keyring_module=None)
        self.storage: Dict[str, str] = {}

    def set_secret(self, key: str, value: str) -> None:  # type: ignore[override]
        self.storage[key] = value

    def get_secret(self, key: str) -> str | None:  # type: ignore[override]
        return self.storage.get(key)

    def delete_secret(self, key: str) -> None:  # type: ignore[override]
        self.storage.pop(key, None)


class FakeKeyring:
    """Module-shaped stand-in for ``keyring``."""

    class errors:
        class PasswordDeleteError(Exception):
            pass

    def __init__(self) -> None:
        self.storage: Dict[tuple, str] = {}

    def set_password(self, service: str, key: str, value: str) -> None:
        self.storage[(service, key)] = value

    def get_password(self, service: str, key: str) -> str | None:
        return self.storage.get((service, key))

    def delete_password(self, service: str, key: str) -> None:
        if (service, key) not in self.storage:
            raise self.errors.PasswordDeleteError(key)
        del self.storage[(service, key)]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        PASSWORD_ENV_VAR,
        "MAILHARVEST_EMAIL",
        "MAILHARVEST_PROVIDER",
        "MAILHARVEST_IMAP_HOST",
        "MAILHARVEST_IMAP_PORT",
        "MAILHARVEST_IMAP_TLS",
        "MAILHARVEST_HEALTH_CHECK_INTERVAL",
        "MAILHARVEST_IDLE_TIMEOUT",
        "MAILHARVEST_FOLDER",
        "MAILHARVEST_BATCH_SIZE",
        "MAILHARVEST_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_bootstrap_creates_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = bootstrap_settings(path=config_path)

    assert config_path.exists()
    data = json.loads(config_path.read_text())
    assert "account" not in data
    assert data["extraction"]["folder"] == "INBOX"
    assert data["sessions"]["health_check_interval_seconds"] == 120.0
    assert settings.log_level == "WARNING"


def test_bootstrap_without_persist_writes_nothing(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"

    bootstrap_settings(path=config_path, persist=False)

    assert not config_path.exists()


def test_bootstrap_merges_overrides(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    bootstrap_settings(
        path=config_path,
        overrides={"account": {"email": "me@gmail.com"}, "extraction": {"folder": "Deals"}},
    )

    loaded = load_settings(config_path)
    assert loaded.account is not None
    assert loaded.account.email == "me@gmail.com"
    assert loaded.account.resolved_provider is EmailProvider.GMAIL
    assert loaded.extraction.folder == "Deals"
    assert loaded.extraction.fetch_batch_size == 50


def test_environment_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MAILHARVEST_EMAIL", "me@example.org")
    monkeypatch.setenv("MAILHARVEST_PROVIDER", "custom")
    monkeypatch.setenv("MAILHARVEST_IMAP_HOST", "mail.example.org")
    monkeypatch.setenv("MAILHARVEST_IMAP_PORT", "1993")
    monkeypatch.setenv("MAILHARVEST_IMAP_TLS", "false")
    monkeypatch.setenv("MAILHARVEST_IDLE_TIMEOUT", "90")
    monkeypatch.setenv("MAILHARVEST_BATCH_SIZE", "10")
    monkeypatch.setenv("MAILHARVEST_LOG_LEVEL", "debug")

    settings = bootstrap_settings(path=tmp_path / "config.json", persist=False)

    assert settings.account.email == "me@example.org"
    assert settings.account.provider is EmailProvider.CUSTOM
    assert settings.account.host == "mail.example.org"
    assert settings.account.port == 1993
    assert settings.account.use_tls is False
    assert settings.sessions.idle_timeout_seconds == 90.0
    assert settings.extraction.fetch_batch_size == 10
    assert settings.log_level == "DEBUG"


def test_bad_environment_value_is_a_configuration_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MAILHARVEST_BATCH_SIZE", "lots")

    with pytest.raises(ConfigurationError):
        bootstrap_settings(path=tmp_path / "config.json", persist=False)


def test_invalid_override_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        bootstrap_settings(
            path=tmp_path / "config.json", overrides={"account": {"email": "no-at-sign"}}
        )


def test_load_settings_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = Settings.model_validate(
        {
            "account": {"email": "me@yahoo.com", "provider": "yahoo"},
            "extraction": {"folder": "Receipts", "strip_html": True},
            "log_level": "info",
        }
    )
    save_settings(settings, config_path)

    loaded = load_settings(config_path)
    assert loaded == settings
    assert loaded.log_level == "INFO"
    assert "password" not in config_path.read_text()


def test_load_settings_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_settings(broken)

    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"log_level": "LOUD"}))
    with pytest.raises(ConfigurationError):
        load_settings(invalid)


def test_resolve_password_order(monkeypatch) -> None:
    store = InMemorySecretStore()
    store.set_secret(password_key("Me@Yahoo.com"), "from-keychain")

    assert resolve_password("me@yahoo.com", secret_store=store) == "from-keychain"

    monkeypatch.setenv(PASSWORD_ENV_VAR, "from-env")
    assert resolve_password("me@yahoo.com", secret_store=store) == "from-env"
    assert resolve_password("me@yahoo.com", secret_store=store, explicit="given") == "given"


def test_resolve_password_missing() -> None:
    with pytest.raises(MissingCredentialsError):
        resolve_password("me@yahoo.com", secret_store=InMemorySecretStore())


def test_secret_store_uses_keyring_module() -> None:
    backend = FakeKeyring()
    store = SecretStore(service_name="mailharvest-test", keyring_module=backend)

    store.set_secret("imap:me@yahoo.com", "secret")
    assert store.get_secret("imap:me@yahoo.com") == "secret"
    assert backend.storage == {("mailharvest-test", "imap:me@yahoo.com"): "secret"}

    store.delete_secret("imap:me@yahoo.com")
    store.delete_secret("imap:me@yahoo.com")
    assert store.get_secret("imap:me@yahoo.com") is None


def test_secret_store_propagates_other_errors() -> None:
    class BrokenKeyring(FakeKeyring):
        def delete_password(self, service: str, key: str) -> None:
            raise RuntimeError("keychain locked")

    with pytest.raises(RuntimeError):
        SecretStore(keyring_module=BrokenKeyring()).delete_secret("imap:x")
