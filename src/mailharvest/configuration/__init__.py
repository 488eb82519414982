"""Configuration loading utilities for mailharvest."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    AccountSettings,
    ExtractionSettings,
    SecretStore,
    SessionSettings,
    Settings,
    bootstrap_settings,
    load_settings,
    resolve_password,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "AccountSettings",
    "ExtractionSettings",
    "SecretStore",
    "SessionSettings",
    "Settings",
    "bootstrap_settings",
    "load_settings",
    "resolve_password",
    "save_settings",
]
