"""CLI commands for managing mailharvest settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from mailharvest.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    SecretStore,
    Settings,
    bootstrap_settings,
    load_settings,
    password_key,
    save_settings,
)
from mailharvest.errors import MailHarvestError, format_error_for_cli
from mailharvest.imap.providers import EmailProvider


config_app = typer.Typer(help="Manage mailharvest configuration")


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
    email: Optional[str] = typer.Option(None, help="Mailbox address"),
    provider: Optional[EmailProvider] = typer.Option(None, help="Provider hint"),
    host: Optional[str] = typer.Option(None, help="Override IMAP host"),
    port: Optional[int] = typer.Option(None, help="Override IMAP port"),
    folder: Optional[str] = typer.Option(None, help="Default folder to search"),
) -> None:
    """Initialize the mailharvest settings file."""

    overrides: dict = {}
    if email:
        account = overrides.setdefault("account", {})
        account["email"] = email
        if provider:
            account["provider"] = provider.value
        if host:
            account["host"] = host
        if port:
            account["port"] = port
    if folder:
        overrides.setdefault("extraction", {})["folder"] = folder

    try:
        settings = bootstrap_settings(path=config_path, overrides=overrides)
    except MailHarvestError as exc:
        typer.echo(format_error_for_cli(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Configuration initialized at {config_path}")
    typer.echo(_summarize_settings(settings))


@config_app.command("show")
def show_config(config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config")) -> None:
    """Display effective configuration."""

    settings = load_settings(config_path)
    typer.echo(_summarize_settings(settings))


@config_app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key, e.g. extraction.folder"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config"),
) -> None:
    """Update a configuration value."""

    settings = load_settings(config_path)
    payload = settings.model_dump(mode="python")
    _assign(payload, key.split("."), value)
    try:
        updated = Settings.model_validate(payload)
    except ValueError as exc:
        typer.echo(f"❌ Invalid value for {key}: {exc}", err=True)
        raise typer.Exit(code=1)
    save_settings(updated, config_path)
    typer.echo(f"Updated {key}")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Validate configuration file for correctness."""

    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, MailHarvestError) as e:
        typer.echo(f"❌ Configuration invalid: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ Configuration valid at {config_path}")
    if settings.account:
        typer.echo(f"   Account: {settings.account.email} ({settings.account.resolved_provider.value})")
    typer.echo(f"   Folder: {settings.extraction.folder}")
    typer.echo(f"   Log level: {settings.log_level}")


@config_app.command("set-password")
def set_password(
    email: str = typer.Argument(..., help="Mailbox address"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, help="App-specific password"
    ),
    service: str = typer.Option("mailharvest", help="Keychain service name"),
) -> None:
    """Store a mailbox password in the system keychain."""

    store = SecretStore(service_name=service)
    store.set_secret(password_key(email), password)
    typer.echo(f"Password for {email} stored in keychain")


def _summarize_settings(settings: Settings) -> str:
    data = settings.model_dump(mode="json", exclude_none=True)
    return json.dumps(data, indent=2)


def _assign(payload: dict, keys: list[str], value: str) -> None:
    current = payload
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
