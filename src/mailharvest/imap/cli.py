"""CLI commands for checking mailboxes and running extractions."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from mailharvest.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    bootstrap_settings,
    resolve_password,
)
from mailharvest.errors import MailHarvestError, format_error_for_cli
from mailharvest.pipeline.batch import ProgressInfo
from mailharvest.pipeline.extraction import ExtractionPattern, run_extraction

from .error_classifier import ErrorClassifier, ErrorType
from .fetcher import FetchFilter, MailboxFetcher
from .providers import PROVIDER_PROFILES, EmailProvider, detect_email_provider
from .session import ImapSession
from .transport import ImapClientTransport, ImapConfig

console = Console()
error_console = Console(stderr=True)

imap_app = typer.Typer(help="IMAP mailbox commands")


def _load_settings(config_path: Path) -> Settings:
    try:
        return bootstrap_settings(path=config_path, persist=False)
    except MailHarvestError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)


def _build_config(
    settings: Settings,
    *,
    email: Optional[str],
    password: Optional[str],
    provider: Optional[EmailProvider],
    host: Optional[str],
    port: Optional[int],
) -> Tuple[ImapConfig, EmailProvider]:
    account = settings.account
    email = email or (account.email if account else None)
    if not email:
        error_console.print("Error: no mailbox configured. Pass --email or run 'config init'.")
        raise typer.Exit(1)

    if provider is None:
        if account and account.email == email and account.provider:
            provider = account.provider
        else:
            provider = detect_email_provider(email)
    if account and account.email == email:
        host = host or account.host
        port = port or account.port

    if provider is EmailProvider.CUSTOM and not host:
        error_console.print(f"Error: cannot infer the IMAP host for {email}. Use --host.")
        raise typer.Exit(1)

    try:
        secret = resolve_password(email, explicit=password)
    except MailHarvestError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)
    return ImapConfig.for_provider(email, secret, provider, host=host, port=port), provider


async def _open_session(config: ImapConfig, provider: EmailProvider) -> ImapSession:
    session = ImapSession(provider=provider, transport=ImapClientTransport())
    result = await session.connect(config)
    if not result.success:
        error_console.print(f"[red]✗[/red] {result.error}")
        if result.recovery and not result.recovery.should_retry:
            error_console.print("Re-enter the password with 'mailharvest config set-password'.")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Connected to {config.host} (attempt {result.attempts})")
    return session


def _filter_from(
    settings: Settings,
    folder: Optional[str],
    since: Optional[datetime],
    before: Optional[datetime],
    sender: Optional[str],
    subject: Optional[str],
) -> FetchFilter:
    return FetchFilter(
        folder=folder or settings.extraction.folder,
        date_from=since.date() if since else None,
        date_to=before.date() if before else None,
        sender=sender,
        subject=subject,
    )


@imap_app.command("check")
def check_connection(
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Mailbox address"),
    password: Optional[str] = typer.Option(None, "--password", help="App-specific password"),
    provider: Optional[EmailProvider] = typer.Option(None, "--provider", help="Provider hint"),
    host: Optional[str] = typer.Option(None, "--host", help="IMAP host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="IMAP port"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Connect to the mailbox and list its folders."""
    settings = _load_settings(config_path)
    config, resolved = _build_config(
        settings, email=email, password=password, provider=provider, host=host, port=port
    )

    async def run() -> None:
        session = await _open_session(config, resolved)
        try:
            folders = await session.list_folders()
        finally:
            await session.disconnect()

        table = Table(title=f"Folders for {config.email}")
        table.add_column("Folder", style="cyan")
        for name in folders:
            table.add_row(name)
        console.print(table)

    try:
        asyncio.run(run())
    except MailHarvestError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)


@imap_app.command("count")
def count_messages(
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Mailbox address"),
    password: Optional[str] = typer.Option(None, "--password", help="App-specific password"),
    provider: Optional[EmailProvider] = typer.Option(None, "--provider", help="Provider hint"),
    host: Optional[str] = typer.Option(None, "--host", help="IMAP host"),
    folder: Optional[str] = typer.Option(None, "--folder", "-f", help="Folder to search"),
    since: Optional[datetime] = typer.Option(None, "--since", formats=["%Y-%m-%d"]),
    before: Optional[datetime] = typer.Option(None, "--before", formats=["%Y-%m-%d"]),
    sender: Optional[str] = typer.Option(None, "--from", help="Sender substring"),
    subject: Optional[str] = typer.Option(None, "--subject", help="Subject substring"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Count messages matching a filter."""
    settings = _load_settings(config_path)
    config, resolved = _build_config(
        settings, email=email, password=password, provider=provider, host=host, port=None
    )
    fetch_filter = _filter_from(settings, folder, since, before, sender, subject)

    async def run() -> int:
        session = await _open_session(config, resolved)
        try:
            return await MailboxFetcher(session).count(fetch_filter)
        finally:
            await session.disconnect()

    try:
        total = asyncio.run(run())
    except MailHarvestError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)
    console.print(f"{total} matching messages in {fetch_filter.folder}")


@imap_app.command("extract")
def extract(
    pattern: str = typer.Option(..., "--pattern", help="Regular expression to extract"),
    name: str = typer.Option("match", "--name", help="Pattern name"),
    flags: str = typer.Option("g", "--flags", help="Regex flags from 'gimsx'"),
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Mailbox address"),
    password: Optional[str] = typer.Option(None, "--password", help="App-specific password"),
    provider: Optional[EmailProvider] = typer.Option(None, "--provider", help="Provider hint"),
    host: Optional[str] = typer.Option(None, "--host", help="IMAP host"),
    folder: Optional[str] = typer.Option(None, "--folder", "-f", help="Folder to search"),
    since: Optional[datetime] = typer.Option(None, "--since", formats=["%Y-%m-%d"]),
    before: Optional[datetime] = typer.Option(None, "--before", formats=["%Y-%m-%d"]),
    sender: Optional[str] = typer.Option(None, "--from", help="Sender substring"),
    subject: Optional[str] = typer.Option(None, "--subject", help="Subject substring"),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum messages to scan"),
    strip_html: Optional[bool] = typer.Option(
        None, "--strip-html/--keep-html", help="Convert HTML bodies to text before matching"
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Extract regex matches from messages matching a filter."""
    try:
        extraction_pattern = ExtractionPattern(name=name, pattern=pattern, flags=flags)
        extraction_pattern.compile()
    except (ValueError, MailHarvestError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)

    settings = _load_settings(config_path)
    config, resolved = _build_config(
        settings, email=email, password=password, provider=provider, host=host, port=None
    )
    fetch_filter = _filter_from(settings, folder, since, before, sender, subject)
    if strip_html is None:
        strip_html = settings.extraction.strip_html

    async def run():
        session = await _open_session(config, resolved)
        try:
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                TimeRemainingColumn(),
                console=console,
                disable=json_output,
            ) as progress:
                task = progress.add_task("Extracting", total=None)

                def on_progress(info: ProgressInfo) -> None:
                    progress.update(task, completed=info.current, total=info.total)

                return await run_extraction(
                    session,
                    fetch_filter,
                    extraction_pattern,
                    strip_html=strip_html,
                    batch_size=settings.extraction.fetch_batch_size,
                    limit=limit,
                    on_progress=on_progress,
                )
        finally:
            await session.disconnect()

    try:
        outcome = asyncio.run(run())
    except MailHarvestError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)

    records = [row for result in outcome.results for row in result.to_records()]
    summary = outcome.summary
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "matches": records,
                    "summary": {
                        "total_processed": summary.total_processed,
                        "succeeded": summary.succeeded,
                        "failed": summary.failed,
                        "elapsed_ms": round(summary.elapsed_ms, 1),
                    },
                },
                indent=2,
                default=str,
            )
        )
        return

    table = Table(title=f"Matches for '{extraction_pattern.name}'")
    table.add_column("UID", justify="right")
    table.add_column("Date")
    table.add_column("From", style="cyan")
    table.add_column("Match", style="green")
    for row in records:
        table.add_row(str(row["uid"]), row["date"][:10], row["from"], row["full_match"])
    console.print(table)
    console.print(
        f"Processed {summary.total_processed} messages: "
        f"{summary.succeeded} succeeded, {summary.failed} failed, {len(records)} matches"
    )
    for error in summary.errors[:10]:
        console.print(f"  [yellow]![/yellow] {error.item_id} ({error.stage.value}): {error.message}")


@imap_app.command("classify")
def classify_error(
    message: str = typer.Argument(..., help="Error message to classify"),
    attempt: int = typer.Option(1, "--attempt", min=1, help="1-based attempt number"),
) -> None:
    """Show how an error message is classified and what recovery applies."""
    classifier = ErrorClassifier()
    error_type = classifier.classify(message)
    strategy = classifier.get_recovery_strategy(error_type, attempt)

    table = Table(title="Error classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Type", error_type.value)
    table.add_row("Retry", "yes" if strategy.should_retry else "no")
    table.add_row("Delay", f"{strategy.delay:g}s")
    table.add_row("Max attempts", str(strategy.max_attempts))
    table.add_row("Message", strategy.user_message)
    console.print(table)
    if error_type is ErrorType.AUTHENTICATION:
        console.print("[yellow]Credentials must be re-entered; this failure is never retried.[/yellow]")


@imap_app.command("providers")
def list_providers() -> None:
    """Show connection tuning for each provider."""
    table = Table(title="Provider profiles")
    table.add_column("Profile", style="cyan")
    table.add_column("Retries", justify="right")
    table.add_column("Retry delay", justify="right")
    table.add_column("Connect timeout", justify="right")
    table.add_column("Operation timeout", justify="right")
    table.add_column("Keep-alive", justify="right")
    for name, profile in PROVIDER_PROFILES.items():
        table.add_row(
            name,
            str(profile.max_retries),
            f"{profile.retry_delay_base:g}-{profile.retry_delay_max:g}s",
            f"{profile.connection_timeout:g}s",
            f"{profile.operation_timeout:g}s",
            f"{profile.idle_timeout:g}s",
        )
    console.print(table)


__all__ = ["imap_app"]
