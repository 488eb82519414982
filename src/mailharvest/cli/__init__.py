"""Command line entry points for mailharvest."""

import logging
from typing import Optional

import typer
from typer import Typer

from ..configuration.cli import config_app
from ..configuration.settings import DEFAULT_CONFIG_PATH, bootstrap_settings
from ..errors import MailHarvestError
from ..imap.cli import imap_app


cli = Typer(help="mailharvest command line tools")
cli.add_typer(config_app, name="config")
cli.add_typer(imap_app, name="imap")


def _configured_level() -> str:
    try:
        return bootstrap_settings(path=DEFAULT_CONFIG_PATH, persist=False).log_level
    except (OSError, MailHarvestError):
        return "WARNING"


@cli.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection activity"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Explicit log level"),
) -> None:
    """Extract data from IMAP mailboxes."""
    level = log_level or ("DEBUG" if verbose else _configured_level())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["cli", "config_app", "imap_app"]
