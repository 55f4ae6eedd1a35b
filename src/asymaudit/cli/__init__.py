"""Command line entry points for the audit worker."""

from .commands import cli
from .config import config_app

cli.add_typer(config_app, name="config")

__all__ = ["cli", "config_app"]
