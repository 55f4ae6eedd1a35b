"""CLI commands for inspecting and validating configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console

from ..configuration.settings import ConfigurationManager, describe
from .commands import ConfigOption, load_settings_or_exit


console = Console()
config_app = typer.Typer(help="Inspect audit worker configuration")


@config_app.command("show")
def show_config(config_path: Optional[Path] = ConfigOption) -> None:
    """Display effective configuration with secrets masked."""
    settings = load_settings_or_exit(config_path)
    console.print(yaml.safe_dump(describe(settings), default_flow_style=False, sort_keys=False))


@config_app.command("validate")
def validate_config(config_path: Optional[Path] = ConfigOption) -> None:
    """Validate configuration file for correctness."""
    manager = ConfigurationManager(config_path)
    errors = manager.validate()
    if errors:
        console.print(f"[red]Configuration invalid at {manager.config_path}[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(code=1)
    console.print(f"[green]Configuration valid at {manager.config_path}[/green]")
