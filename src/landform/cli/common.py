"""Helpers shared by the CLI commands."""

import sys
from functools import wraps
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console

from landform.config.parser import Config, ConfigValidationError, parse_variable_value
from landform.orchestrator.orchestrator import Orchestrator
from landform.utils.errors import LandformError
from landform.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


def parse_vars(ctx, param, values: Tuple[str, ...]) -> Dict[str, Any]:
    """Click callback turning repeated ``--var name=value`` into a dict."""
    variables = {}
    for item in values:
        name, sep, raw = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got '{item}'", ctx=ctx, param=param)
        variables[name.strip()] = parse_variable_value(raw)
    return variables


def load_config(ctx: click.Context, variables: Optional[Dict[str, Any]] = None) -> Config:
    """Load and validate the project file, exiting on failure."""
    config_path = ctx.obj['config_path']
    try:
        return Config(config_path).load(variable_overrides=variables)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        console.print("\nRun [cyan]landform init[/cyan] to create a new project file.")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)


def create_orchestrator(ctx: click.Context, config: Config, cancel_event=None) -> Orchestrator:
    return Orchestrator(
        config,
        registry=ctx.obj.get('registry'),
        cancel_event=cancel_event,
    )


def print_error(error: LandformError) -> None:
    console.print(error.to_user_message(), style="red", markup=False, highlight=False)


def handle_errors(func):
    """Print landform errors for the user and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LandformError as e:
            logger.debug(f"Command failed: {e.to_dict()}")
            print_error(e)
            sys.exit(1)
    return wrapper
