"""Shared Rich console for CLI output."""

import json
import os
from functools import wraps
from typing import Any, Iterable, Sequence

from rich.console import Console
from rich.table import Table

_console = Console()
_error_console = Console(stderr=True)


def _should_print() -> bool:
    """Check if console output is enabled."""
    return os.environ.get("HYDRO_CONSOLE_ENABLED", "true").lower() == "true"


def _console_output(func):
    """Decorator to check if console output is enabled."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        if _should_print():
            return func(*args, **kwargs)

    return wrapper


def get_console() -> Console:
    return _console


@_console_output
def print_success(message: str):
    _console.print(f"[green]{message}[/green]")


@_console_output
def print_error(message: str):
    """Print error message to stderr."""
    _error_console.print(f"[red]{message}[/red]")


@_console_output
def print_info(message: str):
    _console.print(f"[cyan]{message}[/cyan]")


@_console_output
def print_warning(message: str):
    _console.print(f"[yellow]{message}[/yellow]")


@_console_output
def print_table(title: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]):
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*("" if value is None else str(value) for value in row))
    _console.print(table)


def print_json(data: Any):
    """Print JSON data (always outputs, ignores HYDRO_CONSOLE_ENABLED)."""
    print(json.dumps(data, indent=2, sort_keys=True))
