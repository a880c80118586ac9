"""Shared utilities for scaffoldkit CLI commands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from scaffoldkit.core.errors import ScaffoldError, exit_code_for


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Set up file logging for CLI commands.

    Args:
        log_file: Path to log file (optional)
        verbose: Enable verbose logging

    Returns:
        The path the run is logged to
    """
    from scaffoldkit.core.logger import setup_file_logging as _setup_file_logging
    return _setup_file_logging(log_file=log_file, verbose=verbose)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: Optional[int] = None
) -> None:
    """Handle CLI errors with consistent formatting.

    Engine errors exit with the code of their error class so callers can
    tell a bad variable from a broken template or a failed write.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use (defaults to the error class's code)
    """
    if isinstance(e, ScaffoldError):
        console.print(f"[red]Error:[/red] [bold]{e.code}[/bold] {escape(e.message)}", highlight=False)
        context = e.context()
        if context:
            console.print(f"  [dim]{escape(context)}[/dim]", highlight=False)
    else:
        console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code if exit_code is not None else exit_code_for(e))


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    """Print success message with consistent formatting.

    Args:
        console: Rich console for output
        message: Success message
        prefix: Prefix symbol (default: ✓)
    """
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    """Print error message with consistent formatting."""
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    """Print warning message with consistent formatting."""
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    console.print(f"[cyan]{prefix}[/cyan] {message}")
