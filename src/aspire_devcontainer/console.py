"""Shared rich console, status printers and logging setup."""

from __future__ import annotations

import logging
from typing import Final

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule

console: Final[Console] = Console(highlight=False, soft_wrap=True)
err_console: Final[Console] = Console(stderr=True, highlight=False, soft_wrap=True)


def success(message: str) -> None:
    console.print(f"[green]✓ {escape(message)}[/green]")


def error(message: str) -> None:
    err_console.print(f"[red]✗ {escape(message)}[/red]")


def warning(message: str) -> None:
    console.print(f"[yellow]⚠ {escape(message)}[/yellow]")


def info(message: str) -> None:
    console.print(f"[blue]ℹ {escape(message)}[/blue]")


def step(message: str) -> None:
    console.print(f"[cyan]→ {escape(message)}[/cyan]")


def plain(message: str = "") -> None:
    console.print(message, markup=False)


def header(title: str) -> None:
    console.print(Rule(f"[bold blue]{escape(title)}[/bold blue]", style="blue"))
    console.print()


def subheader(title: str) -> None:
    console.print()
    console.print(f"[bold blue]{escape(title)}:[/bold blue]")


def configure_logging(verbose: bool = False) -> None:
    """Route diagnostics through a rich handler on stderr.

    Status lines are printed to stdout by the helpers above; the logging
    module only carries diagnostics (swallowed best-effort failures,
    subprocess invocations) which stay hidden unless ``verbose`` is set.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
