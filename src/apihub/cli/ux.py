"""
Console output helpers for the apihub CLI.

Respects NO_COLOR and FORCE_COLOR; rich drops styling on its own when
stdout is not a terminal.
"""

from __future__ import annotations

import os

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

APIHUB_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "muted": "#D8DEE9",
    }
)

console = Console(
    theme=APIHUB_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)


def success(message: str) -> None:
    console.print(f"[success]✓ {message}[/success]")


def warning(message: str) -> None:
    console.print(f"[warning]⚠ {message}[/warning]")


def info(message: str) -> None:
    console.print(f"[info]ℹ {message}[/info]")


def header(title: str) -> None:
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))


def print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*row)
    console.print(table)
