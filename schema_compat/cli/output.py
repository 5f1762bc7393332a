"""Output formatting utilities for CLI."""

import json
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

console = Console()
error_console = Console(stderr=True)

_output_format = "table"


def set_output_format(output_format: str) -> None:
    global _output_format
    _output_format = output_format


def is_json() -> bool:
    return _output_format == "json"


def format_timestamp(ts: str | datetime | None) -> str:
    """Format a timestamp for display."""
    if ts is None:
        return "-"
    if isinstance(ts, str):
        try:
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def format_status(status: str) -> Text:
    """Format status with color."""
    colors = {
        "ready": "green",
        "not_ready": "red",
        "completed": "green",
        "running": "blue",
        "paused": "yellow",
        "failed": "red",
        "idle": "dim",
        "healthy": "green",
        "unhealthy": "red",
        "rolled-back": "red",
        "cutover": "green",
        "dual-schema": "cyan",
        "backfilling": "cyan",
    }
    color = colors.get(status.lower(), "white")
    return Text(status, style=color)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, default=str, indent=2))


def print_error(message: str, details: dict | None = None) -> None:
    """Print an error message."""
    error_console.print(f"[red]Error:[/red] {message}")
    if details:
        for key, value in details.items():
            error_console.print(f"  [dim]{key}:[/dim] {value}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_key_values(data: dict, title: str) -> None:
    """Print a flat mapping as a two-column table, or JSON."""
    if is_json():
        print_json(data)
        return

    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, datetime):
            value = format_timestamp(value)
        elif key in ("status", "phase"):
            value = format_status(str(value))
        else:
            value = str(value) if value is not None else "-"
        table.add_row(key, value)
    console.print(table)


def print_rows(rows: list[dict], columns: list[str], title: str) -> None:
    """Print a list of records as a table, or JSON."""
    if is_json():
        print_json(rows)
        return

    table = Table(title=title, show_header=True)
    for column in columns:
        table.add_column(column, style="cyan" if column == columns[0] else None)
    for row in rows:
        table.add_row(*(str(row.get(column, "-")) for column in columns))
    console.print(table)
