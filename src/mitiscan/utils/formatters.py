"""Rich output formatters for CLI display."""

from __future__ import annotations

import json
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

VERDICT_STYLES = {
    "pass": "green",
    "fail": "bold red",
    "error": "bold magenta",
    "not_applicable": "dim",
}


def print_table(
    rows: Sequence[dict[str, Any]],
    title: str | None = None,
    columns: Sequence[str] | None = None,
) -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No results.[/dim]")
        return

    cols = columns or list(rows[0].keys())
    table = Table(title=title, show_lines=True)
    for col in cols:
        table.add_column(col, overflow="fold")

    for row in rows:
        cells = []
        for c in cols:
            value = str(row.get(c, ""))
            if c == "verdict" and value in VERDICT_STYLES:
                value = f"[{VERDICT_STYLES[value]}]{value}[/{VERDICT_STYLES[value]}]"
            cells.append(value)
        table.add_row(*cells)

    console.print(table)


def render_json(data: Any) -> str:
    return json.dumps(data, default=str, indent=2, sort_keys=True)


def print_json(data: Any) -> None:
    console.print_json(render_json(data))


def print_success(msg: str) -> None:
    console.print(f"[bold green]{msg}[/bold green]")


def print_error(msg: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {msg}")


def print_warning(msg: str) -> None:
    err_console.print(f"[bold yellow]Warning:[/bold yellow] {msg}")
