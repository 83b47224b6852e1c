"""``aurumshield compliance-graph``: print the compliance case transition graph."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from aurumshield.models.compliance import ALLOWED_TRANSITIONS

console = Console()


def compliance_graph_cmd() -> None:
    """List every compliance case status and the statuses it may move to."""
    table = Table(title="Compliance Case Transitions", header_style="bold cyan")
    table.add_column("From", style="cyan")
    table.add_column("Allowed targets")
    for status, targets in ALLOWED_TRANSITIONS.items():
        if targets:
            table.add_row(status.value, ", ".join(sorted(t.value for t in targets)))
        else:
            table.add_row(status.value, "[dim]terminal[/dim]")
    console.print(table)
