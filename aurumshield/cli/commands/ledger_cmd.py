"""``aurumshield ledger SETTLEMENT_ID``: show and verify a settlement ledger.

The ledger is read-only here; the case table is never consulted, so the
output reflects exactly what the hash chain records.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from aurumshield.cli.renderer import ClearingRenderer
from aurumshield.config import config
from aurumshield.core.settlement_ledger import (
    LedgerIntegrityError,
    SettlementLedger,
    replay_status,
)

console = Console()


def ledger_cmd(
    settlement_id: str = typer.Argument(..., help="The settlement ID to inspect."),
    ledger_db: Path = typer.Option(
        None,
        "--ledger",
        "-l",
        help="Path to the settlement ledger database (defaults to the configured path).",
    ),
) -> None:
    """Print every entry for a settlement and verify its hash chain."""
    db_path = Path(ledger_db) if ledger_db else config.ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    ledger = SettlementLedger(db_path)
    entries = ledger.get_entries(settlement_id)
    if not entries:
        console.print(f"[bold red]Settlement not found:[/bold red] {settlement_id}")
        known = ledger.get_all_settlement_ids()
        if known:
            console.print("\n[bold]Available settlements:[/bold]")
            for sid in known[:10]:
                console.print(f"  [cyan]{sid}[/cyan]")
            if len(known) > 10:
                console.print(f"  [dim]... and {len(known) - 10} more[/dim]")
        raise typer.Exit(code=1)

    renderer = ClearingRenderer(console=console)
    renderer.print_ledger(settlement_id, entries)
    console.print(f"[bold]Replayed status:[/bold] {replay_status(entries).value}")

    try:
        valid = ledger.verify_chain(settlement_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
        valid = False
    renderer.print_chain_verification(settlement_id, valid)
    if not valid:
        raise typer.Exit(code=1)
