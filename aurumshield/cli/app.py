"""Main Typer application: imports and registers all CLI commands.

Entry point: ``aurumshield`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer

from aurumshield.cli.commands.compliance_graph import compliance_graph_cmd
from aurumshield.cli.commands.demo import demo_cmd
from aurumshield.cli.commands.evaluate import evaluate_cmd
from aurumshield.cli.commands.ledger_cmd import ledger_cmd
from aurumshield.config import config
from aurumshield.core.production_guard import enforce_production_constraints

app = typer.Typer(
    name="aurumshield",
    help="AurumShield: settlement and capital control engine for physical gold clearing.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="evaluate", help="Evaluate a prospective trade against risk policy.")(evaluate_cmd)
app.command(name="demo", help="Run a complete DvP settlement with simulated adapters.")(demo_cmd)
app.command(name="ledger", help="Show and verify the ledger for a settlement.")(ledger_cmd)
app.command(name="compliance-graph", help="Print the compliance case transition graph.")(
    compliance_graph_cmd
)


def main() -> None:
    """CLI entry point."""
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    enforce_production_constraints(config)
    app()


if __name__ == "__main__":
    main()
