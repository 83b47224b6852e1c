"""``aurumshield evaluate``: run the risk policy against one prospective trade.

Pure evaluation: nothing is written to any ledger.  Exits with code 1 when
a BLOCK-level blocker fires so the command can gate scripts.
"""

from __future__ import annotations

import json

import typer
from rich.console import Console

from aurumshield.cli.renderer import ClearingRenderer
from aurumshield.config import config
from aurumshield.core.policy_engine import evaluate_transaction
from aurumshield.models.risk import (
    CapitalSnapshot,
    Corridor,
    CorridorStatus,
    Counterparty,
    CounterpartyStatus,
    Hub,
    HubStatus,
    PolicyContext,
    RiskLevel,
    VerificationEvidence,
)

console = Console()


def evaluate_cmd(
    notional: float = typer.Option(..., "--notional", "-n", help="Trade notional in USD."),
    capital_base: float = typer.Option(10_000_000.0, "--capital", help="Capital base in USD."),
    exposure: float = typer.Option(
        5_000_000.0, "--exposure", help="Current gross exposure notional in USD."
    ),
    hardstop: float = typer.Option(8_000_000.0, "--hardstop", help="Hardstop limit in USD."),
    counterparty_risk: RiskLevel = typer.Option(
        RiskLevel.LOW, "--cp-risk", help="Counterparty risk level."
    ),
    counterparty_status: CounterpartyStatus = typer.Option(
        CounterpartyStatus.ACTIVE, "--cp-status", help="Counterparty status."
    ),
    corridor_risk: RiskLevel = typer.Option(
        RiskLevel.LOW, "--corridor-risk", help="Corridor risk level."
    ),
    corridor_status: CorridorStatus = typer.Option(
        CorridorStatus.ACTIVE, "--corridor-status", help="Corridor status."
    ),
    hub_status: HubStatus = typer.Option(
        HubStatus.OPERATIONAL, "--hub-status", help="Vault hub status."
    ),
    kyc_verified: bool = typer.Option(True, "--kyc/--no-kyc", help="KYC verified."),
    sanctions_cleared: bool = typer.Option(
        True, "--sanctions/--no-sanctions", help="Sanctions screening cleared."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the evaluation as JSON."),
) -> None:
    """Evaluate TRI, capital, blockers and approval tier for one trade."""
    try:
        capital = CapitalSnapshot(
            capital_base=capital_base,
            gross_exposure_notional=exposure,
            hardstop_limit=hardstop,
        )
    except ValueError as exc:
        console.print(f"[bold red]Invalid capital snapshot:[/bold red] {exc}")
        raise typer.Exit(code=2)

    context = PolicyContext(
        counterparty=Counterparty(
            id="cp-cli",
            legal_name="CLI Counterparty",
            risk_level=counterparty_risk,
            status=counterparty_status,
        ),
        corridor=Corridor(id="corridor-cli", risk_level=corridor_risk, status=corridor_status),
        hub=Hub(id="hub-cli", status=hub_status),
        evidence=VerificationEvidence(
            kyc_verified=kyc_verified, sanctions_cleared=sanctions_cleared
        ),
    )

    try:
        evaluation = evaluate_transaction(context, notional, capital, config=config.risk)
    except ValueError as exc:
        console.print(f"[bold red]Invalid notional:[/bold red] {exc}")
        raise typer.Exit(code=2)

    if as_json:
        typer.echo(json.dumps(evaluation.model_dump(mode="json"), indent=2, sort_keys=True))
    else:
        ClearingRenderer(console=console).print_evaluation(evaluation)

    if evaluation.blocked:
        raise typer.Exit(code=1)
