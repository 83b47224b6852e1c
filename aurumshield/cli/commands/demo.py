"""``aurumshield demo``: run a complete settlement with simulated collaborators.

Opens escrow, walks the case through funding, allocation and verification,
authorizes, executes DvP over the simulated dual-rail router, then prints
the ledger, verifies its hash chain and issues the clearing certificate.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from aurumshield.adapters.simulated import (
    SimulatedLogistics,
    SimulatedRail,
    StaticCapitalProvider,
    StaticPolicyContextProvider,
)
from aurumshield.cli.renderer import ClearingRenderer
from aurumshield.config import config
from aurumshield.core.certificate_engine import issue_certificate, verify_certificate
from aurumshield.core.rail_router import SettlementRailRouter
from aurumshield.core.settlement_machine import SettlementLifecycle, TransitionOutcome
from aurumshield.models.risk import (
    ApprovalTier,
    CapitalSnapshot,
    Corridor,
    Counterparty,
    Hub,
    PolicyContext,
    VerificationEvidence,
)
from aurumshield.models.settlement import (
    APPROVER_AUTHORITY,
    Actor,
    LedgerEntryType,
    SettlementCase,
    UserRole,
)

console = Console()


def _build_lifecycle(
    db_path: Path, notional_cents: int, *, fail_primary: bool
) -> tuple[SettlementLifecycle, SettlementRailRouter]:
    rails = {
        name: SimulatedRail(name) for name in (config.low_cost_rail, config.high_assurance_rail)
    }
    router = SettlementRailRouter.from_config(list(rails.values()), config)
    if fail_primary:
        rails[router.plan(notional_cents)[0]].fail = True

    capital = StaticCapitalProvider(
        CapitalSnapshot(
            capital_base=25_000_000.0,
            gross_exposure_notional=5_000_000.0,
            hardstop_limit=50_000_000.0,
        )
    )
    context = StaticPolicyContextProvider(
        PolicyContext(
            counterparty=Counterparty(id="cp-demo-refiner", legal_name="Demo Refining AG"),
            corridor=Corridor(id="corridor-ch-us", name="Zurich -> New York"),
            hub=Hub(id="hub-zrh", name="Zurich Free Port Vault"),
            evidence=VerificationEvidence(
                kyc_verified=True, sanctions_cleared=True, reference="demo-evidence"
            ),
        )
    )
    lifecycle = SettlementLifecycle.from_config(
        config.model_copy(update={"ledger_path": db_path}),
        router=router,
        logistics=SimulatedLogistics(),
        capital_provider=capital,
        context_provider=context,
    )
    return lifecycle, router


def _approver_for(tier: ApprovalTier) -> Actor:
    """The demo approver whose authority is exactly ``tier``."""
    role = next(r for r, authority in APPROVER_AUTHORITY.items() if authority == tier)
    return Actor(
        user_id=f"demo-{role.value.lower().replace('_', '-')}",
        role=role,
        display_name=role.value.replace("_", " ").title(),
    )


async def _run_settlement(
    lifecycle: SettlementLifecycle, case: SettlementCase
) -> list[TransitionOutcome]:
    treasury = Actor(user_id="demo-treasury", role=UserRole.TREASURY, display_name="Treasury Desk")
    vault = Actor(user_id="demo-vault", role=UserRole.VAULT_OPS, display_name="Vault Operations")
    compliance = Actor(user_id="demo-compliance", role=UserRole.COMPLIANCE, display_name="Compliance")

    outcomes = [await lifecycle.open_settlement(case, treasury)]
    if not outcomes[-1].accepted:
        return outcomes
    approver = _approver_for(outcomes[0].evaluation.approval.tier)
    steps = [
        lambda: lifecycle.request_funds(case.id, treasury),
        lambda: lifecycle.confirm_funds(case.id, treasury, reference="DEMO-WIRE-001"),
        lambda: lifecycle.allocate_gold(case.id, vault, allocation_ref="DEMO-BARLIST-001"),
        lambda: lifecycle.clear_verification(case.id, compliance),
        lambda: lifecycle.authorize(case.id, approver),
        lambda: lifecycle.execute_dvp(case.id, treasury, delivery_address="Demo Vault, New York"),
    ]
    for step in steps:
        outcome = await step()
        outcomes.append(outcome)
        if not outcome.accepted:
            break
    return outcomes


def demo_cmd(
    weight_oz: float = typer.Option(400.0, "--weight", "-w", help="Bar weight in troy ounces."),
    price_per_oz: float = typer.Option(2_500.0, "--price", "-p", help="Locked price per ounce in USD."),
    fail_primary: bool = typer.Option(
        False, "--fail-primary", help="Make the primary rail fail to demonstrate failover."
    ),
    ledger_db: Path = typer.Option(
        Path(".aurumshield/demo-settlement.db"),
        "--ledger",
        help="Path to the demo ledger database.",
    ),
) -> None:
    """Run a complete DvP settlement end to end with simulated adapters."""
    order_id = f"ord-demo-{uuid.uuid4().hex[:8]}"
    case = SettlementCase(
        order_id=order_id,
        buyer_org_id="org-demo-buyer",
        seller_org_id="org-demo-seller",
        seller_account_id="acct-demo-seller",
        counterparty_id="cp-demo-refiner",
        corridor_id="corridor-ch-us",
        hub_id="hub-zrh",
        vault_hub_id="hub-nyc",
        weight_oz=weight_oz,
        price_per_oz_locked=price_per_oz,
        notional_usd=round(weight_oz * price_per_oz, 2),
    )
    lifecycle, router = _build_lifecycle(
        ledger_db, case.notional_cents, fail_primary=fail_primary
    )
    renderer = ClearingRenderer(console=console)

    console.print()
    console.print(
        Panel(
            "[bold]AurumShield Demo Settlement[/bold]\n\n"
            f"Order {order_id}: {weight_oz:g} oz @ ${price_per_oz:,.2f}/oz "
            f"= ${case.notional_usd:,.2f}\n"
            f"Rail plan: {' -> '.join(router.plan(case.notional_cents))}",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    outcomes = asyncio.run(_run_settlement(lifecycle, case))
    for outcome in outcomes:
        marker = "[green]ok[/green]" if outcome.accepted else "[bold red]rejected[/bold red]"
        console.print(f"  {marker}  {outcome.entry.type.value}: {outcome.entry.detail}")
        if outcome.evaluation is not None and outcome.entry.type == LedgerEntryType.ESCROW_OPENED:
            renderer.print_evaluation(outcome.evaluation)

    console.print()
    settlement, entries = lifecycle.settlement_record(case.id)
    renderer.print_ledger(case.id, entries)
    renderer.print_chain_verification(case.id, lifecycle.verify_chain(case.id))

    if not outcomes[-1].accepted:
        console.print(f"[bold red]Settlement did not complete:[/bold red] {outcomes[-1].reason}")
        raise typer.Exit(code=1)

    certificate = issue_certificate(
        settlement, entries, signing_key=config.certificate_signing_key
    )
    console.print()
    console.print(
        renderer.render_certificate(certificate, verified=verify_certificate(certificate))
    )
