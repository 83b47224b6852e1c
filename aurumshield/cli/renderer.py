"""Rich terminal renderer for policy evaluations, ledgers and certificates.

Color scheme
------------
- green     : PASS / SETTLED / transitions forward
- yellow    : WARN / logistics warnings
- red       : BLOCK / FAIL / FAILED / CANCELLED
- magenta   : AMBIGUOUS_STATE
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from aurumshield.models.certificate import ClearingCertificate
from aurumshield.models.risk import BlockerSeverity, CheckStatus, PolicyEvaluation, TRIBand
from aurumshield.models.settlement import LedgerEntry, LedgerEntryType, SettlementStatus

# ---------------------------------------------------------------------------
# Value -> Rich style mapping
# ---------------------------------------------------------------------------

_SEVERITY_STYLES: dict[BlockerSeverity, str] = {
    BlockerSeverity.BLOCK: "bold red",
    BlockerSeverity.WARN: "yellow",
    BlockerSeverity.INFO: "dim",
}

_CHECK_STYLES: dict[CheckStatus, str] = {
    CheckStatus.PASS: "green",
    CheckStatus.WARN: "yellow",
    CheckStatus.FAIL: "bold red",
}

_BAND_STYLES: dict[TRIBand, str] = {
    TRIBand.GREEN: "bold green",
    TRIBand.AMBER: "bold yellow",
    TRIBand.RED: "bold red",
}

_STATUS_STYLES: dict[SettlementStatus, str] = {
    SettlementStatus.SETTLED: "bold green",
    SettlementStatus.FAILED: "bold red",
    SettlementStatus.CANCELLED: "red",
    SettlementStatus.AMBIGUOUS_STATE: "bold magenta",
}

_ENTRY_STYLES: dict[LedgerEntryType, str] = {
    LedgerEntryType.POLICY_BLOCKED: "red",
    LedgerEntryType.LOGISTICS_WARNING: "yellow",
    LedgerEntryType.SETTLEMENT_FAILED: "bold red",
    LedgerEntryType.SETTLEMENT_CANCELLED: "red",
    LedgerEntryType.AMBIGUOUS_STATE_DETECTED: "bold magenta",
    LedgerEntryType.DVP_EXECUTED: "bold green",
}


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]" if style else text


class ClearingRenderer:
    """Renders clearing-engine results as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Policy evaluation
    # ------------------------------------------------------------------

    def render_evaluation(self, evaluation: PolicyEvaluation) -> Panel:
        tri = evaluation.tri
        tri_table = Table(header_style="bold cyan", expand=True, title="Transaction Risk Index")
        tri_table.add_column("Component")
        tri_table.add_column("Raw", justify="right")
        tri_table.add_column("Weight", justify="right")
        tri_table.add_column("Weighted", justify="right")
        for component in tri.components:
            tri_table.add_row(
                component.name,
                f"{component.raw:g}",
                f"{component.weight:.2f}",
                f"{component.weighted:.2f}",
            )

        checks = Table(header_style="bold cyan", expand=True, title="Audit Checklist")
        checks.add_column("Check")
        checks.add_column("Status", justify="center")
        checks.add_column("Detail")
        for check in evaluation.checks:
            checks.add_row(
                check.label,
                _styled(check.status.value, _CHECK_STYLES[check.status]),
                check.detail,
            )

        parts: list = [tri_table, Text(""), checks]
        if evaluation.blockers:
            blockers = Table(header_style="bold cyan", expand=True, title="Blockers")
            blockers.add_column("Severity", justify="center")
            blockers.add_column("Rule")
            blockers.add_column("Detail")
            for blocker in evaluation.blockers:
                blockers.add_row(
                    _styled(blocker.severity.value, _SEVERITY_STYLES[blocker.severity]),
                    blocker.title,
                    blocker.detail,
                )
            parts.extend([Text(""), blockers])

        capital = evaluation.capital
        summary = "  |  ".join(
            [
                f"[bold]TRI:[/bold] {_styled(f'{tri.score} ({tri.band.value})', _BAND_STYLES[tri.band])}",
                f"[bold]ECR:[/bold] {capital.current_ecr:.2f}x -> {capital.post_txn_ecr:.2f}x",
                f"[bold]Hardstop:[/bold] {capital.current_hardstop_util:.1%} -> "
                f"{capital.post_txn_hardstop_util:.1%}",
                f"[bold]Approval:[/bold] {evaluation.approval.label}",
            ]
        )
        if evaluation.controls is not None:
            summary += f"  |  [bold]Controls:[/bold] {evaluation.controls.mode.value}"
        parts.extend([Text(""), Text.from_markup(summary)])

        verdict = "[bold red]BLOCKED[/bold red]" if evaluation.blocked else "[green]CLEAR[/green]"
        return Panel(
            Group(*parts),
            title=f"[bold]Policy Evaluation[/bold] ${evaluation.notional_usd:,.2f}",
            subtitle=f"Verdict: {verdict}",
            border_style="red" if evaluation.blocked else "blue",
            padding=(1, 2),
        )

    def print_evaluation(self, evaluation: PolicyEvaluation) -> None:
        self.console.print(self.render_evaluation(evaluation))

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def render_ledger(self, settlement_id: str, entries: list[LedgerEntry]) -> Table:
        table = Table(
            title=f"Settlement Ledger {settlement_id}",
            header_style="bold cyan",
            expand=True,
        )
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Entry", min_width=22)
        table.add_column("Transition", min_width=20)
        table.add_column("Actor")
        table.add_column("Checks", justify="center")
        table.add_column("Detail", ratio=2)
        table.add_column("Hash", style="dim", width=14)

        for entry in entries:
            if entry.is_transition:
                to_status = entry.to_status
                transition = (
                    f"{entry.from_status.value if entry.from_status else '-'} -> "
                    f"{_styled(to_status.value, _STATUS_STYLES.get(to_status, ''))}"
                )
            elif entry.to_status is not None:
                transition = f"[dim]= {entry.to_status.value}[/dim]"
            else:
                transition = "[dim]-[/dim]"
            checks = entry.snapshot.checks_status
            table.add_row(
                str(entry.sequence),
                _styled(entry.type.value, _ENTRY_STYLES.get(entry.type, "")),
                transition,
                f"{entry.actor} ({entry.actor_role.value})",
                _styled(checks.value, _CHECK_STYLES[checks]),
                entry.detail,
                f"{entry.entry_hash[:12]}..",
            )
        return table

    def print_ledger(self, settlement_id: str, entries: list[LedgerEntry]) -> None:
        self.console.print(self.render_ledger(settlement_id, entries))

    def print_chain_verification(self, settlement_id: str, valid: bool) -> None:
        if valid:
            self.console.print(
                f"[green]Hash chain for settlement {settlement_id} is valid.[/green]"
            )
        else:
            self.console.print(
                f"[bold red]Hash chain for settlement {settlement_id} is BROKEN![/bold red]"
            )

    # ------------------------------------------------------------------
    # Certificate
    # ------------------------------------------------------------------

    def render_certificate(self, certificate: ClearingCertificate, *, verified: bool) -> Panel:
        lines = [
            f"[bold]Certificate:[/bold]   {certificate.certificate_number}",
            f"[bold]Issued:[/bold]        {certificate.issued_at:%Y-%m-%d %H:%M:%S UTC}",
            f"[bold]Settlement:[/bold]    {certificate.settlement_id}",
            f"[bold]Order:[/bold]         {certificate.order_id}",
            f"[bold]Buyer:[/bold]         {certificate.buyer_org_id}",
            f"[bold]Seller:[/bold]        {certificate.seller_org_id}",
            f"[bold]Metal:[/bold]         {certificate.weight_oz:g} oz @ "
            f"${certificate.price_per_oz_usd:,.2f}/oz",
            f"[bold]Notional:[/bold]      ${certificate.notional_usd:,.2f} {certificate.currency}",
            f"[bold]Rail:[/bold]          {certificate.rail}",
            f"[bold]DvP entry:[/bold]     {certificate.dvp_ledger_entry_id}",
            f"[bold]Content hash:[/bold]  {certificate.signature_hash}",
        ]
        if certificate.signature:
            lines.append(f"[bold]Signer:[/bold]        {certificate.signer_public_key}")
        status = "[green]verified[/green]" if verified else "[bold red]INVALID[/bold red]"
        lines.append(f"[bold]Verification:[/bold]  {status}")
        return Panel(
            "\n".join(lines),
            title="[bold]Gold Clearing Certificate[/bold]",
            border_style="green" if verified else "red",
            padding=(1, 2),
        )
