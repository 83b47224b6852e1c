"""Shared test fixtures for AurumShield."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from aurumshield.adapters.simulated import (
    SimulatedAml,
    SimulatedKyc,
    SimulatedLogistics,
    SimulatedRail,
    StaticCapitalProvider,
    StaticPolicyContextProvider,
)
from aurumshield.core.compliance_machine import ComplianceCaseMachine
from aurumshield.core.compliance_store import ComplianceStore
from aurumshield.core.rail_router import SettlementRailRouter
from aurumshield.core.settlement_ledger import SettlementLedger
from aurumshield.core.settlement_machine import SettlementLifecycle
from aurumshield.core.settlement_store import SettlementStore
from aurumshield.models.risk import (
    CapitalSnapshot,
    Corridor,
    Counterparty,
    Hub,
    PolicyContext,
    VerificationEvidence,
)
from aurumshield.models.settlement import Actor, SettlementCase, SettlementStatus, UserRole


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases."""
    return tmp_path


@pytest.fixture
def db_path(tmp_dir: Path) -> Path:
    return tmp_dir / "settlement.db"


# ---------------------------------------------------------------------------
# Policy inputs
# ---------------------------------------------------------------------------


@pytest.fixture
def capital_snapshot() -> CapitalSnapshot:
    """$10M capital base, $5M exposure, $8M hardstop."""
    return CapitalSnapshot(
        capital_base=10_000_000.0,
        gross_exposure_notional=5_000_000.0,
        hardstop_limit=8_000_000.0,
    )


@pytest.fixture
def counterparty() -> Counterparty:
    return Counterparty(id="cp-001", legal_name="Helvetia Refining AG")


@pytest.fixture
def corridor() -> Corridor:
    return Corridor(id="corridor-ch-us", name="Zurich -> New York")


@pytest.fixture
def hub() -> Hub:
    return Hub(id="hub-zrh", name="Zurich Vault")


@pytest.fixture
def evidence() -> VerificationEvidence:
    return VerificationEvidence(kyc_verified=True, sanctions_cleared=True, reference="ev-001")


@pytest.fixture
def policy_context(
    counterparty: Counterparty, corridor: Corridor, hub: Hub, evidence: VerificationEvidence
) -> PolicyContext:
    return PolicyContext(
        counterparty=counterparty, corridor=corridor, hub=hub, evidence=evidence
    )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def capital_provider() -> StaticCapitalProvider:
    """Roomy capital position: $25M base, $5M exposure, $50M hardstop."""
    return StaticCapitalProvider(
        CapitalSnapshot(
            capital_base=25_000_000.0,
            gross_exposure_notional=5_000_000.0,
            hardstop_limit=50_000_000.0,
        )
    )


@pytest.fixture
def context_provider(policy_context: PolicyContext) -> StaticPolicyContextProvider:
    return StaticPolicyContextProvider(policy_context)


@pytest.fixture
def rails() -> dict[str, SimulatedRail]:
    return {
        "moov": SimulatedRail("moov"),
        "modern_treasury": SimulatedRail("modern_treasury"),
    }


@pytest.fixture
def router(rails: dict[str, SimulatedRail]) -> SettlementRailRouter:
    return SettlementRailRouter(list(rails.values()), timeout_seconds=1.0)


@pytest.fixture
def logistics() -> SimulatedLogistics:
    return SimulatedLogistics()


@pytest.fixture
def store(db_path: Path) -> SettlementStore:
    return SettlementStore(db_path)


@pytest.fixture
def settlement_ledger(db_path: Path) -> SettlementLedger:
    return SettlementLedger(db_path)


@pytest.fixture
def lifecycle(
    store: SettlementStore,
    settlement_ledger: SettlementLedger,
    router: SettlementRailRouter,
    logistics: SimulatedLogistics,
    capital_provider: StaticCapitalProvider,
    context_provider: StaticPolicyContextProvider,
) -> SettlementLifecycle:
    return SettlementLifecycle(
        store=store,
        ledger=settlement_ledger,
        router=router,
        logistics=logistics,
        capital_provider=capital_provider,
        context_provider=context_provider,
        adapter_timeout_seconds=1.0,
    )


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id="u-admin", role=UserRole.ADMIN, display_name="Clearing Admin")


@pytest.fixture
def treasury() -> Actor:
    return Actor(user_id="u-treasury", role=UserRole.TREASURY, display_name="Treasury")


@pytest.fixture
def vault_ops() -> Actor:
    return Actor(user_id="u-vault", role=UserRole.VAULT_OPS, display_name="Vault Ops")


@pytest.fixture
def compliance_officer() -> Actor:
    return Actor(user_id="u-compliance", role=UserRole.COMPLIANCE, display_name="Compliance")


@pytest.fixture
def buyer() -> Actor:
    return Actor(user_id="u-buyer", role=UserRole.BUYER, display_name="Buyer")


# ---------------------------------------------------------------------------
# Settlement factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_case() -> Callable[..., SettlementCase]:
    """Factory fixture: a DRAFT settlement case, 400 oz @ $2,500 by default."""
    counter = {"n": 0}

    def _factory(**overrides: Any) -> SettlementCase:
        counter["n"] += 1
        weight = overrides.pop("weight_oz", 400.0)
        price = overrides.pop("price_per_oz_locked", 2_500.0)
        defaults: dict[str, Any] = {
            "order_id": f"ord-test-{counter['n']:03d}",
            "buyer_org_id": "org-buyer",
            "seller_org_id": "org-seller",
            "seller_account_id": "acct-seller",
            "counterparty_id": "cp-001",
            "corridor_id": "corridor-ch-us",
            "hub_id": "hub-zrh",
            "vault_hub_id": "hub-nyc",
            "weight_oz": weight,
            "price_per_oz_locked": price,
            "notional_usd": round(weight * price, 2),
        }
        defaults.update(overrides)
        return SettlementCase(**defaults)

    return _factory


@pytest.fixture
def advance_to(
    lifecycle: SettlementLifecycle,
    admin: Actor,
    treasury: Actor,
    vault_ops: Actor,
    compliance_officer: Actor,
) -> Callable[[SettlementCase, SettlementStatus], Awaitable[SettlementCase]]:
    """Async helper: open ``case`` and drive it forward to ``target``."""
    steps = [
        (SettlementStatus.ESCROW_OPEN, lambda c: lifecycle.open_settlement(c, treasury)),
        (SettlementStatus.AWAITING_FUNDS, lambda c: lifecycle.request_funds(c.id, treasury)),
        (SettlementStatus.AWAITING_GOLD, lambda c: lifecycle.confirm_funds(c.id, treasury)),
        (SettlementStatus.AWAITING_VERIFICATION, lambda c: lifecycle.allocate_gold(c.id, vault_ops)),
        (
            SettlementStatus.READY_TO_SETTLE,
            lambda c: lifecycle.clear_verification(c.id, compliance_officer),
        ),
        (SettlementStatus.AUTHORIZED, lambda c: lifecycle.authorize(c.id, admin)),
        (SettlementStatus.SETTLED, lambda c: lifecycle.execute_dvp(c.id, treasury)),
    ]

    async def _advance(case: SettlementCase, target: SettlementStatus) -> SettlementCase:
        current = case
        for status, step in steps:
            outcome = await step(current)
            assert outcome.accepted, outcome.reason
            current = outcome.settlement
            if status == target:
                return current
        raise AssertionError(f"{target} is not reachable by forward steps")

    return _advance


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


@pytest.fixture
def compliance_store(tmp_dir: Path) -> ComplianceStore:
    return ComplianceStore(tmp_dir / "compliance.db")


@pytest.fixture
def compliance_machine(compliance_store: ComplianceStore) -> ComplianceCaseMachine:
    return ComplianceCaseMachine(
        compliance_store, SimulatedKyc(), SimulatedAml(), timeout_seconds=1.0
    )
