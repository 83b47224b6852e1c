"""Collaborator protocols consumed by the clearing core.

Concrete vendor integrations (banking rails, carriers, KYC and sanctions
providers, the capital aggregator) live outside this package; the core only
depends on these structural interfaces.  Every implementation is injected at
construction time; there is no module-level registry.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from aurumshield.models.compliance import AmlOutcome, ComplianceCase, KycOutcome
from aurumshield.models.payments import (
    RailExecution,
    SettlementPayoutRequest,
    ShipmentResult,
)
from aurumshield.models.risk import CapitalSnapshot, PolicyContext
from aurumshield.models.settlement import SettlementCase


@runtime_checkable
class CapitalSnapshotProvider(Protocol):
    """Read-only source of the current capital position."""

    def get_snapshot(self) -> CapitalSnapshot:
        ...


@runtime_checkable
class PolicyContextProvider(Protocol):
    """Resolves counterparty, corridor, hub and evidence for a settlement."""

    def get_context(self, settlement: SettlementCase) -> PolicyContext:
        ...


@runtime_checkable
class SettlementRailAdapter(Protocol):
    """A payment rail.  Must be idempotent per request ``idempotency_key``.

    Attributes
    ----------
    rail_name : str
        Registration key used by the router (e.g. ``"moov"``).
    """

    @property
    def rail_name(self) -> str:
        ...

    async def execute(self, request: SettlementPayoutRequest) -> RailExecution:
        ...


@runtime_checkable
class LogisticsRouter(Protocol):
    """Initiates physical transfer of the allocated metal."""

    async def create_shipment(
        self,
        settlement_id: str,
        order_id: str,
        notional_cents: int,
        weight_oz: float,
        address: str,
    ) -> ShipmentResult:
        ...


@runtime_checkable
class KycAdapter(Protocol):
    async def verify(self, case: ComplianceCase) -> KycOutcome:
        ...


@runtime_checkable
class AmlAdapter(Protocol):
    async def screen(self, case: ComplianceCase) -> AmlOutcome:
        ...


__all__ = [
    "AmlAdapter",
    "CapitalSnapshotProvider",
    "KycAdapter",
    "LogisticsRouter",
    "PolicyContextProvider",
    "SettlementRailAdapter",
]
