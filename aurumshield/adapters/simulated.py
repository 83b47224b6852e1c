"""Deterministic in-memory collaborators for the demo command and tests.

None of these talk to a network.  Each records the calls it receives so a
caller can assert on exactly what the core asked of it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from aurumshield.models.compliance import AmlOutcome, ComplianceCase, KycOutcome
from aurumshield.models.payments import (
    RailExecution,
    SettlementPayoutRequest,
    ShipmentResult,
)
from aurumshield.models.risk import CapitalSnapshot, PolicyContext
from aurumshield.models.settlement import SettlementCase

# Shipments at or below this notional go by insured parcel; above it by
# armored carrier.
ARMORED_CARRIER_THRESHOLD_CENTS = 5_000_000


class StaticCapitalProvider:
    """Serves a fixed capital position, re-stamped as fresh on every read."""

    def __init__(self, snapshot: CapitalSnapshot, *, restamp: bool = True) -> None:
        self.snapshot = snapshot
        self._restamp = restamp

    def get_snapshot(self) -> CapitalSnapshot:
        if not self._restamp:
            return self.snapshot
        return self.snapshot.model_copy(update={"as_of": datetime.now(timezone.utc)})


class StaticPolicyContextProvider:
    """Serves one policy context for every settlement.

    Reassign ``context`` to simulate a corridor or hub status change between
    authorization and execution.
    """

    def __init__(self, context: PolicyContext) -> None:
        self.context = context

    def get_context(self, settlement: SettlementCase) -> PolicyContext:
        return self.context


class SimulatedRail:
    """A payment rail that succeeds, fails, raises, or stalls on demand.

    Submissions are idempotent on ``request.idempotency_key``: a repeated key
    returns the original result without a second payout.
    """

    def __init__(
        self,
        rail_name: str,
        *,
        fail: bool = False,
        raise_error: bool = False,
        delay_seconds: float = 0.0,
    ) -> None:
        self._rail_name = rail_name
        self.fail = fail
        self.raise_error = raise_error
        self.delay_seconds = delay_seconds
        self.requests: list[SettlementPayoutRequest] = []
        self._results: dict[str, RailExecution] = {}

    @property
    def rail_name(self) -> str:
        return self._rail_name

    async def execute(self, request: SettlementPayoutRequest) -> RailExecution:
        self.requests.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.raise_error:
            raise ConnectionError(f"{self._rail_name} unreachable")
        if request.idempotency_key in self._results:
            return self._results[request.idempotency_key]
        if self.fail:
            result = RailExecution(success=False, error=f"{self._rail_name} rejected payout")
        else:
            key = request.idempotency_key[:12]
            result = RailExecution(
                success=True,
                external_ids=[f"{self._rail_name}-payout-{key}", f"{self._rail_name}-fee-{key}"],
            )
        self._results[request.idempotency_key] = result
        return result


class SimulatedLogistics:
    """Carrier selection by notional; optionally fails or raises."""

    def __init__(self, *, fail: bool = False, raise_error: bool = False) -> None:
        self.fail = fail
        self.raise_error = raise_error
        self.shipments: list[str] = []

    async def create_shipment(
        self,
        settlement_id: str,
        order_id: str,
        notional_cents: int,
        weight_oz: float,
        address: str,
    ) -> ShipmentResult:
        if self.raise_error:
            raise TimeoutError("carrier API timed out")
        carrier = (
            "easypost_usps"
            if notional_cents <= ARMORED_CARRIER_THRESHOLD_CENTS
            else "brinks"
        )
        if self.fail:
            return ShipmentResult(carrier=carrier, error=f"{carrier} declined shipment")
        self.shipments.append(settlement_id)
        return ShipmentResult(
            carrier=carrier, tracking_number=f"{carrier.upper()}-{order_id}"
        )


class SimulatedKyc:
    def __init__(self, outcome: KycOutcome = KycOutcome.PASS, *, delay_seconds: float = 0.0) -> None:
        self.outcome = outcome
        self.delay_seconds = delay_seconds

    async def verify(self, case: ComplianceCase) -> KycOutcome:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return self.outcome


class SimulatedAml:
    def __init__(self, outcome: AmlOutcome = AmlOutcome.CLEAR, *, delay_seconds: float = 0.0) -> None:
        self.outcome = outcome
        self.delay_seconds = delay_seconds

    async def screen(self, case: ComplianceCase) -> AmlOutcome:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return self.outcome
