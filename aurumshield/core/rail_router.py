"""Dual-rail settlement router with single failover.

Two named rail adapters are injected at construction.  In forced mode the
configured rail is used alone; in auto mode the notional picks the primary
rail (low-cost at or below the threshold, high-assurance above it) and one
retry is made on the other rail.  Adapter exceptions and timeouts count as
rail failures.

The router refuses concurrent calls for the same settlement; callers are
expected to serialize per settlement id.
"""

from __future__ import annotations

import asyncio
import logging

from aurumshield.adapters import SettlementRailAdapter
from aurumshield.config import RAIL_MODE_AUTO, ClearingConfig
from aurumshield.core.hasher import compute_idempotency_key
from aurumshield.models.payments import (
    RailAttempt,
    RailExecution,
    SettlementPayoutRequest,
    SettlementPayoutResult,
)

logger = logging.getLogger(__name__)


class ConcurrentRouteError(RuntimeError):
    """Raised when a settlement is already being routed."""

    def __init__(self, settlement_id: str) -> None:
        self.settlement_id = settlement_id
        super().__init__(f"Settlement {settlement_id} is already being routed")


class SettlementRailRouter:
    """Select, invoke, and fail over between two payment rails.

    Parameters
    ----------
    adapters:
        Rail adapters; each is registered under its ``rail_name``.
    mode:
        ``"auto"`` or the name of a registered rail to force.
    threshold_cents:
        Auto-mode split.  Amounts ``<=`` this go to the low-cost rail first.
    low_cost_rail, high_assurance_rail:
        Names of the two rails used in auto mode.
    timeout_seconds:
        Bound on each adapter call.
    """

    def __init__(
        self,
        adapters: list[SettlementRailAdapter],
        *,
        mode: str = RAIL_MODE_AUTO,
        threshold_cents: int = 25_000_000,
        low_cost_rail: str = "moov",
        high_assurance_rail: str = "modern_treasury",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._adapters: dict[str, SettlementRailAdapter] = {}
        for adapter in adapters:
            if adapter.rail_name in self._adapters:
                raise ValueError(f"Duplicate rail adapter: {adapter.rail_name}")
            self._adapters[adapter.rail_name] = adapter
            logger.info("Registered settlement rail: %s", adapter.rail_name)

        if mode == RAIL_MODE_AUTO:
            required = (low_cost_rail, high_assurance_rail)
        else:
            required = (mode,)
        missing = [name for name in required if name not in self._adapters]
        if missing:
            raise ValueError(f"No adapter registered for rail(s): {', '.join(missing)}")

        self._mode = mode
        self._threshold_cents = threshold_cents
        self._low_cost_rail = low_cost_rail
        self._high_assurance_rail = high_assurance_rail
        self._timeout_seconds = timeout_seconds
        self._in_flight: set[str] = set()

    @classmethod
    def from_config(
        cls, adapters: list[SettlementRailAdapter], config: ClearingConfig
    ) -> SettlementRailRouter:
        return cls(
            adapters,
            mode=config.rail_mode,
            threshold_cents=config.rail_threshold_cents,
            low_cost_rail=config.low_cost_rail,
            high_assurance_rail=config.high_assurance_rail,
            timeout_seconds=config.adapter_timeout_seconds,
        )

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def rail_names(self) -> list[str]:
        return sorted(self._adapters)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def plan(self, total_amount_cents: int) -> list[str]:
        """Return the ordered rails a payout of this size would try."""
        if self._mode != RAIL_MODE_AUTO:
            return [self._mode]
        if total_amount_cents <= self._threshold_cents:
            return [self._low_cost_rail, self._high_assurance_rail]
        return [self._high_assurance_rail, self._low_cost_rail]

    async def route_settlement(
        self, request: SettlementPayoutRequest
    ) -> SettlementPayoutResult:
        """Pay out one settlement, failing over once in auto mode.

        Never raises for rail failures; the outcome is reported in the
        returned ``SettlementPayoutResult``.

        Raises
        ------
        ConcurrentRouteError
            If the same settlement is already being routed.
        """
        settlement_id = request.settlement_id
        if settlement_id in self._in_flight:
            raise ConcurrentRouteError(settlement_id)
        self._in_flight.add(settlement_id)
        try:
            return await self._route(request)
        finally:
            self._in_flight.discard(settlement_id)

    async def _route(self, request: SettlementPayoutRequest) -> SettlementPayoutResult:
        if not request.idempotency_key:
            request = request.model_copy(
                update={
                    "idempotency_key": compute_idempotency_key(
                        request.settlement_id,
                        request.payee_id,
                        request.total_amount_cents,
                        request.action,
                    )
                }
            )

        rails = self.plan(request.total_amount_cents)
        attempts: list[RailAttempt] = []
        logger.info(
            "Routing settlement %s (%d cents) in %s mode via %s",
            request.settlement_id,
            request.total_amount_cents,
            self._mode,
            " -> ".join(rails),
        )

        for index, rail in enumerate(rails):
            execution = await self._attempt(rail, request)
            attempts.append(
                RailAttempt(rail=rail, success=execution.success, error=execution.error)
            )
            if execution.success:
                if index > 0:
                    logger.warning(
                        "Settlement %s settled on fallback rail %s after %s failed",
                        request.settlement_id,
                        rail,
                        rails[0],
                    )
                return SettlementPayoutResult(
                    success=True,
                    rail_used=rail,
                    is_fallback=index > 0,
                    external_ids=execution.external_ids,
                    seller_payout_cents=request.seller_payout_cents,
                    platform_fee_cents=request.platform_fee_cents,
                    idempotency_key=request.idempotency_key,
                    attempts=attempts,
                )

        logger.error(
            "Settlement %s payout failed on all rails: %s",
            request.settlement_id,
            "; ".join(f"{a.rail}: {a.error}" for a in attempts),
        )
        return SettlementPayoutResult(
            success=False,
            rail_used=rails[-1],
            is_fallback=False,
            seller_payout_cents=request.seller_payout_cents,
            platform_fee_cents=request.platform_fee_cents,
            idempotency_key=request.idempotency_key,
            attempts=attempts,
            error=attempts[-1].error,
        )

    async def _attempt(
        self, rail: str, request: SettlementPayoutRequest
    ) -> RailExecution:
        adapter = self._adapters[rail]
        try:
            return await asyncio.wait_for(
                adapter.execute(request), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                "Rail %s timed out after %.1fs for settlement %s",
                rail,
                self._timeout_seconds,
                request.settlement_id,
            )
            return RailExecution(
                success=False, error=f"{rail} timed out after {self._timeout_seconds}s"
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Rail %s raised for settlement %s: %s", rail, request.settlement_id, exc
            )
            return RailExecution(success=False, error=f"{rail} error: {exc}")
