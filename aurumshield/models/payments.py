"""Rail and logistics boundary models for DvP execution."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SettlementPayoutRequest(BaseModel):
    """Funds leg of a DvP: pay the seller, sweep the platform fee."""

    model_config = ConfigDict(frozen=True)

    settlement_id: str
    payee_id: str
    payee_name: str = ""
    total_amount_cents: int = Field(gt=0)
    seller_payout_cents: int = Field(ge=0)
    platform_fee_cents: int = Field(ge=0)
    currency: str = "USD"
    action: str = "EXECUTE_DVP"
    idempotency_key: str = ""


class RailExecution(BaseModel):
    """What a single rail adapter reports back for one submission."""

    model_config = ConfigDict(frozen=True)

    success: bool
    external_ids: list[str] = []
    error: str | None = None


class RailAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    rail: str
    success: bool
    error: str | None = None


class SettlementPayoutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    rail_used: str
    is_fallback: bool = False
    external_ids: list[str] = []
    seller_payout_cents: int = 0
    platform_fee_cents: int = 0
    idempotency_key: str = ""
    attempts: list[RailAttempt] = []
    error: str | None = None


class ShipmentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    carrier: str
    tracking_number: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None
