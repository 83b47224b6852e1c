"""Gold clearing certificate: issued once per settled case."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ClearingCertificate(BaseModel):
    """Proof that title and funds moved atomically for one settlement.

    ``signature_hash`` is the SHA-256 of the canonical certificate payload
    (every field except the signature fields).  ``signature`` is an optional
    Ed25519 signature over the same payload bytes.
    """

    model_config = ConfigDict(frozen=True)

    certificate_number: str
    issued_at: datetime
    settlement_id: str
    order_id: str
    buyer_org_id: str
    seller_org_id: str
    weight_oz: float
    price_per_oz_usd: float
    notional_usd: float
    currency: str
    rail: str
    corridor_id: str
    hub_id: str
    vault_hub_id: str
    authorization_entry_id: str
    dvp_ledger_entry_id: str
    signature_hash: str
    signature: str = ""
    signer_public_key: str = ""
