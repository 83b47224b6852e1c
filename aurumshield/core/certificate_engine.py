"""Gold clearing certificate issuance and verification.

A certificate is derived entirely from a SETTLED case and its ledger, so
re-issuing it from the same ledger yields the same number, timestamp and
signature hash.  The number is keyed on the DvP ledger entry, which the
ledger seal makes unique per settlement.

Signing uses Ed25519 via PyNaCl when a signing key is configured; the
signature covers the same canonical payload bytes as ``signature_hash``.
"""

from __future__ import annotations

import logging
from typing import Any

import nacl.signing
from nacl.exceptions import BadSignatureError

from aurumshield.core.hasher import canonical_json_bytes, sha256_hex
from aurumshield.models.certificate import ClearingCertificate
from aurumshield.models.settlement import (
    LedgerEntry,
    LedgerEntryType,
    SettlementCase,
    SettlementStatus,
)

logger = logging.getLogger(__name__)

CERTIFICATE_PREFIX = "AS-GC"

_SIGNATURE_FIELDS = {"signature_hash", "signature", "signer_public_key"}


class CertificateError(RuntimeError):
    """Raised when a settlement cannot be certified."""


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_signing_keypair() -> tuple[str, str]:
    """Return a fresh ``(private_key_hex, public_key_hex)`` Ed25519 pair."""
    sk = nacl.signing.SigningKey.generate()
    return sk.encode().hex(), sk.verify_key.encode().hex()


def public_key_for(signing_key: str) -> str:
    return nacl.signing.SigningKey(bytes.fromhex(signing_key)).verify_key.encode().hex()


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


def certificate_number(settlement_id: str, dvp_entry: LedgerEntry) -> str:
    """``AS-GC-YYYYMMDD-XXXXXXXX``, dated by the DvP and keyed on its entry."""
    digest = sha256_hex(f"{settlement_id}|{dvp_entry.entry_id}".encode("utf-8"))
    return f"{CERTIFICATE_PREFIX}-{dvp_entry.timestamp:%Y%m%d}-{digest[:8].upper()}"


def certificate_payload(certificate: ClearingCertificate) -> dict[str, Any]:
    """The signed portion of a certificate as JSON-safe data."""
    return certificate.model_dump(mode="json", exclude=_SIGNATURE_FIELDS)


def issue_certificate(
    settlement: SettlementCase,
    entries: list[LedgerEntry],
    *,
    signing_key: str = "",
) -> ClearingCertificate:
    """Issue the clearing certificate for a settled case.

    Parameters
    ----------
    settlement:
        The case; must be SETTLED.
    entries:
        The settlement's full ledger in sequence order.
    signing_key:
        Optional hex Ed25519 private key.  Without it the certificate
        carries only its content hash.

    Raises
    ------
    CertificateError
        If the case is not settled, or the ledger lacks a DvP entry backed
        by an earlier authorization.
    """
    if settlement.status != SettlementStatus.SETTLED:
        raise CertificateError(
            f"Settlement {settlement.id} is {settlement.status.value}; "
            "certificates are issued only for SETTLED cases"
        )

    dvp = next(
        (e for e in reversed(entries) if e.type == LedgerEntryType.DVP_EXECUTED), None
    )
    if dvp is None:
        raise CertificateError(f"Settlement {settlement.id} has no DVP_EXECUTED entry")

    authorization_id = dvp.metadata.get("authorization_entry_id", "")
    authorization = next(
        (
            e
            for e in entries
            if e.entry_id == authorization_id
            and e.type == LedgerEntryType.AUTHORIZATION
            and e.sequence < dvp.sequence
        ),
        None,
    )
    if authorization is None:
        raise CertificateError(
            f"Settlement {settlement.id}: DvP entry {dvp.entry_id} does not "
            "reference a preceding AUTHORIZATION entry"
        )

    unsigned = ClearingCertificate(
        certificate_number=certificate_number(settlement.id, dvp),
        issued_at=dvp.timestamp,
        settlement_id=settlement.id,
        order_id=settlement.order_id,
        buyer_org_id=settlement.buyer_org_id,
        seller_org_id=settlement.seller_org_id,
        weight_oz=settlement.weight_oz,
        price_per_oz_usd=settlement.price_per_oz_locked,
        notional_usd=settlement.notional_usd,
        currency=settlement.currency,
        rail=settlement.rail or dvp.metadata.get("rail_used", ""),
        corridor_id=settlement.corridor_id,
        hub_id=settlement.hub_id,
        vault_hub_id=settlement.vault_hub_id,
        authorization_entry_id=authorization.entry_id,
        dvp_ledger_entry_id=dvp.entry_id,
        signature_hash="",
    )
    payload_bytes = canonical_json_bytes(certificate_payload(unsigned))
    update: dict[str, Any] = {"signature_hash": sha256_hex(payload_bytes)}
    if signing_key:
        sk = nacl.signing.SigningKey(bytes.fromhex(signing_key))
        update["signature"] = sk.sign(payload_bytes).signature.hex()
        update["signer_public_key"] = sk.verify_key.encode().hex()

    certificate = unsigned.model_copy(update=update)
    logger.info(
        "Issued clearing certificate %s for settlement %s (signed=%s)",
        certificate.certificate_number,
        settlement.id,
        bool(certificate.signature),
    )
    return certificate


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_certificate(certificate: ClearingCertificate, public_key: str = "") -> bool:
    """Check a certificate's content hash and, if present, its signature.

    When ``public_key`` is given the certificate must be signed by that
    key; the embedded ``signer_public_key`` is not trusted on its own.
    """
    payload_bytes = canonical_json_bytes(certificate_payload(certificate))
    if sha256_hex(payload_bytes) != certificate.signature_hash:
        return False

    if not certificate.signature:
        return not public_key

    key = public_key or certificate.signer_public_key
    if not key:
        return False
    try:
        nacl.signing.VerifyKey(bytes.fromhex(key)).verify(
            payload_bytes, bytes.fromhex(certificate.signature)
        )
    except (BadSignatureError, ValueError):
        return False
    return True
