"""Canonical hashing helpers for ledger seals, idempotency keys, and certificates.

Every hash in the clearing core is computed over the same canonical JSON
serialization so that a ledger replayed on another host, or a certificate
re-derived from its payload, produces byte-identical digests.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_hash(obj: Any) -> str:
    """SHA-256 of the canonical JSON form of a JSON-serializable object."""
    return sha256_hex(canonical_json_bytes(obj))


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself).

    This is the seal that makes each settlement ledger entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return content_hash(d)


def compute_idempotency_key(
    settlement_id: str,
    payee_id: str,
    amount_cents: int,
    action: str,
) -> str:
    """Deterministic payout idempotency key.

    The same settlement paying the same payee the same amount for the same
    action always yields the same key, so a rail adapter can de-duplicate a
    retried or fallback submission.
    """
    raw = f"{settlement_id}|{payee_id}|{amount_cents}|{action}"
    return sha256_hex(raw.encode("utf-8"))
