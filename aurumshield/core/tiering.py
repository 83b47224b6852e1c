"""Compliance tiering and capability gating.

A compliance case's tier decides which capabilities a user may exercise:

    BROWSE  -> browse the marketplace
    QUOTE   -> request quotes              (+ government ID)
    LOCK    -> lock a price                (+ liveness, sanctions/PEP)
    EXECUTE -> execute purchases and settle (+ KYB, UBO, address, source of funds)

Capabilities form a ladder; holding one implies every capability below it.
Only APPROVED cases unlock anything beyond BROWSE.
"""

from __future__ import annotations

from enum import Enum

from aurumshield.models.compliance import (
    ComplianceCase,
    ComplianceCaseStatus,
    ComplianceTier,
    EntityType,
)

# Jurisdictions requiring enhanced due diligence (ISO 3166-1 alpha-2).
HIGH_RISK_JURISDICTIONS: frozenset[str] = frozenset(
    {
        "RU", "IR", "KP", "SY", "CU", "VE", "MM", "BY",
        "ZW", "SD", "CF", "CD", "LY", "SO", "YE", "SS",
    }
)

QUOTE_THRESHOLD_USD = 2_500.0
LOCK_THRESHOLD_USD = 10_000.0

TIER_ORDER: list[ComplianceTier] = [
    ComplianceTier.BROWSE,
    ComplianceTier.QUOTE,
    ComplianceTier.LOCK,
    ComplianceTier.EXECUTE,
]

# Cumulative verification steps per tier.
TIER_REQUIRED_STEPS: dict[ComplianceTier, list[str]] = {
    ComplianceTier.BROWSE: ["email_verified", "webauthn_enrolled"],
    ComplianceTier.QUOTE: ["email_verified", "webauthn_enrolled", "id_document"],
    ComplianceTier.LOCK: [
        "email_verified",
        "webauthn_enrolled",
        "id_document",
        "selfie_liveness",
        "sanctions_pep",
    ],
    ComplianceTier.EXECUTE: [
        "email_verified",
        "webauthn_enrolled",
        "id_document",
        "selfie_liveness",
        "sanctions_pep",
        "business_registration",
        "ubo_capture",
        "proof_of_address",
        "source_of_funds",
    ],
}


class Capability(str, Enum):
    BROWSE = "BROWSE"
    QUOTE = "QUOTE"
    LOCK_PRICE = "LOCK_PRICE"
    EXECUTE_PURCHASE = "EXECUTE_PURCHASE"
    SETTLE = "SETTLE"


CAPABILITY_LADDER: list[Capability] = [
    Capability.BROWSE,
    Capability.QUOTE,
    Capability.LOCK_PRICE,
    Capability.EXECUTE_PURCHASE,
    Capability.SETTLE,
]

TIER_TO_CAPABILITY: dict[ComplianceTier, Capability] = {
    ComplianceTier.BROWSE: Capability.BROWSE,
    ComplianceTier.QUOTE: Capability.QUOTE,
    ComplianceTier.LOCK: Capability.LOCK_PRICE,
    ComplianceTier.EXECUTE: Capability.SETTLE,
}


class CapabilityDeniedError(RuntimeError):
    """Raised when a user's compliance standing does not grant a capability."""

    def __init__(self, user_id: str, capability: Capability, maximum: Capability, reason: str) -> None:
        self.user_id = user_id
        self.capability = capability
        self.maximum = maximum
        self.reason = reason
        super().__init__(
            f"{reason}: {capability.value} denied for user {user_id} "
            f"(maximum {maximum.value})"
        )


def tier_at_least(a: ComplianceTier, b: ComplianceTier) -> bool:
    return TIER_ORDER.index(a) >= TIER_ORDER.index(b)


def compute_tier_for_profile(
    entity_type: EntityType,
    jurisdiction: str | None,
    transaction_amount_usd: float | None = None,
) -> ComplianceTier:
    """Target tier for a profile.

    Companies and high-risk jurisdictions always need full verification;
    individuals scale with the intended transaction size.
    """
    if entity_type == EntityType.COMPANY:
        return ComplianceTier.EXECUTE
    if jurisdiction and jurisdiction.upper() in HIGH_RISK_JURISDICTIONS:
        return ComplianceTier.EXECUTE
    if transaction_amount_usd is not None:
        if transaction_amount_usd > LOCK_THRESHOLD_USD:
            return ComplianceTier.LOCK
        if transaction_amount_usd > QUOTE_THRESHOLD_USD:
            return ComplianceTier.QUOTE
    return ComplianceTier.BROWSE


def evaluate_tier_from_case(
    status: ComplianceCaseStatus,
    completed_steps: list[str],
    *,
    parallel_engagement: bool = False,
) -> ComplianceTier:
    """Highest tier whose required steps are all complete.

    Non-approved cases stay at BROWSE, including UNDER_REVIEW cases with
    parallel engagement enabled.
    """
    if status != ComplianceCaseStatus.APPROVED:
        return ComplianceTier.BROWSE
    completed = set(completed_steps)
    for tier in reversed(TIER_ORDER):
        if all(step in completed for step in TIER_REQUIRED_STEPS[tier]):
            return tier
    return ComplianceTier.BROWSE


def max_capability(case: ComplianceCase | None) -> Capability:
    if case is None or case.status != ComplianceCaseStatus.APPROVED:
        return Capability.BROWSE
    return TIER_TO_CAPABILITY[case.tier]


def has_capability(case: ComplianceCase | None, capability: Capability) -> bool:
    maximum = max_capability(case)
    return CAPABILITY_LADDER.index(capability) <= CAPABILITY_LADDER.index(maximum)


def require_capability(
    user_id: str, case: ComplianceCase | None, capability: Capability
) -> None:
    """Raise ``CapabilityDeniedError`` unless the case grants ``capability``."""
    if has_capability(case, capability):
        return
    maximum = max_capability(case)
    if case is None:
        reason = "COMPLIANCE_DENIED"
    elif case.status == ComplianceCaseStatus.UNDER_REVIEW:
        reason = "COMPLIANCE_UNDER_REVIEW"
    elif case.status != ComplianceCaseStatus.APPROVED:
        reason = "COMPLIANCE_NOT_APPROVED"
    else:
        reason = "COMPLIANCE_TIER_INSUFFICIENT"
    raise CapabilityDeniedError(user_id, capability, maximum, reason)
