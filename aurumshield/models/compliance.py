"""Compliance case models: KYC/KYB case status graph and audit events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ComplianceCaseStatus(str, Enum):
    OPEN = "OPEN"
    PENDING_USER = "PENDING_USER"
    PENDING_PROVIDER = "PENDING_PROVIDER"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"


# Fixed transition graph: no dynamic rules.
# APPROVED and CLOSED are terminal; REJECTED only re-opens for re-application.
ALLOWED_TRANSITIONS: dict[ComplianceCaseStatus, frozenset[ComplianceCaseStatus]] = {
    ComplianceCaseStatus.OPEN: frozenset(
        {ComplianceCaseStatus.PENDING_USER, ComplianceCaseStatus.CLOSED}
    ),
    ComplianceCaseStatus.PENDING_USER: frozenset(
        {ComplianceCaseStatus.PENDING_PROVIDER, ComplianceCaseStatus.CLOSED}
    ),
    ComplianceCaseStatus.PENDING_PROVIDER: frozenset(
        {
            ComplianceCaseStatus.UNDER_REVIEW,
            ComplianceCaseStatus.APPROVED,
            ComplianceCaseStatus.REJECTED,
            ComplianceCaseStatus.PENDING_USER,
            ComplianceCaseStatus.CLOSED,
        }
    ),
    ComplianceCaseStatus.UNDER_REVIEW: frozenset(
        {
            ComplianceCaseStatus.APPROVED,
            ComplianceCaseStatus.REJECTED,
            ComplianceCaseStatus.PENDING_PROVIDER,
        }
    ),
    ComplianceCaseStatus.APPROVED: frozenset(),
    ComplianceCaseStatus.REJECTED: frozenset({ComplianceCaseStatus.OPEN}),
    ComplianceCaseStatus.CLOSED: frozenset(),
}


def is_valid_transition(
    current: ComplianceCaseStatus, target: ComplianceCaseStatus
) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ComplianceTier(str, Enum):
    BROWSE = "BROWSE"
    QUOTE = "QUOTE"
    LOCK = "LOCK"
    EXECUTE = "EXECUTE"


class EntityType(str, Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"


class EventActor(str, Enum):
    USER = "USER"
    PROVIDER = "PROVIDER"
    SYSTEM = "SYSTEM"


class ConflictReason(str, Enum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONCURRENT_CONFLICT = "CONCURRENT_CONFLICT"


class KycOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    REVIEW = "REVIEW"


class AmlOutcome(str, Enum):
    CLEAR = "CLEAR"
    POSSIBLE_MATCH = "POSSIBLE_MATCH"
    CONFIRMED_MATCH = "CONFIRMED_MATCH"


class ComplianceCase(BaseModel):
    """One KYC/KYB case per user.  Mutated only via the CAS transition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"cc-{uuid.uuid4().hex[:16]}")
    user_id: str
    org_id: str | None = None
    status: ComplianceCaseStatus = ComplianceCaseStatus.OPEN
    tier: ComplianceTier = ComplianceTier.BROWSE
    entity_type: EntityType = EntityType.INDIVIDUAL
    provider_inquiry_id: str | None = None
    jurisdiction: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ComplianceEvent(BaseModel):
    """Append-only audit record of a compliance case action."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    case_id: str
    actor: EventActor
    action: str
    details: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
