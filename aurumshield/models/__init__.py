"""AurumShield data models: all Pydantic v2, all frozen (immutable)."""

from aurumshield.models.certificate import ClearingCertificate
from aurumshield.models.compliance import (
    ALLOWED_TRANSITIONS,
    AmlOutcome,
    ComplianceCase,
    ComplianceCaseStatus,
    ComplianceEvent,
    ComplianceTier,
    EntityType,
    EventActor,
    KycOutcome,
)
from aurumshield.models.payments import (
    RailAttempt,
    RailExecution,
    SettlementPayoutRequest,
    SettlementPayoutResult,
    ShipmentResult,
)
from aurumshield.models.risk import (
    ApprovalResult,
    ApprovalTier,
    BlockerKind,
    BlockerSeverity,
    CapitalSnapshot,
    CapitalValidation,
    Corridor,
    Counterparty,
    Hub,
    PolicyBlocker,
    PolicyContext,
    PolicyEvaluation,
    RiskConfiguration,
    RiskLevel,
    TRIBand,
    TRIResult,
    VerificationEvidence,
)
from aurumshield.models.settlement import (
    VALID_TRANSITIONS,
    Actor,
    LedgerEntry,
    LedgerEntryType,
    SettlementAction,
    SettlementCase,
    SettlementStatus,
    UserRole,
)

__all__ = [
    # certificate
    "ClearingCertificate",
    # compliance
    "ALLOWED_TRANSITIONS",
    "AmlOutcome",
    "ComplianceCase",
    "ComplianceCaseStatus",
    "ComplianceEvent",
    "ComplianceTier",
    "EntityType",
    "EventActor",
    "KycOutcome",
    # payments
    "RailAttempt",
    "RailExecution",
    "SettlementPayoutRequest",
    "SettlementPayoutResult",
    "ShipmentResult",
    # risk
    "ApprovalResult",
    "ApprovalTier",
    "BlockerKind",
    "BlockerSeverity",
    "CapitalSnapshot",
    "CapitalValidation",
    "Corridor",
    "Counterparty",
    "Hub",
    "PolicyBlocker",
    "PolicyContext",
    "PolicyEvaluation",
    "RiskConfiguration",
    "RiskLevel",
    "TRIBand",
    "TRIResult",
    "VerificationEvidence",
    # settlement
    "VALID_TRANSITIONS",
    "Actor",
    "LedgerEntry",
    "LedgerEntryType",
    "SettlementAction",
    "SettlementCase",
    "SettlementStatus",
    "UserRole",
]
