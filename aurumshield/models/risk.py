"""Risk and capital models consumed and produced by the policy engine.

Inputs (counterparty, corridor, hub, evidence, capital snapshot) are
read-only snapshots supplied by external systems.  Outputs (TRI, capital
validation, blockers, approval) are ephemeral: they are recomputed on every
evaluation and only persisted when embedded in a ledger entry snapshot.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Policy inputs
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CounterpartyStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    UNDER_REVIEW = "under-review"
    CLOSED = "closed"
    SUSPENDED = "suspended"


class CorridorStatus(str, Enum):
    ACTIVE = "active"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


class HubStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class BreachLevel(str, Enum):
    """Breach classification reported by the capital aggregator."""

    NONE = "none"
    CAUTION = "caution"
    BREACH = "breach"


class BreachEventType(str, Enum):
    ECR_CAUTION = "ECR_CAUTION"
    ECR_BREACH = "ECR_BREACH"
    HARDSTOP_CAUTION = "HARDSTOP_CAUTION"
    HARDSTOP_BREACH = "HARDSTOP_BREACH"
    BUFFER_NEGATIVE = "BUFFER_NEGATIVE"


class BreachEvent(BaseModel):
    """A breach recorded by the capital monitor."""

    model_config = ConfigDict(frozen=True)

    type: BreachEventType
    occurred_at: AwareDatetime
    message: str = ""


class Counterparty(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    legal_name: str
    risk_level: RiskLevel = RiskLevel.LOW
    status: CounterpartyStatus = CounterpartyStatus.ACTIVE
    jurisdiction: str = ""


class Corridor(BaseModel):
    """A jurisdictional trade lane between a source and destination."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    status: CorridorStatus = CorridorStatus.ACTIVE


class Hub(BaseModel):
    """A vault or transit hub holding physical metal."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    status: HubStatus = HubStatus.OPERATIONAL


class VerificationEvidence(BaseModel):
    """KYC and sanctions screening evidence for the counterparty."""

    model_config = ConfigDict(frozen=True)

    kyc_verified: bool = False
    sanctions_cleared: bool = False
    reference: str = ""
    verified_at: datetime | None = None


class CapitalSnapshot(BaseModel):
    """Point-in-time capital position produced by the capital aggregator.

    Construction fails fast (``pydantic.ValidationError``, a ``ValueError``)
    on a non-positive capital base or hardstop limit, a negative exposure,
    or an ``as_of`` without a timezone.

    ``top_driver`` names the largest contributor to gross exposure (e.g.
    ``"reservations"``); ``recent_breach_events`` is the monitor's recent
    history, consulted by the capital controls.
    """

    model_config = ConfigDict(frozen=True)

    capital_base: float = Field(gt=0)
    gross_exposure_notional: float = Field(ge=0)
    hardstop_limit: float = Field(gt=0)
    breach_level: BreachLevel = BreachLevel.NONE
    top_driver: str = ""
    recent_breach_events: list[BreachEvent] = []
    as_of: AwareDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ecr(self) -> float:
        """Exposure Coverage Ratio: gross exposure over capital base."""
        return self.gross_exposure_notional / self.capital_base

    @property
    def hardstop_utilization(self) -> float:
        return self.gross_exposure_notional / self.hardstop_limit


class PolicyContext(BaseModel):
    """Everything besides capital that the policy engine needs for one case."""

    model_config = ConfigDict(frozen=True)

    counterparty: Counterparty
    corridor: Corridor
    hub: Hub | None = None
    evidence: VerificationEvidence | None = None


# ---------------------------------------------------------------------------
# Risk configuration
# ---------------------------------------------------------------------------


class RiskConfiguration(BaseModel):
    """Thresholds and limits applied by the policy engine.

    Approval limits are expressed in cents to avoid float drift at the
    tier boundaries.
    """

    model_config = ConfigDict(frozen=True)

    max_ecr_ratio: float = 8.0
    ecr_warn_ratio: float = 7.0
    hardstop_util_ceiling: float = 0.90
    hardstop_util_warn: float = 0.80
    tri_critical_threshold: int = 8
    tri_elevated_threshold: int = 7
    tri_warn_threshold: int = 5
    tri_concentration_factor: float = 0.5
    red_band_block_notional_usd: float = 50_000_000.0
    auto_approval_limit_cents: int = 2_500_000_000
    desk_head_limit_cents: int = 5_000_000_000
    credit_committee_limit_cents: int = 10_000_000_000
    # Capital controls escalation
    control_throttle_util: float = 0.90
    control_freeze_util: float = 0.93
    control_ecr_freeze_multiplier: float = 1.05
    buffer_negative_lookback_seconds: float = 3600.0


# ---------------------------------------------------------------------------
# Policy outputs
# ---------------------------------------------------------------------------


class TRIBand(str, Enum):
    GREEN = "green"
    AMBER = "amber"
    RED = "red"


class TRIComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    raw: float
    weight: float
    weighted: float


class TRIResult(BaseModel):
    """Transaction Risk Index: a weighted composite score in 1..10."""

    model_config = ConfigDict(frozen=True)

    score: int
    band: TRIBand
    components: list[TRIComponent]
    formula: str = ""


class CapitalValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_exposure: float
    post_txn_exposure: float
    capital_base: float
    current_ecr: float
    post_txn_ecr: float
    hardstop_limit: float
    current_hardstop_util: float
    post_txn_hardstop_util: float
    hardstop_remaining: float


class BlockerSeverity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    INFO = "INFO"


class BlockerKind(str, Enum):
    """Closed set of policy rules that can fire a blocker."""

    KYC_NOT_VERIFIED = "kyc-not-verified"
    SANCTIONS_NOT_CLEARED = "sanctions-not-cleared"
    COUNTERPARTY_SUSPENDED = "cp-suspended"
    COUNTERPARTY_UNDER_REVIEW = "cp-under-review"
    COUNTERPARTY_PENDING = "cp-pending"
    COUNTERPARTY_CLOSED = "cp-closed"
    CORRIDOR_SUSPENDED = "corridor-suspended"
    CORRIDOR_RESTRICTED = "corridor-restricted"
    HUB_OFFLINE = "hub-offline"
    HUB_IMPAIRED = "hub-impaired"
    HARDSTOP_REMAINING_EXCEEDED = "hardstop-remaining"
    HARDSTOP_CEILING_BREACH = "hardstop-ceiling"
    HARDSTOP_UTILIZATION_WARNING = "hardstop-warning"
    ECR_BREACH = "ecr-breach"
    ECR_WARNING = "ecr-warning"
    TRI_CONCENTRATION = "tri-concentration"
    TRI_RED_BAND = "tri-red-band"
    CAPITAL_CONTROL_BLOCK = "capital-control-block"
    CAPITAL_CONTROL_ACTIVE = "capital-control-active"


# Every BlockerKind must have a title; enforced by tests/unit/test_policy_engine.py.
BLOCKER_TITLES: dict[BlockerKind, str] = {
    BlockerKind.KYC_NOT_VERIFIED: "Counterparty KYC Not Verified",
    BlockerKind.SANCTIONS_NOT_CLEARED: "Sanctions Screening Not Cleared",
    BlockerKind.COUNTERPARTY_SUSPENDED: "Counterparty Suspended",
    BlockerKind.COUNTERPARTY_UNDER_REVIEW: "Counterparty Under Review",
    BlockerKind.COUNTERPARTY_PENDING: "Counterparty Onboarding Pending",
    BlockerKind.COUNTERPARTY_CLOSED: "Counterparty Relationship Closed",
    BlockerKind.CORRIDOR_SUSPENDED: "Corridor Suspended",
    BlockerKind.CORRIDOR_RESTRICTED: "Corridor Restricted",
    BlockerKind.HUB_OFFLINE: "Hub Offline",
    BlockerKind.HUB_IMPAIRED: "Hub Operating Impaired",
    BlockerKind.HARDSTOP_REMAINING_EXCEEDED: "Hardstop Limit Exceeded",
    BlockerKind.HARDSTOP_CEILING_BREACH: "Hardstop Utilization Ceiling Breach",
    BlockerKind.HARDSTOP_UTILIZATION_WARNING: "Hardstop Utilization Elevated",
    BlockerKind.ECR_BREACH: "ECR Limit Breach",
    BlockerKind.ECR_WARNING: "ECR Approaching Limit",
    BlockerKind.TRI_CONCENTRATION: "High-Risk Concentration",
    BlockerKind.TRI_RED_BAND: "Elevated Transaction Risk",
    BlockerKind.CAPITAL_CONTROL_BLOCK: "Blocked by Capital Controls",
    BlockerKind.CAPITAL_CONTROL_ACTIVE: "Capital Controls Engaged",
}


class PolicyBlocker(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: BlockerKind
    severity: BlockerSeverity
    title: str
    detail: str


class ApprovalTier(str, Enum):
    AUTO = "auto"
    DESK_HEAD = "desk-head"
    CREDIT_COMMITTEE = "credit-committee"
    BOARD = "board"


# Escalation order; a higher rank never lowers the required tier.
APPROVAL_TIER_RANK: dict[ApprovalTier, int] = {
    ApprovalTier.AUTO: 0,
    ApprovalTier.DESK_HEAD: 1,
    ApprovalTier.CREDIT_COMMITTEE: 2,
    ApprovalTier.BOARD: 3,
}

APPROVAL_TIER_LABELS: dict[ApprovalTier, str] = {
    ApprovalTier.AUTO: "Auto-Approved",
    ApprovalTier.DESK_HEAD: "Desk Head Approval",
    ApprovalTier.CREDIT_COMMITTEE: "Credit Committee Approval",
    ApprovalTier.BOARD: "Board Approval",
}


class ApprovalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: ApprovalTier
    label: str
    reason: str


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class ComplianceCheck(BaseModel):
    """One line of the pre-transaction audit checklist."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    status: CheckStatus
    detail: str


class ControlMode(str, Enum):
    """Capital control escalation ladder, least to most severe."""

    NORMAL = "NORMAL"
    THROTTLE_RESERVATIONS = "THROTTLE_RESERVATIONS"
    FREEZE_CONVERSIONS = "FREEZE_CONVERSIONS"
    FREEZE_MARKETPLACE = "FREEZE_MARKETPLACE"
    EMERGENCY_HALT = "EMERGENCY_HALT"


CONTROL_MODE_SEVERITY: dict[ControlMode, int] = {
    ControlMode.NORMAL: 0,
    ControlMode.THROTTLE_RESERVATIONS: 1,
    ControlMode.FREEZE_CONVERSIONS: 2,
    ControlMode.FREEZE_MARKETPLACE: 3,
    ControlMode.EMERGENCY_HALT: 4,
}


class ControlAction(str, Enum):
    """Actions gated by capital controls."""

    CREATE_RESERVATION = "CREATE_RESERVATION"
    CONVERT_RESERVATION = "CONVERT_RESERVATION"
    PUBLISH_LISTING = "PUBLISH_LISTING"
    OPEN_SETTLEMENT = "OPEN_SETTLEMENT"
    EXECUTE_DVP = "EXECUTE_DVP"


class CapitalControlDecision(BaseModel):
    """Control mode derived from one capital snapshot."""

    model_config = ConfigDict(frozen=True)

    mode: ControlMode
    reasons: list[str] = []
    blocks: dict[ControlAction, bool]
    max_reservation_notional: float | None = None
    snapshot_hash: str
    as_of: datetime

    def is_blocked(self, action: ControlAction) -> bool:
        return self.blocks[action]


class PolicyEvaluation(BaseModel):
    """Full result of one policy evaluation for a prospective transaction."""

    model_config = ConfigDict(frozen=True)

    notional_usd: float
    tri: TRIResult
    capital: CapitalValidation
    blockers: list[PolicyBlocker]
    approval: ApprovalResult
    checks: list[ComplianceCheck]
    controls: CapitalControlDecision | None = None
    evaluated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def blocked(self) -> bool:
        return any(b.severity == BlockerSeverity.BLOCK for b in self.blockers)
