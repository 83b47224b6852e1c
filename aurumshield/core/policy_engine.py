"""Deterministic risk/capital policy engine.

Pure functions, no I/O.  Identical inputs always yield identical outputs so
that any decision recorded in the settlement ledger can be replayed for
audit.  Business conditions are reported as data (``PolicyBlocker``); only
malformed input raises.

Pipeline for one prospective transaction::

    compute_tri ─┐
    validate_capital ─┼─> check_blockers ─> determine_approval
                      └─> run_compliance_checks

Capital controls (``capital_controls``) add their blockers for the gated
action ahead of ``determine_approval``.
"""

from __future__ import annotations

import math

from aurumshield.core.capital_controls import control_blockers, evaluate_capital_controls
from aurumshield.models.risk import (
    APPROVAL_TIER_LABELS,
    APPROVAL_TIER_RANK,
    BLOCKER_TITLES,
    ApprovalResult,
    ApprovalTier,
    BlockerKind,
    BlockerSeverity,
    CapitalSnapshot,
    CapitalValidation,
    CheckStatus,
    ComplianceCheck,
    ControlAction,
    Corridor,
    CorridorStatus,
    Counterparty,
    CounterpartyStatus,
    Hub,
    HubStatus,
    PolicyBlocker,
    PolicyContext,
    PolicyEvaluation,
    RiskConfiguration,
    RiskLevel,
    TRIBand,
    TRIComponent,
    TRIResult,
    VerificationEvidence,
)
from aurumshield.models.settlement import LedgerEntrySnapshot, SettlementCase

DEFAULT_RISK_CONFIG = RiskConfiguration()

# ---------------------------------------------------------------------------
# TRI weights and raw score tables
# ---------------------------------------------------------------------------

TRI_WEIGHTS: dict[str, float] = {
    "counterparty_risk": 0.35,
    "corridor_risk": 0.25,
    "concentration": 0.15,
    "size": 0.10,
    "counterparty_status": 0.15,
}

TRI_MIN_SCORE = 1
TRI_MAX_SCORE = 10

RISK_LEVEL_SCORES: dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 3,
    RiskLevel.HIGH: 6,
    RiskLevel.CRITICAL: 9,
}

COUNTERPARTY_STATUS_SCORES: dict[CounterpartyStatus, int] = {
    CounterpartyStatus.ACTIVE: 0,
    CounterpartyStatus.PENDING: 2,
    CounterpartyStatus.UNDER_REVIEW: 4,
    CounterpartyStatus.CLOSED: 6,
    CounterpartyStatus.SUSPENDED: 8,
}

# (inclusive upper bound in USD, raw size score); anything larger scores 10.
SIZE_BUCKETS: list[tuple[float, int]] = [
    (1_000_000.0, 1),
    (5_000_000.0, 3),
    (25_000_000.0, 5),
    (100_000_000.0, 7),
]

# TRI score ceiling for each approval tier below board.
TRI_TIER_CEILINGS: list[tuple[int, ApprovalTier]] = [
    (3, ApprovalTier.AUTO),
    (5, ApprovalTier.DESK_HEAD),
    (7, ApprovalTier.CREDIT_COMMITTEE),
]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _require_notional(notional: float) -> None:
    if notional < 0 or math.isnan(notional):
        raise ValueError(f"notional must be a non-negative amount, got {notional!r}")


def tri_band(score: int) -> TRIBand:
    if score <= 3:
        return TRIBand.GREEN
    if score <= 6:
        return TRIBand.AMBER
    return TRIBand.RED


def _size_score(notional: float) -> int:
    for upper, score in SIZE_BUCKETS:
        if notional <= upper:
            return score
    return TRI_MAX_SCORE


# ---------------------------------------------------------------------------
# TRI
# ---------------------------------------------------------------------------


def compute_tri(
    counterparty: Counterparty,
    corridor: Corridor,
    notional: float,
    capital: CapitalSnapshot,
) -> TRIResult:
    """Compute the Transaction Risk Index for a prospective transaction.

    Parameters
    ----------
    counterparty:
        The trading counterparty (risk level and relationship status).
    corridor:
        The trade corridor the metal moves through.
    notional:
        Transaction notional in USD.
    capital:
        The capital snapshot the concentration component is measured against.

    Returns
    -------
    TRIResult
        Score clamped to 1..10, its band, and every weighted component.
    """
    _require_notional(notional)

    concentration = _clamp(
        math.ceil(notional / capital.hardstop_limit * 20), TRI_MIN_SCORE, TRI_MAX_SCORE
    )
    raws: dict[str, float] = {
        "counterparty_risk": RISK_LEVEL_SCORES[counterparty.risk_level],
        "corridor_risk": RISK_LEVEL_SCORES[corridor.risk_level],
        "concentration": concentration,
        "size": _size_score(notional),
        "counterparty_status": COUNTERPARTY_STATUS_SCORES[counterparty.status],
    }

    components = [
        TRIComponent(
            name=name,
            raw=raw,
            weight=TRI_WEIGHTS[name],
            weighted=raw * TRI_WEIGHTS[name],
        )
        for name, raw in raws.items()
    ]
    raw_total = sum(c.weighted for c in components)
    score = _clamp(_round_half_up(raw_total), TRI_MIN_SCORE, TRI_MAX_SCORE)

    terms = " + ".join(f"({c.name}:{c.raw:g} x {c.weight})" for c in components)
    return TRIResult(
        score=score,
        band=tri_band(score),
        components=components,
        formula=f"TRI = {terms} = {raw_total:.2f} -> {score}",
    )


# ---------------------------------------------------------------------------
# Capital
# ---------------------------------------------------------------------------


def validate_capital(notional: float, capital: CapitalSnapshot) -> CapitalValidation:
    """Project the capital position after adding ``notional`` to exposure."""
    _require_notional(notional)
    exposure = capital.gross_exposure_notional
    post_exposure = exposure + notional
    return CapitalValidation(
        current_exposure=exposure,
        post_txn_exposure=post_exposure,
        capital_base=capital.capital_base,
        current_ecr=exposure / capital.capital_base,
        post_txn_ecr=post_exposure / capital.capital_base,
        hardstop_limit=capital.hardstop_limit,
        current_hardstop_util=exposure / capital.hardstop_limit,
        post_txn_hardstop_util=post_exposure / capital.hardstop_limit,
        hardstop_remaining=capital.hardstop_limit - exposure,
    )


# ---------------------------------------------------------------------------
# Blockers
# ---------------------------------------------------------------------------


def _blocker(kind: BlockerKind, severity: BlockerSeverity, detail: str) -> PolicyBlocker:
    return PolicyBlocker(
        id=kind, severity=severity, title=BLOCKER_TITLES[kind], detail=detail
    )


def _counterparty_blockers(counterparty: Counterparty) -> list[PolicyBlocker]:
    name = counterparty.legal_name
    status = counterparty.status
    if status == CounterpartyStatus.SUSPENDED:
        return [_blocker(
            BlockerKind.COUNTERPARTY_SUSPENDED, BlockerSeverity.BLOCK,
            f"{name} is suspended; transactions blocked.",
        )]
    if status == CounterpartyStatus.CLOSED:
        return [_blocker(
            BlockerKind.COUNTERPARTY_CLOSED, BlockerSeverity.BLOCK,
            f"{name} relationship is closed.",
        )]
    if status == CounterpartyStatus.UNDER_REVIEW:
        return [_blocker(
            BlockerKind.COUNTERPARTY_UNDER_REVIEW, BlockerSeverity.WARN,
            f"{name} is under active review.",
        )]
    if status == CounterpartyStatus.PENDING:
        return [_blocker(
            BlockerKind.COUNTERPARTY_PENDING, BlockerSeverity.INFO,
            f"{name} onboarding is pending.",
        )]
    return []


def _evidence_blockers(evidence: VerificationEvidence | None) -> list[PolicyBlocker]:
    # Missing evidence is treated as unverified.
    blockers: list[PolicyBlocker] = []
    if evidence is None or not evidence.kyc_verified:
        blockers.append(_blocker(
            BlockerKind.KYC_NOT_VERIFIED, BlockerSeverity.BLOCK,
            "No verified KYC/KYB evidence on file for the counterparty.",
        ))
    if evidence is None or not evidence.sanctions_cleared:
        blockers.append(_blocker(
            BlockerKind.SANCTIONS_NOT_CLEARED, BlockerSeverity.BLOCK,
            "Sanctions screening has not cleared the counterparty.",
        ))
    return blockers


def _corridor_blockers(corridor: Corridor) -> list[PolicyBlocker]:
    name = corridor.name or corridor.id
    if corridor.status == CorridorStatus.SUSPENDED:
        return [_blocker(
            BlockerKind.CORRIDOR_SUSPENDED, BlockerSeverity.BLOCK,
            f"{name} corridor is suspended.",
        )]
    if corridor.status == CorridorStatus.RESTRICTED:
        return [_blocker(
            BlockerKind.CORRIDOR_RESTRICTED, BlockerSeverity.WARN,
            f"{name} corridor is restricted; enhanced due diligence required.",
        )]
    return []


def _hub_blockers(hub: Hub | None) -> list[PolicyBlocker]:
    if hub is None:
        return []
    name = hub.name or hub.id
    if hub.status == HubStatus.OFFLINE:
        return [_blocker(
            BlockerKind.HUB_OFFLINE, BlockerSeverity.BLOCK, f"{name} is offline."
        )]
    if hub.status in (HubStatus.MAINTENANCE, HubStatus.DEGRADED):
        return [_blocker(
            BlockerKind.HUB_IMPAIRED, BlockerSeverity.WARN,
            f"{name} is in {hub.status.value} mode; delays possible.",
        )]
    return []


def _capital_blockers(
    notional: float, validation: CapitalValidation, config: RiskConfiguration
) -> list[PolicyBlocker]:
    blockers: list[PolicyBlocker] = []
    remaining = validation.hardstop_remaining
    util = validation.post_txn_hardstop_util
    ecr = validation.post_txn_ecr

    if notional > remaining:
        blockers.append(_blocker(
            BlockerKind.HARDSTOP_REMAINING_EXCEEDED, BlockerSeverity.BLOCK,
            f"Amount exceeds remaining hardstop capacity (${remaining / 1e6:.1f}M).",
        ))

    if util > config.hardstop_util_ceiling:
        blockers.append(_blocker(
            BlockerKind.HARDSTOP_CEILING_BREACH, BlockerSeverity.BLOCK,
            f"Post-transaction hardstop utilization {util:.1%} exceeds the "
            f"{config.hardstop_util_ceiling:.0%} ceiling.",
        ))
    elif util > config.hardstop_util_warn:
        blockers.append(_blocker(
            BlockerKind.HARDSTOP_UTILIZATION_WARNING, BlockerSeverity.WARN,
            f"Post-transaction hardstop utilization {util:.1%} is near the ceiling.",
        ))

    if ecr > config.max_ecr_ratio:
        blockers.append(_blocker(
            BlockerKind.ECR_BREACH, BlockerSeverity.BLOCK,
            f"Post-transaction ECR {ecr:.2f}x exceeds the {config.max_ecr_ratio:g}x limit.",
        ))
    elif ecr > config.ecr_warn_ratio:
        blockers.append(_blocker(
            BlockerKind.ECR_WARNING, BlockerSeverity.WARN,
            f"Post-transaction ECR {ecr:.2f}x is approaching the limit.",
        ))
    return blockers


def _tri_blockers(
    tri: TRIResult,
    notional: float,
    validation: CapitalValidation,
    config: RiskConfiguration,
) -> list[PolicyBlocker]:
    blockers: list[PolicyBlocker] = []
    share = validation.hardstop_remaining * config.tri_concentration_factor
    if tri.score >= config.tri_critical_threshold and notional > share:
        blockers.append(_blocker(
            BlockerKind.TRI_CONCENTRATION, BlockerSeverity.BLOCK,
            f"TRI >= {config.tri_critical_threshold} and amount exceeds "
            f"{config.tri_concentration_factor:.0%} of remaining hardstop.",
        ))
    if tri.band == TRIBand.RED:
        if notional > config.red_band_block_notional_usd:
            blockers.append(_blocker(
                BlockerKind.TRI_RED_BAND, BlockerSeverity.BLOCK,
                f"TRI {tri.score} (red band) on a notional above "
                f"${config.red_band_block_notional_usd / 1e6:,.0f}M.",
            ))
        else:
            blockers.append(_blocker(
                BlockerKind.TRI_RED_BAND, BlockerSeverity.WARN,
                f"TRI {tri.score} (red band); enhanced monitoring.",
            ))
    return blockers


def check_blockers(
    counterparty: Counterparty,
    corridor: Corridor,
    evidence: VerificationEvidence | None,
    tri: TRIResult,
    notional: float,
    capital: CapitalSnapshot,
    *,
    hub: Hub | None = None,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> list[PolicyBlocker]:
    """Evaluate every policy rule independently and return the union.

    Rule order carries no meaning; callers must not depend on it.
    """
    validation = validate_capital(notional, capital)
    return [
        *_evidence_blockers(evidence),
        *_counterparty_blockers(counterparty),
        *_corridor_blockers(corridor),
        *_hub_blockers(hub),
        *_capital_blockers(notional, validation, config),
        *_tri_blockers(tri, notional, validation, config),
    ]


def has_block_level(blockers: list[PolicyBlocker]) -> bool:
    """True iff any blocker has severity BLOCK."""
    return any(b.severity == BlockerSeverity.BLOCK for b in blockers)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def _tri_tier(tri_score: int) -> ApprovalTier:
    for ceiling, tier in TRI_TIER_CEILINGS:
        if tri_score <= ceiling:
            return tier
    return ApprovalTier.BOARD


def _notional_tier(notional: float, config: RiskConfiguration) -> ApprovalTier:
    cents = int(round(notional * 100))
    if cents <= config.auto_approval_limit_cents:
        return ApprovalTier.AUTO
    if cents <= config.desk_head_limit_cents:
        return ApprovalTier.DESK_HEAD
    if cents <= config.credit_committee_limit_cents:
        return ApprovalTier.CREDIT_COMMITTEE
    return ApprovalTier.BOARD


def max_tier(*tiers: ApprovalTier) -> ApprovalTier:
    return max(tiers, key=lambda t: APPROVAL_TIER_RANK[t])


def determine_approval(
    tri_score: int,
    notional: float,
    *,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
    blockers: list[PolicyBlocker] | None = None,
) -> ApprovalResult:
    """Required approval tier: the higher of the TRI tier and notional tier.

    A BLOCK-severity blocker escalates the requirement to board, so a blocked
    transaction can never be auto-approved.
    """
    _require_notional(notional)
    by_tri = _tri_tier(tri_score)
    by_notional = _notional_tier(notional, config)
    tier = max_tier(by_tri, by_notional)

    reasons = [f"TRI {tri_score} requires {by_tri.value}"]
    reasons.append(f"notional ${notional:,.2f} requires {by_notional.value}")
    if blockers and has_block_level(blockers):
        tier = ApprovalTier.BOARD
        reasons.append("BLOCK-level policy blocker escalates to board")

    return ApprovalResult(
        tier=tier, label=APPROVAL_TIER_LABELS[tier], reason="; ".join(reasons)
    )


def approver_can_sign(authority: ApprovalTier, required: ApprovalTier) -> bool:
    return APPROVAL_TIER_RANK[authority] >= APPROVAL_TIER_RANK[required]


# ---------------------------------------------------------------------------
# Audit checklist
# ---------------------------------------------------------------------------


def run_compliance_checks(
    counterparty: Counterparty,
    corridor: Corridor,
    hub: Hub | None,
    tri: TRIResult,
    validation: CapitalValidation,
    *,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> list[ComplianceCheck]:
    """Build the PASS/WARN/FAIL checklist shown to approvers."""
    checks: list[ComplianceCheck] = []

    cp_status = counterparty.status
    if cp_status in (CounterpartyStatus.SUSPENDED, CounterpartyStatus.CLOSED):
        cp_result = CheckStatus.FAIL
    elif cp_status in (CounterpartyStatus.UNDER_REVIEW, CounterpartyStatus.PENDING):
        cp_result = CheckStatus.WARN
    else:
        cp_result = CheckStatus.PASS
    checks.append(ComplianceCheck(
        id="cp", label="Counterparty Status", status=cp_result,
        detail=f"{counterparty.legal_name} is {cp_status.value}.",
    ))

    corridor_result = {
        CorridorStatus.SUSPENDED: CheckStatus.FAIL,
        CorridorStatus.RESTRICTED: CheckStatus.WARN,
        CorridorStatus.ACTIVE: CheckStatus.PASS,
    }[corridor.status]
    checks.append(ComplianceCheck(
        id="corridor", label="Corridor Status", status=corridor_result,
        detail=f"{corridor.name or corridor.id} is {corridor.status.value}.",
    ))

    if hub is not None:
        hub_result = {
            HubStatus.OFFLINE: CheckStatus.FAIL,
            HubStatus.MAINTENANCE: CheckStatus.WARN,
            HubStatus.DEGRADED: CheckStatus.WARN,
            HubStatus.OPERATIONAL: CheckStatus.PASS,
        }[hub.status]
        checks.append(ComplianceCheck(
            id="hub", label="Hub Operational", status=hub_result,
            detail=f"{hub.name or hub.id} is {hub.status.value}.",
        ))

    ecr = validation.post_txn_ecr
    if ecr > config.max_ecr_ratio:
        ecr_result = CheckStatus.FAIL
    elif ecr > config.ecr_warn_ratio:
        ecr_result = CheckStatus.WARN
    else:
        ecr_result = CheckStatus.PASS
    checks.append(ComplianceCheck(
        id="ecr", label="Capital Adequacy (ECR)", status=ecr_result,
        detail=f"Post-txn ECR {ecr:.2f}x against a {config.max_ecr_ratio:g}x limit.",
    ))

    util = validation.post_txn_hardstop_util
    if util > config.hardstop_util_ceiling:
        hs_result = CheckStatus.FAIL
    elif util > config.hardstop_util_warn:
        hs_result = CheckStatus.WARN
    else:
        hs_result = CheckStatus.PASS
    checks.append(ComplianceCheck(
        id="hardstop", label="Hardstop Compliance", status=hs_result,
        detail=f"Post-txn utilization {util:.1%}.",
    ))

    if tri.score >= config.tri_critical_threshold:
        tri_result = CheckStatus.FAIL
    elif tri.score >= config.tri_warn_threshold:
        tri_result = CheckStatus.WARN
    else:
        tri_result = CheckStatus.PASS
    checks.append(ComplianceCheck(
        id="tri", label="Transaction Risk Index", status=tri_result,
        detail=f"TRI {tri.score} ({tri.band.value}).",
    ))
    return checks


# ---------------------------------------------------------------------------
# Composite evaluation
# ---------------------------------------------------------------------------


def evaluate_transaction(
    context: PolicyContext,
    notional: float,
    capital: CapitalSnapshot,
    *,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
    action: ControlAction | None = None,
) -> PolicyEvaluation:
    """Run the full policy pipeline for one prospective transaction.

    When ``action`` is given, the capital control decision for that action
    is folded into the blockers before the approval tier is determined.
    """
    tri = compute_tri(context.counterparty, context.corridor, notional, capital)
    validation = validate_capital(notional, capital)
    blockers = check_blockers(
        context.counterparty,
        context.corridor,
        context.evidence,
        tri,
        notional,
        capital,
        hub=context.hub,
        config=config,
    )
    controls = evaluate_capital_controls(capital, config=config)
    if action is not None:
        blockers = blockers + control_blockers(controls, action)
    approval = determine_approval(
        tri.score, notional, config=config, blockers=blockers
    )
    checks = run_compliance_checks(
        context.counterparty, context.corridor, context.hub, tri, validation,
        config=config,
    )
    return PolicyEvaluation(
        notional_usd=notional,
        tri=tri,
        capital=validation,
        blockers=blockers,
        approval=approval,
        checks=checks,
        controls=controls,
    )


def checks_status_for(blockers: list[PolicyBlocker]) -> CheckStatus:
    if has_block_level(blockers):
        return CheckStatus.FAIL
    if any(b.severity == BlockerSeverity.WARN for b in blockers):
        return CheckStatus.WARN
    return CheckStatus.PASS


def build_entry_snapshot(
    evaluation: PolicyEvaluation, case: SettlementCase
) -> LedgerEntrySnapshot:
    """Freeze the current risk state for a ledger entry about ``case``."""
    return LedgerEntrySnapshot(
        checks_status=checks_status_for(evaluation.blockers),
        funds_confirmed=case.funds_confirmed,
        gold_allocated=case.gold_allocated,
        verification_cleared=case.verification_cleared,
        ecr_at_action=evaluation.capital.post_txn_ecr,
        hardstop_at_action=evaluation.capital.post_txn_hardstop_util,
        blockers=[
            f"{b.id.value}: {b.title}"
            for b in evaluation.blockers
            if b.severity == BlockerSeverity.BLOCK
        ],
        warnings=[
            f"{b.id.value}: {b.title}"
            for b in evaluation.blockers
            if b.severity == BlockerSeverity.WARN
        ],
    )
