"""Intraday capital controls: escalation mode and action block matrix.

Pure functions over a ``CapitalSnapshot``.  The mode is derived in order of
severity, first match wins:

1. EMERGENCY_HALT: hardstop utilization >= 100%, or a BUFFER_NEGATIVE
   breach inside the lookback window
2. FREEZE_MARKETPLACE: breach level BREACH
3. FREEZE_CONVERSIONS: CAUTION with ECR >= target x multiplier, or
   utilization >= the freeze threshold
4. THROTTLE_RESERVATIONS: CAUTION with reservations as the top exposure
   driver, or utilization >= the throttle threshold
5. NORMAL otherwise

Only EMERGENCY_HALT blocks settlement actions; lower modes restrict
marketplace activity and are reported to settlement callers as warnings.
"""

from __future__ import annotations

from datetime import timedelta

from aurumshield.core.hasher import content_hash
from aurumshield.models.risk import (
    BLOCKER_TITLES,
    BlockerKind,
    BlockerSeverity,
    BreachEventType,
    BreachLevel,
    CapitalControlDecision,
    CapitalSnapshot,
    ControlAction,
    ControlMode,
    PolicyBlocker,
    RiskConfiguration,
)

DEFAULT_RISK_CONFIG = RiskConfiguration()

# Share of remaining hardstop capacity advised as the reservation cap
# while reservations are throttled.
THROTTLE_CAPACITY_SHARE = 0.5

_BLOCKED_ACTIONS: dict[ControlMode, frozenset[ControlAction]] = {
    ControlMode.NORMAL: frozenset(),
    ControlMode.THROTTLE_RESERVATIONS: frozenset({ControlAction.CREATE_RESERVATION}),
    ControlMode.FREEZE_CONVERSIONS: frozenset(
        {ControlAction.CREATE_RESERVATION, ControlAction.CONVERT_RESERVATION}
    ),
    ControlMode.FREEZE_MARKETPLACE: frozenset(
        {
            ControlAction.CREATE_RESERVATION,
            ControlAction.CONVERT_RESERVATION,
            ControlAction.PUBLISH_LISTING,
        }
    ),
    ControlMode.EMERGENCY_HALT: frozenset(ControlAction),
}


def block_matrix(mode: ControlMode) -> dict[ControlAction, bool]:
    """Which actions ``mode`` blocks, keyed by every ``ControlAction``."""
    blocked = _BLOCKED_ACTIONS[mode]
    return {action: action in blocked for action in ControlAction}


def snapshot_fingerprint(snapshot: CapitalSnapshot) -> str:
    """Short digest of the metrics a control decision was derived from."""
    return content_hash(
        {
            "as_of": snapshot.as_of.isoformat()[:16],
            "ecr": round(snapshot.ecr, 4),
            "hardstop_utilization": round(snapshot.hardstop_utilization, 4),
            "breach_level": snapshot.breach_level.value,
            "gross_exposure_notional": round(snapshot.gross_exposure_notional, 2),
            "capital_base": round(snapshot.capital_base, 2),
        }
    )[:16]


def evaluate_capital_controls(
    snapshot: CapitalSnapshot,
    *,
    config: RiskConfiguration = DEFAULT_RISK_CONFIG,
) -> CapitalControlDecision:
    """Derive the control mode and block matrix for ``snapshot``."""
    util = snapshot.hardstop_utilization
    reasons: list[str] = []
    limit: float | None = None

    cutoff = snapshot.as_of - timedelta(seconds=config.buffer_negative_lookback_seconds)
    buffer_negative = any(
        e.type == BreachEventType.BUFFER_NEGATIVE and e.occurred_at >= cutoff
        for e in snapshot.recent_breach_events
    )

    if util >= 1.0:
        mode = ControlMode.EMERGENCY_HALT
        reasons.append(f"Hardstop utilization {util:.2%} >= 100%")
    elif buffer_negative:
        mode = ControlMode.EMERGENCY_HALT
        minutes = config.buffer_negative_lookback_seconds / 60
        reasons.append(f"BUFFER_NEGATIVE breach within the last {minutes:g} minutes")
    elif snapshot.breach_level == BreachLevel.BREACH:
        mode = ControlMode.FREEZE_MARKETPLACE
        reasons.append(f"Breach level BREACH with hardstop utilization {util:.2%}")
    elif snapshot.breach_level == BreachLevel.CAUTION:
        ecr_ceiling = config.max_ecr_ratio * config.control_ecr_freeze_multiplier
        if snapshot.ecr >= ecr_ceiling or util >= config.control_freeze_util:
            mode = ControlMode.FREEZE_CONVERSIONS
            if snapshot.ecr >= ecr_ceiling:
                reasons.append(f"ECR {snapshot.ecr:.2f}x >= {ecr_ceiling:.1f}x")
            if util >= config.control_freeze_util:
                reasons.append(
                    f"Hardstop utilization {util:.2%} >= {config.control_freeze_util:.0%}"
                )
        elif "reservation" in snapshot.top_driver.lower() or util >= config.control_throttle_util:
            mode = ControlMode.THROTTLE_RESERVATIONS
            if "reservation" in snapshot.top_driver.lower():
                reasons.append("Reserved notional is the top exposure driver")
            if util >= config.control_throttle_util:
                reasons.append(
                    f"Hardstop utilization {util:.2%} >= {config.control_throttle_util:.0%}"
                )
            limit = max(
                0.0,
                (snapshot.hardstop_limit - snapshot.gross_exposure_notional)
                * THROTTLE_CAPACITY_SHARE,
            )
        else:
            mode = ControlMode.NORMAL
            reasons.append("Breach level CAUTION; no throttle trigger met")
    else:
        mode = ControlMode.NORMAL

    return CapitalControlDecision(
        mode=mode,
        reasons=reasons,
        blocks=block_matrix(mode),
        max_reservation_notional=limit,
        snapshot_hash=snapshot_fingerprint(snapshot),
        as_of=snapshot.as_of,
    )


def control_blockers(
    decision: CapitalControlDecision, action: ControlAction
) -> list[PolicyBlocker]:
    """Policy blockers for ``action`` under ``decision``.

    A blocked action is a BLOCK; any other non-NORMAL mode is a WARN.
    """
    if decision.is_blocked(action):
        kind, severity = BlockerKind.CAPITAL_CONTROL_BLOCK, BlockerSeverity.BLOCK
        detail = f"{action.value} is blocked under {decision.mode.value}"
    elif decision.mode != ControlMode.NORMAL:
        kind, severity = BlockerKind.CAPITAL_CONTROL_ACTIVE, BlockerSeverity.WARN
        detail = f"Capital controls at {decision.mode.value}; {action.value} permitted"
    else:
        return []
    if decision.reasons:
        detail = f"{detail}: {'; '.join(decision.reasons)}"
    return [
        PolicyBlocker(id=kind, severity=severity, title=BLOCKER_TITLES[kind], detail=detail)
    ]
