"""Production configuration guard: enforces hard constraints in production.

Runs once at startup and fails hard (raises ``ProductionConfigError``) if
the clearing engine would start in production with an unsafe configuration.
Other code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from aurumshield.config import RAIL_MODE_AUTO, ClearingConfig

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process should exit; this error must not be caught and ignored.
    """


def collect_config_violations(config: ClearingConfig) -> list[str]:
    """Return every consistency problem in the rail and risk settings.

    Applies in every environment; an empty list means the configuration is
    internally consistent.
    """
    violations: list[str] = []
    risk = config.risk

    if config.low_cost_rail == config.high_assurance_rail:
        violations.append(
            "low_cost_rail and high_assurance_rail must name different rails."
        )
    if config.rail_mode not in (
        RAIL_MODE_AUTO, config.low_cost_rail, config.high_assurance_rail,
    ):
        violations.append(
            f"rail_mode={config.rail_mode!r} is neither 'auto' nor a configured rail."
        )
    if config.rail_threshold_cents <= 0:
        violations.append("rail_threshold_cents must be positive.")
    if not 0 <= config.platform_fee_bps < 10_000:
        violations.append("platform_fee_bps must be within [0, 10000).")
    if config.adapter_timeout_seconds <= 0:
        violations.append("adapter_timeout_seconds must be positive.")

    if not 0 < risk.hardstop_util_warn <= risk.hardstop_util_ceiling <= 1.0:
        violations.append(
            "Risk thresholds must satisfy 0 < hardstop_util_warn <= "
            "hardstop_util_ceiling <= 1.0."
        )
    if not 0 < risk.ecr_warn_ratio <= risk.max_ecr_ratio:
        violations.append("Risk thresholds must satisfy 0 < ecr_warn_ratio <= max_ecr_ratio.")
    if not (
        risk.auto_approval_limit_cents
        <= risk.desk_head_limit_cents
        <= risk.credit_committee_limit_cents
    ):
        violations.append("Approval limits must be non-decreasing by tier.")
    if not 0 < risk.control_throttle_util <= risk.control_freeze_util <= 1.0:
        violations.append(
            "Capital control thresholds must satisfy 0 < control_throttle_util <= "
            "control_freeze_util <= 1.0."
        )
    return violations


def enforce_production_constraints(config: ClearingConfig) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. A certificate signing key must be configured.
    3. Rail and risk settings must be internally consistent.

    Parameters
    ----------
    config:
        The active ``ClearingConfig`` instance.

    Raises
    ------
    ProductionConfigError
        If any production constraint is violated.
    """
    if not config.is_production:
        return

    violations: list[str] = []

    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set AURUMSHIELD_DEBUG=false."
        )

    if not config.certificate_signing_key:
        violations.append(
            "certificate_signing_key is required in production but not configured. "
            "Set AURUMSHIELD_CERTIFICATE_SIGNING_KEY."
        )

    violations.extend(collect_config_violations(config))

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
