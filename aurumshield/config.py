"""Clearing engine configuration: env-driven via pydantic-settings.

Reads from a ``.env`` file and ``AURUMSHIELD_*`` environment variables.
Nested risk thresholds use ``__`` as the delimiter, e.g.
``AURUMSHIELD_RISK__HARDSTOP_UTIL_CEILING=0.85``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from aurumshield.models.risk import RiskConfiguration

RAIL_MODE_AUTO = "auto"


class ClearingConfig(BaseSettings):
    """Process-level configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export AURUMSHIELD_ENVIRONMENT=staging
        export AURUMSHIELD_RAIL_MODE=modern_treasury
        export AURUMSHIELD_LEDGER_PATH=/data/settlement.db

    Or via .env file::

        AURUMSHIELD_ENVIRONMENT=production
        AURUMSHIELD_CERTIFICATE_SIGNING_KEY=<hex ed25519 seed>
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="AURUMSHIELD_",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".aurumshield/settlement.db")
    compliance_db_path: Path = Path(".aurumshield/compliance.db")

    # Settlement rails: mode is "auto" or the name of a rail to force
    rail_mode: str = RAIL_MODE_AUTO
    rail_threshold_cents: int = 25_000_000  # $250,000, inclusive
    low_cost_rail: str = "moov"
    high_assurance_rail: str = "modern_treasury"
    platform_fee_bps: int = 0

    # Adapter boundary
    adapter_timeout_seconds: float = 30.0
    capital_snapshot_max_age_seconds: float = 5.0

    # Certificate signing: hex Ed25519 seed; empty means hash-only certificates
    certificate_signing_key: str = ""

    # Policy thresholds
    risk: RiskConfiguration = RiskConfiguration()

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


# Module-level singleton: import as `from aurumshield.config import config`
config = ClearingConfig()
