"""AurumShield: settlement and capital control engine for physical gold clearing.

  - Deterministic risk policy: TRI scoring, ECR / hardstop validation,
    blocker detection and approval tiers
  - Settlement lifecycle state machine over a hash-chained SQLite ledger
  - Delivery-versus-Payment with dual-rail payout routing and failover
  - Compliance case workflow with compare-and-swap transitions
  - Deterministic, optionally Ed25519-signed clearing certificates
"""

__version__ = "0.1.0"
__description__ = "Settlement and capital control engine for physical gold clearing"

__all__ = ["__version__", "__description__"]
