"""Clearing core: policy, ledger, lifecycle, routing, compliance, certificates."""
