"""AurumShield CLI: Typer-based command-line interface.

Provides the ``aurumshield`` command with subcommands for evaluating a
transaction against risk policy, running an end-to-end demo settlement,
inspecting a settlement ledger, and printing the compliance case graph.

All output uses Rich for formatted terminal display.
"""
