"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- ingest: Correlate and store one incoming transaction
- correlate: Retroactively correlate a stored transaction
- show: Print a stored transaction
- ledger: List an owner's correlations
- stats: Record store statistics
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
