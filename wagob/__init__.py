"""
wagob - Ledger indexer for the wagob security-jobs marketplace.

Mirrors job, escrow and reputation contract state into SQLite.
"""

from .engine import ReconciliationEngine
from .scheduler import PollScheduler

try:
    from importlib.metadata import version

    __version__ = version("wagob-indexer")
except Exception:
    __version__ = "0.0.0"

__all__ = ["ReconciliationEngine", "PollScheduler"]
