"""
DealerLedger — Fortnox bookkeeping for vehicle dealerships.

Connect. Sync. Correct.
"""

__version__ = "0.3.0"
__all__ = ["DealerLedger"]

from dealerledger.engine import DealerLedger  # noqa: E402
