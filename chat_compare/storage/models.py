"""
Data models for storage layer.

Defines the durable subset of a token ledger entry.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class PersistedLedgerEntry:
    """Durable fields of one provider's token ledger entry.

    Totals and intervals always come from the catalog; only the counters
    that change at runtime are stored.
    """
    available: int
    last_replenish_at: Optional[datetime] = None
