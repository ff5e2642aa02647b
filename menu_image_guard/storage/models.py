"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class CacheEntry:
    """Mapping from a normalized title to a stored image reference.

    Several rows may share a key when generations race; the oldest row
    is the one lookups return.
    """
    key: str
    image_ref: str
    created_at: datetime


@dataclass(frozen=True)
class LedgerState:
    """Snapshot of the global spend ledger.

    ``total_spent`` always equals ``units_generated`` times the unit cost.
    The reserved figures are admission holds for generations still in
    flight; they count against the cap but are not spend.
    """
    units_generated: int
    total_spent: Decimal
    reserved_units: int
    reserved_amount: Decimal
    last_updated: Optional[datetime]

    def remaining(self, cap: Decimal) -> Decimal:
        """Headroom left under ``cap`` once holds are accounted for."""
        return max(cap - self.total_spent - self.reserved_amount, Decimal("0"))


@dataclass(frozen=True)
class MenuRecord:
    """Menu that owns a generated illustration.

    ``generating`` is True from creation until the pipeline resolves;
    ``image_ref`` is only ever set by a successful run.
    """
    id: int
    title: str
    generating: bool
    image_ref: Optional[str]
    created_at: datetime
