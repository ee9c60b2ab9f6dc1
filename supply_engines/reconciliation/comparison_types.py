"""
Dispensed-vs-usage comparison types.

Frozen value objects consumed and produced by the comparison engine.  The
service layer fills the aggregates from the dispensing feed and the ledger;
the engine never does I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DiscrepancyStatus(str, Enum):
    """How one item code's dispensing compares with its clinical usage."""

    MATCHED = "MATCHED"
    DISPENSE_EXCEEDS_USAGE = "DISPENSE_EXCEEDS_USAGE"
    USAGE_EXCEEDS_DISPENSE = "USAGE_EXCEEDS_DISPENSE"
    DISPENSED_NOT_USED = "DISPENSED_NOT_USED"
    USED_WITHOUT_DISPENSE = "USED_WITHOUT_DISPENSE"


# Lower sorts first: usage the cabinet cannot account for is the most urgent
STATUS_PRIORITY: dict[DiscrepancyStatus, int] = {
    DiscrepancyStatus.USAGE_EXCEEDS_DISPENSE: 0,
    DiscrepancyStatus.USED_WITHOUT_DISPENSE: 1,
    DiscrepancyStatus.DISPENSE_EXCEEDS_USAGE: 2,
    DiscrepancyStatus.DISPENSED_NOT_USED: 3,
    DiscrepancyStatus.MATCHED: 4,
}


@dataclass(frozen=True, slots=True)
class DispensedAggregate:
    """Cabinet dispensing for one item code inside the window."""

    item_code: str
    total_dispensed: int
    record_count: int
    first_dispensed: datetime | None = None
    last_dispensed: datetime | None = None
    item_name: str | None = None


@dataclass(frozen=True, slots=True)
class UsageAggregate:
    """Clinical usage for one item code inside the window."""

    item_code: str
    total_used: int
    record_count: int
    first_used: datetime | None = None
    last_used: datetime | None = None


@dataclass(frozen=True, slots=True)
class ItemInfo:
    """Catalog facts about an item code."""

    item_code: str
    item_name: str | None = None
    item_type_id: int | None = None
    item_type_name: str | None = None


@dataclass(frozen=True, slots=True)
class ComparisonRow:
    """One item code's comparison.  Derived, never persisted."""

    item_code: str
    total_dispensed: int
    total_used: int
    difference: int
    status: DiscrepancyStatus
    dispensed_record_count: int = 0
    usage_record_count: int = 0
    first_dispensed: datetime | None = None
    last_dispensed: datetime | None = None
    first_used: datetime | None = None
    last_used: datetime | None = None
    item_name: str | None = None
    item_type_id: int | None = None
    item_type_name: str | None = None

    @property
    def is_discrepancy(self) -> bool:
        return self.status is not DiscrepancyStatus.MATCHED


@dataclass(frozen=True, slots=True)
class ComparisonSummary:
    total_item_codes: int
    status_counts: dict[str, int]
    matched_count: int
    discrepancy_count: int
    total_dispensed: int
    total_used: int
    total_discrepancy: int
    excluded_item_codes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int


@dataclass(frozen=True, slots=True)
class ComparisonResult:
    summary: ComparisonSummary
    comparison: tuple[ComparisonRow, ...]
    pagination: Pagination
    filters: dict[str, Any] = field(default_factory=dict)
