"""
Reconciliation - Pure comparison of cabinet dispensing with clinical usage.

Pure domain types and engine only.  Gathering the inputs is done by
supply_services.reconciliation_service.
"""

from supply_engines.reconciliation.comparison_engine import (
    DispensedUsageComparator,
    classify,
    sort_key,
)
from supply_engines.reconciliation.comparison_types import (
    STATUS_PRIORITY,
    ComparisonResult,
    ComparisonRow,
    ComparisonSummary,
    DiscrepancyStatus,
    DispensedAggregate,
    ItemInfo,
    Pagination,
    UsageAggregate,
)

__all__ = [
    "ComparisonResult",
    "ComparisonRow",
    "ComparisonSummary",
    "DiscrepancyStatus",
    "DispensedAggregate",
    "DispensedUsageComparator",
    "ItemInfo",
    "Pagination",
    "STATUS_PRIORITY",
    "UsageAggregate",
    "classify",
    "sort_key",
]
