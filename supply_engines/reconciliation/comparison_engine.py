"""
DispensedUsageComparator -- Pure engine for dispensed-vs-usage reconciliation.

Joins cabinet dispensing and clinical usage per item code, classifies each
code, orders the rows by urgency, summarizes and paginates.

Architecture: supply_engines -- pure calculation, zero I/O, zero DB access.
All inputs are frozen dataclasses populated by the service layer.

Rules:
    Classification of (dispensed, used), first match wins:
        dispensed == 0 and used > 0   -> USED_WITHOUT_DISPENSE
        dispensed > 0 and used == 0   -> DISPENSED_NOT_USED
        dispensed - used > 0          -> DISPENSE_EXCEEDS_USAGE
        dispensed - used < 0          -> USAGE_EXCEEDS_DISPENSE
        otherwise                     -> MATCHED
    Ordering: STATUS_PRIORITY, then larger |difference| first, then item
    code ascending.  Codes present on only one side are kept.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from supply_kernel.logging_config import get_logger
from supply_engines.tracer import traced_engine

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

logger = get_logger("engines.reconciliation.comparison")


def classify(total_dispensed: int, total_used: int) -> DiscrepancyStatus:
    """Classify one item code's totals."""
    if total_dispensed == 0 and total_used > 0:
        return DiscrepancyStatus.USED_WITHOUT_DISPENSE
    if total_dispensed > 0 and total_used == 0:
        return DiscrepancyStatus.DISPENSED_NOT_USED
    difference = total_dispensed - total_used
    if difference > 0:
        return DiscrepancyStatus.DISPENSE_EXCEEDS_USAGE
    if difference < 0:
        return DiscrepancyStatus.USAGE_EXCEEDS_DISPENSE
    return DiscrepancyStatus.MATCHED


def sort_key(row: ComparisonRow) -> tuple[int, int, str]:
    return (STATUS_PRIORITY[row.status], -abs(row.difference), row.item_code)


class DispensedUsageComparator:
    """Pure engine comparing dispensing with usage.

    Usage:
        comparator = DispensedUsageComparator()
        result = comparator.compare(dispensed=..., usage=..., page=1, limit=50)
    """

    def build_rows(
        self,
        dispensed: Iterable[DispensedAggregate],
        usage: Iterable[UsageAggregate],
        catalog: Mapping[str, ItemInfo] | None = None,
    ) -> list[ComparisonRow]:
        """One sorted row per item code appearing on either side."""
        by_code_dispensed = {d.item_code: d for d in dispensed}
        by_code_usage = {u.item_code: u for u in usage}
        catalog = catalog or {}

        rows: list[ComparisonRow] = []
        for code in set(by_code_dispensed) | set(by_code_usage):
            d = by_code_dispensed.get(code)
            u = by_code_usage.get(code)
            info = catalog.get(code)
            total_dispensed = d.total_dispensed if d else 0
            total_used = u.total_used if u else 0
            rows.append(
                ComparisonRow(
                    item_code=code,
                    total_dispensed=total_dispensed,
                    total_used=total_used,
                    difference=total_dispensed - total_used,
                    status=classify(total_dispensed, total_used),
                    dispensed_record_count=d.record_count if d else 0,
                    usage_record_count=u.record_count if u else 0,
                    first_dispensed=d.first_dispensed if d else None,
                    last_dispensed=d.last_dispensed if d else None,
                    first_used=u.first_used if u else None,
                    last_used=u.last_used if u else None,
                    item_name=(info.item_name if info and info.item_name else None)
                    or (d.item_name if d else None),
                    item_type_id=info.item_type_id if info else None,
                    item_type_name=info.item_type_name if info else None,
                )
            )
        rows.sort(key=sort_key)
        return rows

    def summarize(
        self,
        rows: Iterable[ComparisonRow],
        excluded_item_codes: Iterable[str] = (),
    ) -> ComparisonSummary:
        rows = list(rows)
        status_counts = {status.value: 0 for status in DiscrepancyStatus}
        for row in rows:
            status_counts[row.status.value] += 1
        matched = status_counts[DiscrepancyStatus.MATCHED.value]
        return ComparisonSummary(
            total_item_codes=len(rows),
            status_counts=status_counts,
            matched_count=matched,
            discrepancy_count=len(rows) - matched,
            total_dispensed=sum(r.total_dispensed for r in rows),
            total_used=sum(r.total_used for r in rows),
            total_discrepancy=sum(abs(r.difference) for r in rows),
            excluded_item_codes=tuple(sorted(set(excluded_item_codes))),
        )

    @staticmethod
    def paginate(
        rows: list[ComparisonRow], page: int, limit: int
    ) -> tuple[tuple[ComparisonRow, ...], Pagination]:
        total = len(rows)
        start = (page - 1) * limit
        window = tuple(rows[start:start + limit])
        total_pages = (total + limit - 1) // limit if total else 0
        return window, Pagination(page=page, limit=limit, total=total, total_pages=total_pages)

    @traced_engine(
        "dispensed_usage_comparison", "1.0",
        fingerprint_fields=("dispensed", "usage", "excluded_item_codes", "page", "limit"),
    )
    def compare(
        self,
        *,
        dispensed: Iterable[DispensedAggregate],
        usage: Iterable[UsageAggregate],
        catalog: Mapping[str, ItemInfo] | None = None,
        excluded_item_codes: Iterable[str] = (),
        page: int = 1,
        limit: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> ComparisonResult:
        """Full comparison: rows, summary over all rows, and the requested page."""
        rows = self.build_rows(dispensed, usage, catalog)
        summary = self.summarize(rows, excluded_item_codes)
        page_rows, pagination = self.paginate(rows, page, limit)

        logger.info(
            "dispensed_usage_compared",
            extra={
                "total_item_codes": summary.total_item_codes,
                "discrepancy_count": summary.discrepancy_count,
                "excluded_count": len(summary.excluded_item_codes),
            },
        )
        return ComparisonResult(
            summary=summary,
            comparison=page_rows,
            pagination=pagination,
            filters=dict(filters or {}),
        )
