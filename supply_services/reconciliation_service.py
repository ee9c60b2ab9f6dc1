"""
supply_services.reconciliation_service -- Dispensed-vs-usage reconciliation.

Responsibility:
    Gathers cabinet dispensing (DispensedEventSource), clinical usage (the
    ledger, via UsageSelector) and item facts (ItemCatalog), hands them to
    the pure DispensedUsageComparator, and serves the drill-down reads
    behind a comparison: raw dispensed events, per-line usage detail and
    the same-day returnable quantities.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  Read-only:
    never writes to the ledger.

Invariants enforced:
    - Dispensed-only codes are kept (DISPENSED_NOT_USED), never dropped.
    - Under an explicit item-type filter, usage codes whose type does not
      match are dropped.  A code whose type lookup fails is excluded and
      listed in ``summary.excluded_item_codes``.
    - The number of item codes compared is capped by configuration.

Failure modes:
    - UpstreamUnavailableError: the dispensing feed fails, or the catalog
      fails for the whole lookup.
    - ComparisonTooLargeError: more item codes than the configured cap.
    - InvalidDateRangeError: unparseable bounds or start after end.

Usage:
    service = ReconciliationService(session, event_source, catalog)
    result = service.compare(start_date="2024-03-01", end_date="2024-03-31")
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from supply_engines.reconciliation import (
    ComparisonResult,
    DispensedAggregate,
    DispensedUsageComparator,
    ItemInfo,
    UsageAggregate,
)
from supply_kernel.domain.clock import Clock
from supply_kernel.domain.dtos import ItemCodeValidation, ReturnableQuantity, UsageDetail
from supply_kernel.domain.time_window import (
    DEFAULT_TIMEZONE,
    TimeWindow,
    day_bounds,
    get_zone,
    local_date,
    resolve_window,
)
from supply_kernel.exceptions import (
    ComparisonTooLargeError,
    SupplyKernelError,
    UpstreamUnavailableError,
)
from supply_kernel.logging_config import get_logger
from supply_kernel.selectors.usage_selector import UsageSelector
from supply_kernel.services.base import BaseService
from supply_services.sources import (
    CatalogItem,
    DispensedEvent,
    DispensedEventSource,
    ItemCatalog,
)

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class DispensedItems:
    """Raw dispensing events with the filters that produced them."""

    items: tuple[DispensedEvent, ...]
    total: int
    filters: dict[str, Any] = field(default_factory=dict)


def aggregate_dispensed(events: Iterable[DispensedEvent]) -> list[DispensedAggregate]:
    """Fold dispensing events into one aggregate per item code."""
    grouped: dict[str, list[DispensedEvent]] = {}
    for event in events:
        grouped.setdefault(event.item_code, []).append(event)

    aggregates = []
    for code in sorted(grouped):
        batch = grouped[code]
        moments = [e.dispensed_at for e in batch]
        names = [e.item_name for e in batch if e.item_name]
        aggregates.append(
            DispensedAggregate(
                item_code=code,
                total_dispensed=sum(e.quantity for e in batch),
                record_count=len(batch),
                first_dispensed=min(moments),
                last_dispensed=max(moments),
                item_name=names[0] if names else None,
            )
        )
    return aggregates


def _window_filters(window: TimeWindow) -> dict[str, Any]:
    return {
        "window_start": window.start.isoformat() if window.start else None,
        "window_end": window.end.isoformat() if window.end else None,
    }


class ReconciliationService(BaseService):
    """
    Read-side reconciliation of cabinet dispensing against the ledger.

    Non-goals:
        - Does NOT modify line items or dispensing records.
        - Does NOT cache upstream data between calls.
    """

    def __init__(
        self,
        session: Session,
        event_source: DispensedEventSource,
        catalog: ItemCatalog,
        *,
        timezone_name: str = DEFAULT_TIMEZONE,
        max_item_codes: int | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._events = event_source
        self._catalog = catalog
        self._tz_name = timezone_name
        self._max_item_codes = max_item_codes
        self._usage = UsageSelector(session)
        self._comparator = DispensedUsageComparator()

    # =========================================================================
    # Upstream access
    # =========================================================================

    def _fetch_events(
        self,
        window: TimeWindow,
        item_code: str | None,
        item_type_id: int | None,
    ) -> list[DispensedEvent]:
        try:
            return list(
                self._events.fetch_events(
                    window=window, item_code=item_code, item_type_id=item_type_id,
                )
            )
        except SupplyKernelError:
            raise
        except Exception as exc:
            logger.exception("dispensed_event_source_failed")
            raise UpstreamUnavailableError("dispensed_events", str(exc)) from exc

    def _catalog_items(self, codes: Iterable[str]) -> dict[str, CatalogItem]:
        """Whole-batch lookup; a failure here fails the request."""
        try:
            return dict(self._catalog.get_items(list(codes)))
        except SupplyKernelError:
            raise
        except Exception as exc:
            logger.exception("item_catalog_failed")
            raise UpstreamUnavailableError("item_catalog", str(exc)) from exc

    def _resolve_types(
        self, codes: Iterable[str]
    ) -> tuple[dict[str, CatalogItem], list[str]]:
        """
        Per-code lookup for the item-type filter.

        A code whose lookup raises is excluded; an unavailable catalog
        (UpstreamUnavailableError) still aborts the whole request.
        """
        resolved: dict[str, CatalogItem] = {}
        excluded: list[str] = []
        for code in sorted(set(codes)):
            try:
                item = self._catalog.get_item(code)
            except UpstreamUnavailableError:
                raise
            except Exception as exc:
                logger.warning(
                    "item_type_lookup_failed",
                    extra={"item_code": code, "error": str(exc)},
                )
                excluded.append(code)
                continue
            if item is not None:
                resolved[code] = item
        return resolved, excluded

    # =========================================================================
    # Comparison
    # =========================================================================

    def compare(
        self,
        *,
        item_code: str | None = None,
        item_type_id: int | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
        department_code: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> ComparisonResult:
        window = resolve_window(start_date, end_date, self._tz_name)

        logger.info(
            "dispensed_usage_comparison_started",
            extra={
                "item_code": item_code,
                "item_type_id": item_type_id,
                "department_code": department_code,
                **_window_filters(window),
            },
        )

        dispensed = aggregate_dispensed(
            self._fetch_events(window, item_code, item_type_id)
        )
        usage_totals = self._usage.usage_totals(
            window=window, item_code=item_code, department_code=department_code,
        )

        excluded: list[str] = []
        if item_type_id is not None:
            dispensed_codes = {d.item_code for d in dispensed}
            resolved, excluded = self._resolve_types(
                u.item_code for u in usage_totals if u.item_code not in dispensed_codes
            )
            usage_totals = [
                u for u in usage_totals
                if u.item_code in dispensed_codes
                or (
                    u.item_code in resolved
                    and resolved[u.item_code].item_type_id == item_type_id
                )
            ]

        usage = [
            UsageAggregate(
                item_code=u.item_code,
                total_used=u.total_used,
                record_count=u.record_count,
                first_used=u.first_used,
                last_used=u.last_used,
            )
            for u in usage_totals
        ]

        codes = {d.item_code for d in dispensed} | {u.item_code for u in usage}
        if self._max_item_codes is not None and len(codes) > self._max_item_codes:
            raise ComparisonTooLargeError(len(codes), self._max_item_codes)

        catalog = {
            code: ItemInfo(
                item_code=code,
                item_name=item.item_name,
                item_type_id=item.item_type_id,
                item_type_name=item.item_type_name,
            )
            for code, item in self._catalog_items(codes).items()
        } if codes else {}

        filters = {
            "item_code": item_code,
            "item_type_id": item_type_id,
            "start_date": str(start_date) if start_date is not None else None,
            "end_date": str(end_date) if end_date is not None else None,
            "department_code": department_code,
            **_window_filters(window),
        }
        return self._comparator.compare(
            dispensed=dispensed,
            usage=usage,
            catalog=catalog,
            excluded_item_codes=excluded,
            page=page,
            limit=limit,
            filters=filters,
        )

    # =========================================================================
    # Drill-down reads
    # =========================================================================

    def get_dispensed_items(
        self,
        *,
        item_code: str | None = None,
        item_type_id: int | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
    ) -> DispensedItems:
        window = resolve_window(start_date, end_date, self._tz_name)
        events = self._fetch_events(window, item_code, item_type_id)
        return DispensedItems(
            items=tuple(events),
            total=len(events),
            filters={
                "item_code": item_code,
                "item_type_id": item_type_id,
                "start_date": str(start_date) if start_date is not None else None,
                "end_date": str(end_date) if end_date is not None else None,
            },
        )

    def get_usage_by_item_code(
        self,
        *,
        item_code: str | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
        department_code: str | None = None,
    ) -> list[UsageDetail]:
        window = resolve_window(start_date, end_date, self._tz_name)
        return self._usage.usage_details(
            window=window, item_code=item_code, department_code=department_code,
        )

    def get_returnable_quantities(
        self, on_date: date | str | None = None
    ) -> list[ReturnableQuantity]:
        """
        Units dispensed on ``on_date`` not yet accounted for.

        dispensed - used (non-discontinued lines recorded that day)
        - returned (return records that day), positive remainders only,
        ordered by item code.  ``on_date`` defaults to today in the
        canonical timezone.
        """
        if on_date is None:
            day = local_date(self._clock.now(), self._tz_name)
        elif isinstance(on_date, datetime):
            day = local_date(on_date, self._tz_name)
        elif isinstance(on_date, str):
            start = resolve_window(on_date, None, self._tz_name).start
            day = local_date(start, self._tz_name)
        else:
            day = on_date
        start, end = day_bounds(day, get_zone(self._tz_name))
        window = TimeWindow(start=start, end=end)

        events = self._fetch_events(window, None, None)
        dispensed: dict[str, int] = {}
        names: dict[str, str] = {}
        for event in events:
            dispensed[event.item_code] = dispensed.get(event.item_code, 0) + event.quantity
            if event.item_name and event.item_code not in names:
                names[event.item_code] = event.item_name

        used = self._usage.recorded_quantity_by_code(window)
        returned = self._usage.returned_quantity_by_code(window)

        missing_names = [code for code in dispensed if code not in names]
        if missing_names:
            for code, item in self._catalog_items(missing_names).items():
                if item.item_name:
                    names[code] = item.item_name

        results = []
        for code in sorted(dispensed):
            row = ReturnableQuantity(
                item_code=code,
                item_name=names.get(code),
                dispensed=dispensed[code],
                used=used.get(code, 0),
                returned=returned.get(code, 0),
            )
            if row.returnable > 0:
                results.append(row)

        logger.info(
            "returnable_quantities_computed",
            extra={"on_date": day.isoformat(), "item_code_count": len(results)},
        )
        return results

    # =========================================================================
    # Catalog checks
    # =========================================================================

    def validate_item_codes(self, item_codes: Iterable[str]) -> list[ItemCodeValidation]:
        codes = list(dict.fromkeys(c for c in item_codes if c))
        found = self._catalog_items(codes) if codes else {}
        return [
            ItemCodeValidation(
                item_code=code,
                exists=code in found,
                item_name=found[code].item_name if code in found else None,
            )
            for code in codes
        ]
