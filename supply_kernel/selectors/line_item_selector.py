"""
Module: supply_kernel.selectors.line_item_selector
Responsibility: Read-only queries over line items and their return records:
    single-item lookup, pending items, return history and quantity statistics.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only: repeated calls without intervening writes return identical
      results.
    - Listings are newest first; ties break on episode and line position.
    - qty_pending is computed from the three quantities, never stored.

Failure modes:
    - LineItemNotFoundError / EpisodeNotFoundError for single-entity lookups.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import func, select

from supply_kernel.domain.dtos import (
    LineItemDTO,
    Page,
    QuantityStatistics,
    ReasonStatistic,
    ReturnRecordDTO,
)
from supply_kernel.domain.quantities import (
    OPEN_STATUSES,
    ItemStatus,
    ReturnReason,
    percent_of,
)
from supply_kernel.domain.time_window import TimeWindow
from supply_kernel.exceptions import EpisodeNotFoundError, LineItemNotFoundError
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem, UsageEpisode
from supply_kernel.selectors.base import BaseSelector


def _episode_filters(department_code: str | None, patient_hn: str | None) -> list:
    clauses = []
    if department_code:
        clauses.append(UsageEpisode.department_code == department_code)
    if patient_hn:
        clauses.append(UsageEpisode.patient_hn == patient_hn)
    return clauses


class LineItemSelector(BaseSelector[LineItem]):
    """Selector for line items and return records."""

    def get(self, line_item_id: UUID) -> LineItemDTO:
        item = self.session.get(LineItem, line_item_id)
        if item is None:
            raise LineItemNotFoundError(str(line_item_id))
        return LineItemDTO.from_model(item, with_episode=True)

    def get_by_episode(self, episode_id: UUID) -> list[LineItemDTO]:
        if self.session.get(UsageEpisode, episode_id) is None:
            raise EpisodeNotFoundError(str(episode_id))
        items = self.session.scalars(
            select(LineItem)
            .where(LineItem.episode_id == episode_id)
            .order_by(LineItem.line_no, LineItem.id)
        ).all()
        return [LineItemDTO.from_model(item) for item in items]

    def pending_items(
        self,
        department_code: str | None = None,
        patient_hn: str | None = None,
        item_status: ItemStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[LineItemDTO]:
        """
        Line items still open for consumption.

        Without ``item_status`` this returns PENDING and PARTIAL items; an
        explicit status replaces that default.
        """
        statuses: Sequence[ItemStatus] = (
            (item_status,) if item_status is not None else OPEN_STATUSES
        )
        query = (
            select(LineItem)
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .where(LineItem.item_status.in_([s.value for s in statuses]))
            .where(*_episode_filters(department_code, patient_hn))
            .order_by(
                LineItem.created_at.desc(),
                LineItem.episode_id,
                LineItem.line_no,
            )
        )
        total = self._count(query)
        items = self.session.scalars(self._page(query, page, limit)).all()
        return Page(
            data=tuple(LineItemDTO.from_model(i, with_episode=True) for i in items),
            total=total,
            page=page,
            limit=limit,
        )

    def return_history(
        self,
        department_code: str | None = None,
        patient_hn: str | None = None,
        return_reason: ReturnReason | None = None,
        window: TimeWindow | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[ReturnRecordDTO]:
        query = (
            select(ReturnRecord)
            .join(LineItem, ReturnRecord.line_item_id == LineItem.id)
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .where(*_episode_filters(department_code, patient_hn))
            .order_by(ReturnRecord.return_datetime.desc(), ReturnRecord.id.desc())
        )
        if return_reason is not None:
            query = query.where(ReturnRecord.return_reason == return_reason.value)
        if window is not None:
            query = query.where(*window.apply(ReturnRecord.return_datetime))

        total = self._count(query)
        records = self.session.scalars(self._page(query, page, limit)).all()
        return Page(
            data=tuple(ReturnRecordDTO.from_model(r, with_context=True) for r in records),
            total=total,
            page=page,
            limit=limit,
        )

    def quantity_statistics(self, department_code: str | None = None) -> QuantityStatistics:
        """
        Totals, percentages and breakdowns over all matching line items.

        Every status and every return reason is present in the breakdowns,
        with zero counts where nothing matches.
        """
        scope = _episode_filters(department_code, None)

        totals = self.session.execute(
            select(
                func.count(LineItem.id),
                func.coalesce(func.sum(LineItem.qty), 0),
                func.coalesce(func.sum(LineItem.qty_used_with_patient), 0),
                func.coalesce(func.sum(LineItem.qty_returned_to_cabinet), 0),
            )
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .where(*scope)
        ).one()
        item_count, total_qty, total_used, total_returned = (int(v) for v in totals)
        total_pending = total_qty - total_used - total_returned

        by_status = {status.value: 0 for status in ItemStatus}
        status_rows = self.session.execute(
            select(LineItem.item_status, func.count(LineItem.id))
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .where(*scope)
            .group_by(LineItem.item_status)
        ).all()
        for status, count in status_rows:
            by_status[ItemStatus(status).value] = int(count)

        reason_totals = {reason: (0, 0) for reason in ReturnReason}
        reason_rows = self.session.execute(
            select(
                ReturnRecord.return_reason,
                func.count(ReturnRecord.id),
                func.coalesce(func.sum(ReturnRecord.qty_returned), 0),
            )
            .join(LineItem, ReturnRecord.line_item_id == LineItem.id)
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .where(*scope)
            .group_by(ReturnRecord.return_reason)
        ).all()
        for reason, count, qty in reason_rows:
            reason_totals[ReturnReason(reason)] = (int(count), int(qty))

        return QuantityStatistics(
            item_count=item_count,
            total_qty=total_qty,
            total_used=total_used,
            total_returned=total_returned,
            total_pending=total_pending,
            used_percentage=percent_of(total_used, total_qty),
            returned_percentage=percent_of(total_returned, total_qty),
            pending_percentage=percent_of(total_pending, total_qty),
            by_status=by_status,
            by_return_reason=tuple(
                ReasonStatistic(return_reason=reason, count=count, total_qty=qty)
                for reason, (count, qty) in reason_totals.items()
            ),
        )
