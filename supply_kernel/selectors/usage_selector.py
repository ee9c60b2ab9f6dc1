"""
Module: supply_kernel.selectors.usage_selector
Responsibility: Clinical-usage side of reconciliation.  Aggregates line items
    per item code within a window, lists usage detail rows for drill-down,
    and totals same-day usage and returns per item code.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Usage windows filter on the episode's usage_datetime.
    - Usage quantity per code is the sum of line-item qty.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_, select

from supply_kernel.domain.dtos import UsageDetail
from supply_kernel.domain.time_window import TimeWindow
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem, UsageEpisode
from supply_kernel.selectors.base import BaseSelector

DISCONTINUED_ORDER_STATUS = "Discontinue"


@dataclass(frozen=True)
class ItemUsageTotals:
    """Clinical usage of one item code inside a window."""

    item_code: str
    total_used: int
    record_count: int
    first_used: datetime | None
    last_used: datetime | None


class UsageSelector(BaseSelector[LineItem]):
    """Selector over line items grouped by item code."""

    def usage_totals(
        self,
        window: TimeWindow | None = None,
        item_code: str | None = None,
        department_code: str | None = None,
    ) -> list[ItemUsageTotals]:
        query = (
            select(
                LineItem.item_code,
                func.coalesce(func.sum(LineItem.qty), 0),
                func.count(LineItem.id),
                func.min(UsageEpisode.usage_datetime),
                func.max(UsageEpisode.usage_datetime),
            )
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .group_by(LineItem.item_code)
            .order_by(LineItem.item_code)
        )
        if window is not None:
            query = query.where(*window.apply(UsageEpisode.usage_datetime))
        if item_code:
            query = query.where(LineItem.item_code == item_code)
        if department_code:
            query = query.where(UsageEpisode.department_code == department_code)

        return [
            ItemUsageTotals(
                item_code=code,
                total_used=int(total),
                record_count=int(count),
                first_used=first,
                last_used=last,
            )
            for code, total, count, first, last in self.session.execute(query)
        ]

    def usage_details(
        self,
        window: TimeWindow | None = None,
        item_code: str | None = None,
        department_code: str | None = None,
    ) -> list[UsageDetail]:
        query = (
            select(LineItem, UsageEpisode)
            .join(UsageEpisode, LineItem.episode_id == UsageEpisode.id)
            .order_by(UsageEpisode.usage_datetime.desc(), LineItem.item_code, LineItem.id)
        )
        if window is not None:
            query = query.where(*window.apply(UsageEpisode.usage_datetime))
        if item_code:
            query = query.where(LineItem.item_code == item_code)
        if department_code:
            query = query.where(UsageEpisode.department_code == department_code)

        details = []
        for item, episode in self.session.execute(query):
            details.append(
                UsageDetail(
                    episode_id=episode.id,
                    line_item_id=item.id,
                    patient_hn=episode.patient_hn,
                    en=episode.en,
                    patient_name=" ".join(
                        p for p in (episode.first_name, episode.last_name) if p
                    ),
                    department_code=episode.department_code,
                    usage_datetime=episode.usage_datetime,
                    item_code=item.item_code,
                    item_description=item.item_description,
                    order_item_status=item.order_item_status,
                    qty=item.qty,
                    qty_used_with_patient=item.qty_used_with_patient,
                    qty_returned_to_cabinet=item.qty_returned_to_cabinet,
                )
            )
        return details

    def recorded_quantity_by_code(self, window: TimeWindow) -> dict[str, int]:
        """
        Line-item qty per code for lines recorded inside ``window``.

        Discontinued order lines are not counted.
        """
        rows = self.session.execute(
            select(LineItem.item_code, func.coalesce(func.sum(LineItem.qty), 0))
            .where(*window.apply(LineItem.created_at))
            .where(
                or_(
                    LineItem.order_item_status.is_(None),
                    LineItem.order_item_status != DISCONTINUED_ORDER_STATUS,
                )
            )
            .group_by(LineItem.item_code)
        )
        return {code: int(qty) for code, qty in rows}

    def returned_quantity_by_code(self, window: TimeWindow) -> dict[str, int]:
        rows = self.session.execute(
            select(
                ReturnRecord.item_code,
                func.coalesce(func.sum(ReturnRecord.qty_returned), 0),
            )
            .where(*window.apply(ReturnRecord.return_datetime))
            .group_by(ReturnRecord.item_code)
        )
        return {code: int(qty) for code, qty in rows}
