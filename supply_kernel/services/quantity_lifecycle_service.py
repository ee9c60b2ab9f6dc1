"""
QuantityLifecycleService -- usage and return mutations on line items.

Responsibility:
    Applies "used with patient" and "returned to cabinet" quantities to a
    line item, enforcing the quantity bound and keeping the cached status in
    step with the counters.

Architecture position:
    Kernel > Services -- imperative shell.  Pure rules live in
    ``domain/quantities.py``; this module does the locking and the writes.

Invariants enforced:
    Q1 -- used + returned <= qty after every accepted mutation.
    Q2 -- item_status is recomputed from the quantities on every write.
    Q3 -- every accepted delta is > 0, so counters never decrease.
    Return atomicity -- the ReturnRecord insert and the LineItem update go
    out in one flush inside the caller's transaction.
    Return-sum -- sum(ReturnRecord.qty_returned) == qty_returned_to_cabinet.

Concurrency:
    The line item is read with SELECT ... FOR UPDATE (PostgreSQL), so a
    concurrent mutation of the same item waits for ours to commit and then
    re-checks against the committed counters.  Every UPDATE also carries a
    ``version`` compare-and-swap; if the row changed underneath us (a backend
    without row locks, or a caller holding a stale instance) the flush fails
    with OptimisticLockError.  There is no automatic retry.

Failure modes (checked in this order):
    - LineItemNotFoundError: unknown id.
    - InvalidQuantityError: delta <= 0 or not an integer.
    - QuantityExceededError: the bound would be broken.
    - InvalidReturnReasonError: reason outside the enumeration.
    - OptimisticLockError: version check failed on flush.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from supply_kernel.domain.dtos import LineItemDTO, ReturnRecordDTO, ReturnResult
from supply_kernel.domain.quantities import (
    QuantitySnapshot,
    coerce_quantity,
    parse_return_reason,
)
from supply_kernel.exceptions import LineItemNotFoundError, OptimisticLockError
from supply_kernel.logging_config import get_logger
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem
from supply_kernel.services.base import BaseService

logger = get_logger("services.quantity_lifecycle")


class QuantityLifecycleService(BaseService[LineItem]):
    """Records usage and returns against a single line item."""

    def record_usage(
        self,
        line_item_id: UUID,
        qty_used: object,
        actor_id: str,
    ) -> LineItemDTO:
        """
        Record ``qty_used`` more units as used on the patient.

        Postconditions:
            - qty_used_with_patient grows by exactly ``qty_used``.
            - item_status matches the new quantities.

        Returns:
            The updated line item with its return records.
        """
        with self._version_guard(line_item_id):
            item = self._get_for_update(line_item_id)
            qty = coerce_quantity(qty_used, "qty_used")
            after = self._snapshot(item).with_usage(str(item.id), qty)

            item.qty_used_with_patient = after.used
            item.item_status = after.status.value
            item.updated_at = self._clock.now()
            self.session.flush()

        logger.info(
            "line_item_usage_recorded",
            extra={
                "line_item_id": str(item.id),
                "item_code": item.item_code,
                "qty_used": qty,
                "total_used": after.used,
                "item_status": after.status.value,
                "actor_id": actor_id,
            },
        )
        return LineItemDTO.from_model(item)

    def record_return(
        self,
        line_item_id: UUID,
        qty_returned: object,
        reason: object,
        actor_id: str,
        note: str | None = None,
    ) -> ReturnResult:
        """
        Return ``qty_returned`` unused units to the cabinet.

        Inserts a ReturnRecord and updates the line item in the same flush.

        Returns:
            ReturnResult with the new record and the updated line item.
        """
        with self._version_guard(line_item_id):
            item = self._get_for_update(line_item_id)
            qty = coerce_quantity(qty_returned, "qty_returned")
            return_reason = parse_return_reason(reason)
            after = self._snapshot(item).with_return(str(item.id), qty)

            now = self._clock.now()
            record = ReturnRecord(
                line_item_id=item.id,
                item_code=item.item_code,
                qty_returned=qty,
                return_reason=return_reason.value,
                return_by_user_id=actor_id,
                return_note=note,
                return_datetime=now,
                created_at=now,
            )
            item.return_records.append(record)
            item.qty_returned_to_cabinet = after.returned
            item.item_status = after.status.value
            item.updated_at = now
            self.session.flush()

        logger.info(
            "line_item_return_recorded",
            extra={
                "line_item_id": str(item.id),
                "return_record_id": str(record.id),
                "item_code": item.item_code,
                "qty_returned": qty,
                "return_reason": return_reason.value,
                "total_returned": after.returned,
                "item_status": after.status.value,
                "actor_id": actor_id,
            },
        )
        return ReturnResult(
            return_record=ReturnRecordDTO.from_model(record),
            updated_item=LineItemDTO.from_model(item),
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _get_for_update(self, line_item_id: UUID) -> LineItem:
        """Load the line item under a row lock, refreshing any cached state."""
        item = self.session.execute(
            select(LineItem)
            .where(LineItem.id == line_item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if item is None:
            raise LineItemNotFoundError(str(line_item_id))
        return item

    @staticmethod
    def _snapshot(item: LineItem) -> QuantitySnapshot:
        return QuantitySnapshot(
            qty=item.qty,
            used=item.qty_used_with_patient,
            returned=item.qty_returned_to_cabinet,
        )

    @contextmanager
    def _version_guard(self, line_item_id: UUID) -> Iterator[None]:
        """
        Translate a failed version check into OptimisticLockError.

        Covers both the explicit flush and the autoflush that runs before the
        locking SELECT when the session already holds a stale change.
        """
        try:
            yield
        except StaleDataError as exc:
            logger.warning(
                "line_item_version_conflict",
                extra={"line_item_id": str(line_item_id)},
            )
            raise OptimisticLockError("LineItem", str(line_item_id)) from exc
