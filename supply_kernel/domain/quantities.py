"""
Quantity lifecycle rules -- pure functional core.

Responsibility:
    Declares the line-item status and return-reason vocabularies and the pure
    functions that derive status and validate a proposed consumption against
    the approved quantity.  No I/O, no ORM.

Invariants enforced:
    Q1 -- used + returned <= qty, both non-negative.
    Q2 -- item_status is a pure function of (qty, used, returned):
          PENDING   iff used + returned == 0
          COMPLETED iff used + returned == qty (and non-zero)
          PARTIAL   otherwise
    Q3 -- consumption only moves forward: every accepted delta is > 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from supply_kernel.exceptions import (
    InvalidItemStatusError,
    InvalidQuantityError,
    InvalidReturnReasonError,
    QuantityExceededError,
)


class ItemStatus(str, Enum):
    """Consumption status of a dispensed line item."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"


class ReturnReason(str, Enum):
    """Why an item went back to the cabinet."""

    UNWRAPPED_UNUSED = "UNWRAPPED_UNUSED"
    EXPIRED = "EXPIRED"
    CONTAMINATED = "CONTAMINATED"
    DAMAGED = "DAMAGED"


# Statuses returned by the pending-items query when no explicit status is given
OPEN_STATUSES: tuple[ItemStatus, ...] = (ItemStatus.PENDING, ItemStatus.PARTIAL)


def derive_status(qty: int, used: int, returned: int) -> ItemStatus:
    """Derive item status from the three quantities (Q2)."""
    consumed = used + returned
    if consumed == 0:
        return ItemStatus.PENDING
    if consumed == qty:
        return ItemStatus.COMPLETED
    return ItemStatus.PARTIAL


def coerce_quantity(value: object, field: str, *, allow_zero: bool = False) -> int:
    """
    Turn a caller-supplied quantity into an int.

    Integer-valued strings ("3") are accepted because order feeds deliver QTY
    as text.  Booleans, fractions and anything non-numeric are rejected.
    """
    if isinstance(value, bool):
        raise InvalidQuantityError(field, value, "must be an integer")
    if isinstance(value, int):
        qty = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        qty = int(value.strip())
    elif isinstance(value, float) and value.is_integer():
        qty = int(value)
    else:
        raise InvalidQuantityError(field, value, "must be an integer")

    if allow_zero:
        if qty < 0:
            raise InvalidQuantityError(field, value, "must not be negative")
    elif qty <= 0:
        raise InvalidQuantityError(field, value)
    return qty


def parse_return_reason(value: object) -> ReturnReason:
    """Resolve a return reason from an enum member or its string value."""
    if isinstance(value, ReturnReason):
        return value
    if isinstance(value, str):
        try:
            return ReturnReason(value.strip().upper())
        except ValueError:
            pass
    raise InvalidReturnReasonError(value, tuple(r.value for r in ReturnReason))


def parse_item_status(value: object) -> ItemStatus:
    """Resolve an item status from an enum member or its string value."""
    if isinstance(value, ItemStatus):
        return value
    if isinstance(value, str):
        try:
            return ItemStatus(value.strip().upper())
        except ValueError:
            pass
    raise InvalidItemStatusError(value, tuple(s.value for s in ItemStatus))


@dataclass(frozen=True)
class QuantitySnapshot:
    """The three quantities of one line item at a point in time."""

    qty: int
    used: int
    returned: int

    @property
    def consumed(self) -> int:
        return self.used + self.returned

    @property
    def pending(self) -> int:
        return self.qty - self.used - self.returned

    @property
    def status(self) -> ItemStatus:
        return derive_status(self.qty, self.used, self.returned)

    def is_valid(self) -> bool:
        """Q1 holds for this snapshot."""
        return self.used >= 0 and self.returned >= 0 and self.consumed <= self.qty

    def with_usage(self, line_item_id: str, qty_used: int) -> QuantitySnapshot:
        """
        Return the snapshot after recording ``qty_used`` more units as used.

        Raises:
            InvalidQuantityError: qty_used <= 0.
            QuantityExceededError: the bound in Q1 would be broken.
        """
        self._check(line_item_id, qty_used, "qty_used")
        return QuantitySnapshot(self.qty, self.used + qty_used, self.returned)

    def with_return(self, line_item_id: str, qty_returned: int) -> QuantitySnapshot:
        """Return the snapshot after returning ``qty_returned`` units to the cabinet."""
        self._check(line_item_id, qty_returned, "qty_returned")
        return QuantitySnapshot(self.qty, self.used, self.returned + qty_returned)

    def _check(self, line_item_id: str, delta: int, field: str) -> None:
        if delta <= 0:
            raise InvalidQuantityError(field, delta)
        if self.consumed + delta > self.qty:
            raise QuantityExceededError(
                line_item_id=line_item_id,
                approved_qty=self.qty,
                used_qty=self.used,
                returned_qty=self.returned,
                attempted_qty=delta,
            )


_CENT = Decimal("0.01")


def percent_of(part: int, total: int) -> Decimal:
    """``part`` as a percentage of ``total`` to two places; 0 when total is 0."""
    if not total:
        return Decimal("0.00")
    return (Decimal(part) * 100 / Decimal(total)).quantize(_CENT, rounding=ROUND_HALF_UP)
