"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O (SystemClock is the one sanctioned exception)

All domain objects are immutable and deterministic.
"""

from supply_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from supply_kernel.domain.quantities import (
    OPEN_STATUSES,
    ItemStatus,
    QuantitySnapshot,
    ReturnReason,
    coerce_quantity,
    derive_status,
    parse_item_status,
    parse_return_reason,
)
from supply_kernel.domain.time_window import TimeWindow, resolve_window

__all__ = [
    "Clock",
    "DeterministicClock",
    "ItemStatus",
    "OPEN_STATUSES",
    "QuantitySnapshot",
    "ReturnReason",
    "SystemClock",
    "TimeWindow",
    "coerce_quantity",
    "derive_status",
    "parse_item_status",
    "parse_return_reason",
    "resolve_window",
]
