"""
ORM-level integrity enforcement for the supply ledger.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before INSERT/UPDATE/DELETE statements reach
the database.  The listeners here check the ledger rules and raise
ImmutabilityViolationError, which aborts the flush; the caller's transaction
rolls back and the database is never modified.

    session.flush()
         |
         v
    [before_insert / before_update] --> _check_line_item_*() ----+
         |                                                        |
         v                                                        v
    [before_delete] --> _check_return_record_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

The CHECK constraints on line_items cover the quantity bound at the database
level as well, for writes that bypass the ORM.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | Rule
------------------|-------------------------------------------------------------
LineItem          | used + returned <= qty, both >= 0; item_status matches
                  | the quantities; counters never decrease; qty frozen once
                  | consumption is recorded
ReturnRecord      | Never updated; deleted only together with its line item
SupplyAuditEntry  | Never updated or deleted

===============================================================================
USAGE
===============================================================================

Called once at startup (bootstrap does this):

    from supply_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

Tests that must write a forbidden row to prove detection elsewhere may call
unregister_immutability_listeners() and re-register afterwards.
"""

from sqlalchemy import event
from sqlalchemy.orm import object_session
from sqlalchemy.orm.attributes import get_history

from supply_kernel.domain.quantities import QuantitySnapshot
from supply_kernel.exceptions import ImmutabilityViolationError
from supply_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _violation(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_line_item_consistency(mapper, connection, target):
    """
    Reject a line item whose quantities or cached status are inconsistent.

    Runs on INSERT and UPDATE.
    """
    snapshot = QuantitySnapshot(
        qty=target.qty,
        used=target.qty_used_with_patient or 0,
        returned=target.qty_returned_to_cabinet or 0,
    )
    if target.qty is None or target.qty < 0 or not snapshot.is_valid():
        raise _violation(
            "LineItem",
            target.id,
            "WRITE",
            f"quantities out of bounds: qty={target.qty} "
            f"used={snapshot.used} returned={snapshot.returned}",
        )
    # An unset status is filled by the column default (PENDING) at INSERT
    status = target.item_status if target.item_status is not None else "PENDING"
    if status != snapshot.status:
        raise _violation(
            "LineItem",
            target.id,
            "WRITE",
            f"item_status {target.item_status} does not match quantities "
            f"(expected {snapshot.status.value})",
        )


def _check_line_item_progression(mapper, connection, target):
    """
    Consumption counters only grow, and qty is frozen once anything is consumed.
    """
    for field in ("qty_used_with_patient", "qty_returned_to_cabinet"):
        history = get_history(target, field)
        if history.deleted and history.added:
            old, new = history.deleted[0], history.added[0]
            if old is not None and new is not None and new < old:
                raise _violation(
                    "LineItem",
                    target.id,
                    "UPDATE",
                    f"{field} cannot decrease ({old} -> {new})",
                )

    qty_history = get_history(target, "qty")
    if qty_history.deleted and qty_history.added:
        used_before = _previous_value(target, "qty_used_with_patient")
        returned_before = _previous_value(target, "qty_returned_to_cabinet")
        if used_before + returned_before > 0:
            raise _violation(
                "LineItem",
                target.id,
                "UPDATE",
                "qty cannot change after consumption has been recorded",
            )


def _previous_value(target, field: str) -> int:
    history = get_history(target, field)
    if history.deleted:
        return history.deleted[0] or 0
    if history.unchanged:
        return history.unchanged[0] or 0
    return getattr(target, field) or 0


def _check_return_record_immutability(mapper, connection, target):
    raise _violation(
        "ReturnRecord",
        target.id,
        "UPDATE",
        "Return records are append-only and cannot be modified",
    )


def _check_return_record_delete(mapper, connection, target):
    """
    Allow a return record to be deleted only as part of deleting its line item
    (episode deletion, or line replacement on episode update).
    """
    from supply_kernel.models.usage_episode import LineItem

    session = object_session(target)
    if session is not None:
        deleted_line_ids = {
            obj.id for obj in session.deleted if isinstance(obj, LineItem)
        }
        if target.line_item_id in deleted_line_ids:
            return

    raise _violation(
        "ReturnRecord",
        target.id,
        "DELETE",
        "Return records are append-only and cannot be deleted",
    )


def _check_audit_entry_immutability(mapper, connection, target):
    raise _violation(
        "SupplyAuditEntry",
        target.id,
        "UPDATE",
        "Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    raise _violation(
        "SupplyAuditEntry",
        target.id,
        "DELETE",
        "Audit entries are immutable and cannot be deleted",
    )


def _listeners():
    from supply_kernel.models.audit_entry import SupplyAuditEntry
    from supply_kernel.models.return_record import ReturnRecord
    from supply_kernel.models.usage_episode import LineItem

    return [
        (LineItem, "before_insert", _check_line_item_consistency),
        (LineItem, "before_update", _check_line_item_consistency),
        (LineItem, "before_update", _check_line_item_progression),
        (ReturnRecord, "before_update", _check_return_record_immutability),
        (ReturnRecord, "before_delete", _check_return_record_delete),
        (SupplyAuditEntry, "before_update", _check_audit_entry_immutability),
        (SupplyAuditEntry, "before_delete", _check_audit_entry_delete),
    ]


def register_immutability_listeners():
    """
    Register all integrity enforcement event listeners.

    Safe to call more than once; already-registered listeners are skipped.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove integrity enforcement event listeners.

    WARNING: Only use this in tests.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)


def listeners_registered() -> bool:
    """True when every enforcement listener is currently registered."""
    return all(
        event.contains(target, event_name, listener_fn)
        for target, event_name, listener_fn in _listeners()
    )
