"""
Tests for the ORM integrity listeners.

Direct ORM writes that break the ledger rules are rejected at flush time;
the database CHECK constraints catch the quantity bound when the listeners
are not installed.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from supply_kernel.db.immutability import (
    listeners_registered,
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from supply_kernel.exceptions import ImmutabilityViolationError
from supply_kernel.models.audit_entry import SupplyAuditEntry
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem, UsageEpisode
from supply_kernel.services.quantity_lifecycle_service import QuantityLifecycleService


@pytest.fixture
def lifecycle(session, deterministic_clock):
    return QuantityLifecycleService(session, deterministic_clock)


@pytest.fixture
def returned_item(session, lifecycle, line_item, test_actor_id):
    """The qty-10 line item with 3 used and 2 returned, flushed."""
    lifecycle.record_usage(line_item.id, 3, test_actor_id)
    lifecycle.record_return(line_item.id, 2, "EXPIRED", test_actor_id)
    session.flush()
    return session.get(LineItem, line_item.id)


def test_listeners_registered_for_suite():
    assert listeners_registered()


class TestReturnRecordProtection:
    def test_update_blocked(self, session, returned_item):
        record = returned_item.return_records[0]
        record.qty_returned = 1
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "ReturnRecord"

    def test_delete_blocked(self, session, returned_item):
        session.delete(returned_item.return_records[0])
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_deleted_with_episode(self, session, returned_item):
        episode = session.get(UsageEpisode, returned_item.episode_id)
        session.delete(episode)
        session.flush()
        assert session.query(ReturnRecord).count() == 0


class TestLineItemProtection:
    def test_status_must_match_quantities(self, session, line_item):
        item = session.get(LineItem, line_item.id)
        item.item_status = "COMPLETED"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_bound_enforced(self, session, line_item):
        item = session.get(LineItem, line_item.id)
        item.qty_used_with_patient = 11
        item.item_status = "COMPLETED"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_counter_cannot_decrease(self, session, returned_item):
        returned_item.qty_used_with_patient = 1
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "cannot decrease" in exc_info.value.reason

    def test_qty_frozen_after_consumption(self, session, returned_item):
        returned_item.qty = 20
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_qty_editable_before_consumption(self, session, line_item):
        item = session.get(LineItem, line_item.id)
        item.qty = 12
        session.flush()
        assert session.get(LineItem, line_item.id).qty == 12

    def test_inconsistent_insert_blocked(self, session, line_item):
        now = datetime(2024, 3, 15, tzinfo=timezone.utc)
        session.add(
            LineItem(
                episode_id=line_item.episode_id,
                line_no=2,
                item_code="SYR-05",
                qty=1,
                qty_used_with_patient=0,
                qty_returned_to_cabinet=0,
                item_status="PARTIAL",
                created_at=now,
                updated_at=now,
            )
        )
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestAuditEntryProtection:
    @pytest.fixture
    def entry(self, session):
        entry = SupplyAuditEntry(
            operation="record_usage",
            success=True,
            parameters={},
            occurred_at=datetime(2024, 3, 15, tzinfo=timezone.utc),
        )
        session.add(entry)
        session.flush()
        return entry

    def test_update_blocked(self, session, entry):
        entry.success = False
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, session, entry):
        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestDatabaseConstraints:
    def test_check_constraint_without_listeners(self, session, line_item):
        unregister_immutability_listeners()
        try:
            item = session.get(LineItem, line_item.id)
            item.qty_used_with_patient = 11
            with pytest.raises(IntegrityError):
                session.flush()
        finally:
            register_immutability_listeners()
        assert listeners_registered()
