"""
Tests for SupplyCommandService.

The facade owns the transaction, validates ids and pagination, translates
storage failures and audits every outcome.
"""

from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from supply_engines.reconciliation import DiscrepancyStatus
from supply_kernel.domain.quantities import ItemStatus, ReturnReason
from supply_kernel.exceptions import (
    EpisodeNotFoundError,
    InternalError,
    InvalidItemStatusError,
    InvalidPaginationError,
    InvalidReturnReasonError,
    LineItemNotFoundError,
    QuantityExceededError,
)
from supply_kernel.models.return_record import ReturnRecord
from supply_kernel.models.usage_episode import LineItem
from supply_kernel.selectors.line_item_selector import LineItemSelector
from supply_kernel.services.audit_sink import AuditSink
from supply_services.sources import DispensedEvent
from supply_services.supply_command_service import SupplyCommandService


class ExplodingAuditSink(AuditSink):
    def emit(self, record):
        raise RuntimeError("audit store offline")


class TestLifecycleCommands:
    def test_record_usage_commits(self, commands, line_item, session_factory, test_actor_id):
        result = commands.record_usage(
            item_id=str(line_item.id), qty_used=4, recorded_by_user_id=test_actor_id,
        )
        assert result.qty_used_with_patient == 4

        with session_factory() as sess:
            stored = sess.get(LineItem, line_item.id)
            assert stored.qty_used_with_patient == 4
            assert stored.item_status == ItemStatus.PARTIAL.value

    def test_record_return_commits_record_and_counter(
        self, commands, line_item, session_factory, test_actor_id,
    ):
        result = commands.record_return(
            item_id=line_item.id,
            qty_returned=2,
            return_reason="EXPIRED",
            return_by_user_id=test_actor_id,
            return_note="past date",
        )
        assert result.return_record.return_reason is ReturnReason.EXPIRED

        with session_factory() as sess:
            assert sess.scalar(select(func.count(ReturnRecord.id))) == 1
            assert sess.get(LineItem, line_item.id).qty_returned_to_cabinet == 2

    def test_rejection_rolls_back(self, commands, line_item, session_factory, test_actor_id):
        commands.record_usage(item_id=line_item.id, qty_used=9, recorded_by_user_id=test_actor_id)
        with pytest.raises(QuantityExceededError):
            commands.record_return(
                item_id=line_item.id, qty_returned=3, return_reason="DAMAGED",
                return_by_user_id=test_actor_id,
            )
        with session_factory() as sess:
            assert sess.scalar(select(func.count(ReturnRecord.id))) == 0
            assert sess.get(LineItem, line_item.id).qty_returned_to_cabinet == 0

    @pytest.mark.parametrize("bad_id", ["not-a-uuid", "", 12345])
    def test_malformed_id_is_not_found(self, commands, db_engine, bad_id, test_actor_id):
        with pytest.raises(LineItemNotFoundError):
            commands.record_usage(item_id=bad_id, qty_used=1, recorded_by_user_id=test_actor_id)

    def test_invalid_reason(self, commands, line_item, test_actor_id):
        with pytest.raises(InvalidReturnReasonError):
            commands.record_return(
                item_id=line_item.id, qty_returned=1, return_reason="LOST",
                return_by_user_id=test_actor_id,
            )

    def test_get_line_item_includes_episode(self, commands, create_episode):
        episode = create_episode(patient_hn="HN-42", first_name="Anan")
        item = commands.get_line_item(item_id=episode.line_items[0].id)
        assert item.episode.patient_hn == "HN-42"
        assert item.episode.first_name == "Anan"

    def test_get_line_item_unknown(self, commands, db_engine):
        with pytest.raises(LineItemNotFoundError):
            commands.get_line_item(item_id=uuid4())

    def test_get_line_items_by_episode(self, commands, create_episode):
        episode = create_episode(lines=[("GAUZE-01", 1), ("SYR-05", 2)])
        items = commands.get_line_items_by_episode(episode_id=episode.id)
        assert [i.item_code for i in items] == ["GAUZE-01", "SYR-05"]

    def test_get_line_items_unknown_episode(self, commands, db_engine):
        with pytest.raises(EpisodeNotFoundError):
            commands.get_line_items_by_episode(episode_id="bogus")


class TestPagination:
    @pytest.mark.parametrize(
        "page,limit",
        [(0, 10), (-1, 10), (1, 0), (1, 101), ("x", 10), (1, "ten"), (True, 10)],
    )
    def test_invalid_pagination(self, commands, db_engine, page, limit):
        with pytest.raises(InvalidPaginationError):
            commands.get_pending_items(page=page, limit=limit)

    def test_default_limit_from_settings(self, commands, db_engine):
        result = commands.get_pending_items()
        assert (result.page, result.limit) == (1, 10)

    def test_string_values_accepted(self, commands, db_engine):
        result = commands.get_pending_items(page="2", limit="5")
        assert (result.page, result.limit) == (2, 5)

    def test_max_limit_accepted(self, commands, db_engine):
        assert commands.get_pending_items(limit=100).limit == 100

    def test_unknown_status_filter(self, commands, db_engine):
        with pytest.raises(InvalidItemStatusError):
            commands.get_pending_items(item_status="LOST")

    def test_status_filter(self, commands, line_item, test_actor_id):
        commands.record_usage(item_id=line_item.id, qty_used=10, recorded_by_user_id=test_actor_id)
        assert commands.get_pending_items().total == 0
        assert commands.get_pending_items(item_status="completed").total == 1


class TestAudit:
    def test_success_audited(self, commands, audit_sink, line_item, test_actor_id):
        commands.record_usage(item_id=line_item.id, qty_used=1, recorded_by_user_id=test_actor_id)

        assert audit_sink.operations() == [("record_usage", True)]
        record = audit_sink.records[0]
        assert record.actor_id == test_actor_id
        assert record.subject_id == str(line_item.id)
        assert record.parameters["qty_used"] == 1
        assert record.error_code is None

    def test_failure_audited(self, commands, audit_sink, line_item, test_actor_id):
        with pytest.raises(QuantityExceededError):
            commands.record_usage(
                item_id=line_item.id, qty_used=11, recorded_by_user_id=test_actor_id,
            )
        assert audit_sink.operations() == [("record_usage", False)]
        assert audit_sink.records[0].error_code == QuantityExceededError.code

    def test_reads_audited(self, commands, audit_sink, db_engine):
        commands.get_quantity_statistics()
        commands.get_episode_statistics()
        assert audit_sink.operations() == [
            ("get_quantity_statistics", True),
            ("get_episode_statistics", True),
        ]

    def test_audit_occurred_at_from_clock(self, commands, audit_sink, db_engine, deterministic_clock):
        commands.get_quantity_statistics()
        assert audit_sink.records[0].occurred_at == deterministic_clock.now()

    def test_sink_failure_does_not_change_outcome(
        self, session_factory, event_source, item_catalog, test_settings,
        deterministic_clock, line_item, captured_logs, test_actor_id,
    ):
        commands = SupplyCommandService(
            session_factory, event_source, item_catalog,
            settings=test_settings, audit_sink=ExplodingAuditSink(),
            clock=deterministic_clock,
        )

        result = commands.record_usage(
            item_id=line_item.id, qty_used=2, recorded_by_user_id=test_actor_id,
        )
        assert result.qty_used_with_patient == 2

        with pytest.raises(QuantityExceededError):
            commands.record_usage(
                item_id=line_item.id, qty_used=20, recorded_by_user_id=test_actor_id,
            )
        assert any(r["message"] == "audit_emit_failed" for r in captured_logs())

    def test_rejection_logged_with_context(self, commands, line_item, captured_logs, test_actor_id):
        with pytest.raises(QuantityExceededError):
            commands.record_usage(
                item_id=line_item.id, qty_used=50, recorded_by_user_id=test_actor_id,
            )
        rejected = [r for r in captured_logs() if r["message"] == "supply_command_rejected"]
        assert len(rejected) == 1
        assert rejected[0]["operation"] == "record_usage"
        assert rejected[0]["actor_id"] == test_actor_id
        assert rejected[0]["error_code"] == QuantityExceededError.code
        assert "correlation_id" in rejected[0]


class TestStorageFailure:
    def test_sqlalchemy_error_becomes_internal_error(
        self, commands, audit_sink, db_engine, monkeypatch,
    ):
        def broken(self, department_code=None):
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        monkeypatch.setattr(LineItemSelector, "quantity_statistics", broken)

        with pytest.raises(InternalError) as exc_info:
            commands.get_quantity_statistics()

        assert exc_info.value.operation == "get_quantity_statistics"
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert audit_sink.operations() == [("get_quantity_statistics", False)]
        assert audit_sink.records[0].error_code == InternalError.code

    def test_unexpected_error_audited_and_reraised(
        self, commands, audit_sink, db_engine, monkeypatch, captured_logs,
    ):
        def broken(self, department_code=None):
            raise RuntimeError("selector bug")

        monkeypatch.setattr(LineItemSelector, "quantity_statistics", broken)

        with pytest.raises(RuntimeError, match="selector bug"):
            commands.get_quantity_statistics()

        assert audit_sink.operations() == [("get_quantity_statistics", False)]
        assert audit_sink.records[0].error_code == InternalError.code
        assert any(r["message"] == "supply_command_failed" for r in captured_logs())


class TestCanonicalTimezone:
    @pytest.fixture
    def bangkok_commands(
        self, session_factory, event_source, item_catalog, test_settings,
        audit_sink, deterministic_clock,
    ):
        return SupplyCommandService(
            session_factory, event_source, item_catalog,
            settings=replace(test_settings, timezone="Asia/Bangkok"),
            audit_sink=audit_sink, clock=deterministic_clock,
        )

    def test_intake_and_filters_agree_on_naive_times(self, bangkok_commands, event_source):
        bangkok_commands.create_episode(
            patient_hn="HN-7",
            orders=[{"ItemCode": "GAUZE-01", "QTY": 2}],
            usage_datetime="2024-03-15T23:30:00",
        )
        event_source.add(
            DispensedEvent("GAUZE-01", datetime(2024, 3, 15, 16, 30, tzinfo=timezone.utc))
        )

        same_instant = bangkok_commands.list_episodes(
            date_from="2024-03-15T23:30:00", date_to="2024-03-15T23:30:00",
        )
        assert same_instant.total == 1
        assert same_instant.data[0].usage_datetime == datetime(
            2024, 3, 15, 16, 30, tzinfo=timezone.utc,
        )

        result = bangkok_commands.compare_dispensed_vs_usage(
            start_date="2024-03-15", end_date="2024-03-15",
        )
        assert [(r.item_code, r.total_dispensed, r.total_used) for r in result.comparison] == [
            ("GAUZE-01", 1, 2),
        ]


class TestReconciliationCommands:
    def test_compare(self, commands, event_source, create_episode):
        moment = datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)
        create_episode(lines=[("SYR-05", 2)], usage_datetime=moment)
        event_source.add(DispensedEvent("SYR-05", moment))

        result = commands.compare_dispensed_vs_usage(start_date="2024-03-10", end_date="2024-03-10")

        assert [(r.item_code, r.status) for r in result.comparison] == [
            ("SYR-05", DiscrepancyStatus.USAGE_EXCEEDS_DISPENSE),
        ]
        assert result.pagination.limit == 10

    def test_compare_pagination_validated(self, commands, db_engine):
        with pytest.raises(InvalidPaginationError):
            commands.compare_dispensed_vs_usage(limit=1000)

    def test_cap_from_settings(
        self, session_factory, event_source, item_catalog, test_settings,
        deterministic_clock, create_episode, audit_sink,
    ):
        from supply_kernel.exceptions import ComparisonTooLargeError

        create_episode(lines=[("GAUZE-01", 1), ("SYR-05", 1)])
        commands = SupplyCommandService(
            session_factory, event_source, item_catalog,
            settings=replace(test_settings, max_comparison_item_codes=1),
            audit_sink=audit_sink, clock=deterministic_clock,
        )
        with pytest.raises(ComparisonTooLargeError):
            commands.compare_dispensed_vs_usage()

    def test_returnable_quantities(self, commands, event_source, deterministic_clock):
        event_source.add(DispensedEvent("GLOVE-M", deterministic_clock.now()))
        rows = commands.get_returnable_quantities()
        assert [(r.item_code, r.item_name, r.returnable) for r in rows] == [
            ("GLOVE-M", "Exam glove M", 1),
        ]

    def test_validate_item_codes(self, commands, db_engine):
        results = commands.validate_item_codes(item_codes=["SYR-05", "XYZ"])
        assert [(r.item_code, r.exists) for r in results] == [("SYR-05", True), ("XYZ", False)]

    def test_drill_downs(self, commands, event_source, create_episode):
        moment = datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)
        create_episode(lines=[("CATH-14", 1)], usage_datetime=moment)
        event_source.add(DispensedEvent("CATH-14", moment))

        assert commands.get_dispensed_items(item_code="CATH-14").total == 1
        usage = commands.get_usage_by_item_code(item_code="CATH-14")
        assert [u.qty for u in usage] == [1]


class TestEpisodeCommands:
    def test_create_and_get(self, commands, test_actor_id):
        created = commands.create_episode(
            patient_hn="HN-9",
            orders=[{"ItemCode": "GAUZE-01", "QTY": "3"}],
            recorded_by_user_id=test_actor_id,
            department_code="ER",
        )
        fetched = commands.get_episode(episode_id=str(created.id))
        assert fetched.recorded_by_user_id == test_actor_id
        assert fetched.line_items[0].qty == 3

    def test_update_print_and_billing(self, commands):
        episode = commands.create_episode(patient_hn="HN-9", orders=[])
        commands.update_episode(episode_id=episode.id, purpose="ward round")
        commands.update_print_info(episode_id=episode.id, print_location="NS-1")
        updated = commands.update_billing_status(episode_id=episode.id, billing_status="BILLED")

        assert updated.purpose == "ward round"
        assert updated.print_location == "NS-1"
        assert updated.billing_status == "BILLED"

    def test_delete(self, commands):
        episode = commands.create_episode(patient_hn="HN-9", orders=[{"ItemCode": "SYR-05", "QTY": 1}])
        commands.delete_episode(episode_id=episode.id)
        with pytest.raises(EpisodeNotFoundError):
            commands.get_episode(episode_id=episode.id)

    def test_listings(self, commands, create_episode):
        create_episode(patient_hn="HN-1", department_code="ER")
        create_episode(patient_hn="HN-2", department_code="ICU")
        create_episode(patient_hn="HN-1", department_code="ICU")

        assert commands.list_episodes().total == 3
        assert len(commands.find_by_patient_hn(patient_hn="HN-1")) == 2
        assert len(commands.find_by_department(department_code="ICU")) == 2

    def test_statistics_are_repeatable(self, commands, create_episode):
        create_episode(department_code="ER")
        assert commands.get_episode_statistics() == commands.get_episode_statistics()
        assert commands.get_quantity_statistics() == commands.get_quantity_statistics()
