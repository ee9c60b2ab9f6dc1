"""Tests for the structured logging system (supply_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from supply_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "supply_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "line_item_usage_recorded", extra={"qty_used": 3, "item_status": "PARTIAL"},
        )

        record = _parse_log(stream)
        assert record["qty_used"] == 3
        assert record["item_status"] == "PARTIAL"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", line_item_id="li-456")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["line_item_id"] == "li-456"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_supply_exception_code_extracted(self):
        """Kernel exceptions carry a .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from supply_kernel.exceptions import QuantityExceededError

        try:
            raise QuantityExceededError("li-1", 10, 7, 2, 3)
        except QuantityExceededError:
            logger.error("usage_rejected", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "QUANTITY_EXCEEDED"
        assert record["exc_type"] == "QuantityExceededError"
        assert record["exc_approved_qty"] == 10
        assert record["exc_attempted_qty"] == 3

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "line_item_id" not in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"episode_ref": uid})

        record = _parse_log(stream)
        assert record["episode_ref"] == str(uid)

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        # default level is INFO, so the debug line is dropped
        logs = _parse_all_logs(stream)
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", episode_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "episode_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        assert "operation" not in LogContext.get_all()
        with LogContext.bind(operation="record_usage"):
            assert LogContext.get_all()["operation"] == "record_usage"
        assert "operation" not in LogContext.get_all()

    def test_bind_skips_none_values(self):
        with LogContext.bind(correlation_id="c", actor_id=None):
            assert LogContext.get_all() == {"correlation_id": "c"}

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            operation="o",
            actor_id="a",
            line_item_id="l",
            episode_id="e",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["operation"] == "o"
        assert ctx["episode_id"] == "e"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert len(logging.getLogger("supply_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.commands").name == "supply_kernel.services.commands"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "supply_kernel.deep.nested.module"
