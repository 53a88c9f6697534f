"""Tests for the structured logging system (settlement_kernel/logging_config.py)."""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from settlement_engines.tracer import TRACE_TYPE, compute_input_fingerprint, traced_engine
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import InsufficientFundsError
from settlement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite configuration."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    """Parse all JSON log lines from a stream."""
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "settlement_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("settled", extra={"record_count": 2, "status": "paid"})

        record = _parse_log(stream)
        assert record["record_count"] == 2
        assert record["status"] == "paid"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", document_id="doc-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["document_id"] == "doc-456"

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

    def test_settlement_exception_fields_extracted(self):
        """Settlement errors carry .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        source_id = uuid4()

        try:
            raise InsufficientFundsError(source_id, "Cash Drawer", Money.of("500.00"), Money.of("600.00"))
        except InsufficientFundsError:
            logger.error("payment_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INSUFFICIENT_FUNDS"
        assert record["exc_type"] == "InsufficientFundsError"
        assert record["exc_funding_source_label"] == "Cash Drawer"
        assert record["exc_funding_source_id"] == str(source_id)
        assert record["exc_shortfall"] == "100.00"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "settlement_id" not in record

    def test_uuid_decimal_and_date_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("typed", extra={
            "entry_id": uid,
            "amount": Decimal("12.50"),
            "due": date(2024, 3, 1),
        })

        record = _parse_log(stream)
        assert record["entry_id"] == str(uid)
        assert record["amount"] == "12.50"
        assert record["due"] == "2024-03-01"

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # Default level is INFO, so the debug line is dropped.
        assert len(logs) == 2
        for record in logs:
            assert "ts" in record
            assert "level" in record
            assert "logger" in record
            assert "message" in record


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", settlement_id="y")
        ctx = LogContext.get_all()
        assert ctx == {"correlation_id": "x", "settlement_id": "y"}

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
        """bind() restores to None if there was no previous value."""
        assert "correlation_id" not in LogContext.get_all()
        with LogContext.bind(correlation_id="temp"):
            assert LogContext.get_all()["correlation_id"] == "temp"
        assert "correlation_id" not in LogContext.get_all()

    def test_bind_skips_none_values(self):
        with LogContext.bind(actor_id="clerk", document_id=None):
            ctx = LogContext.get_all()
        assert ctx == {"actor_id": "clerk"}

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            actor_id="a",
            document_id="d",
            settlement_id="s",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 4
        assert ctx["document_id"] == "d"
        assert ctx["settlement_id"] == "s"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        root = logging.getLogger("settlement_kernel")
        assert len(root.handlers) == 1

    def test_get_logger_returns_child(self):
        logger = get_logger("services.settlement")
        assert logger.name == "settlement_kernel.services.settlement"

    def test_logger_hierarchy(self):
        """Child loggers inherit the settlement_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        child = get_logger("deep.nested.module")
        child.debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "settlement_kernel.deep.nested.module"


# ---------------------------------------------------------------------------
# Engine tracer tests
# ---------------------------------------------------------------------------


class TestTracedEngine:
    """Tests for the SETTLEMENT_ENGINE_TRACE decorator."""

    def test_trace_record_emitted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)

        @traced_engine("doubler", "2.1", fingerprint_fields=("amount",))
        def double(amount):
            return amount + amount

        assert double(Money.of("2.50")) == Money.of("5.00")

        record = _parse_log(stream)
        assert record["message"] == TRACE_TYPE
        assert record["engine_name"] == "doubler"
        assert record["engine_version"] == "2.1"
        assert len(record["input_fingerprint"]) == 16
        assert record["duration_ms"] >= 0

    def test_fingerprint_is_deterministic(self):
        first = compute_input_fingerprint(("a", "b"), {"a": Money.of("1.00"), "b": {"y": 2, "x": 1}})
        second = compute_input_fingerprint(("a", "b"), {"b": {"x": 1, "y": 2}, "a": Money.of("1.00")})
        assert first == second

    def test_fingerprint_changes_with_input(self):
        first = compute_input_fingerprint(("a",), {"a": Money.of("1.00")})
        second = compute_input_fingerprint(("a",), {"a": Money.of("1.01")})
        assert first != second

    def test_missing_field_recorded_as_null(self):
        assert compute_input_fingerprint(("a",), {}) == compute_input_fingerprint(("a",), {"a": None})
