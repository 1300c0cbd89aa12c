"""
Tests for structured JSON logging and LogContext propagation.
"""

import json
import logging
import sys
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from work_kernel.exceptions import OptimisticLockError
from work_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    get_logger,
)


def format_record(logger_name="work_kernel.test", msg="event_happened", extra=None, exc_info=None):
    record = logging.LogRecord(logger_name, logging.INFO, __file__, 1, msg, (), exc_info)
    for key, value in (extra or {}).items():
        setattr(record, key, value)
    return json.loads(StructuredFormatter().format(record))


class TestStructuredFormatter:
    def test_basic_fields(self):
        payload = format_record()
        assert payload["message"] == "event_happened"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "work_kernel.test"
        assert "ts" in payload

    def test_extra_values_serialized(self):
        wr_id = uuid4()
        payload = format_record(extra={"work_request_id": wr_id, "cost": Decimal("10.50")})
        assert payload["work_request_id"] == str(wr_id)
        assert payload["cost"] == "10.50"

    def test_kernel_error_fields_flattened(self):
        try:
            raise OptimisticLockError("WorkRequest", "wr-1", 1, 2)
        except OptimisticLockError:
            payload = format_record(exc_info=sys.exc_info())

        assert payload["exc_code"] == "OPTIMISTIC_LOCK_CONFLICT"
        assert payload["exc_expected_version"] == 1
        assert payload["exc_actual_version"] == 2


class TestLogContext:
    def test_bind_restores_previous_values(self):
        LogContext.set(actor_id="outer")
        with LogContext.bind(actor_id="inner", work_request_id=uuid4()):
            assert LogContext.get_all()["actor_id"] == "inner"
        assert LogContext.get_all() == {"actor_id": "outer"}

    def test_unknown_context_field_rejected(self):
        with pytest.raises(ValueError):
            LogContext.set(tenant_id="org-1")
        assert LogContext.get_all() == {}

    def test_context_included_in_records(self):
        with LogContext.bind(operation="submit", organization_id="org-1"):
            payload = format_record()
        assert payload["operation"] == "submit"
        assert payload["organization_id"] == "org-1"

    def test_get_logger_namespaced(self, captured_logs):
        get_logger("services.test").info("namespaced_event", extra={"n": 1})

        record = [r for r in captured_logs() if r["message"] == "namespaced_event"][0]
        assert record["logger"] == "work_kernel.services.test"
        assert record["n"] == 1


def test_stream_handler_emits_json_lines():
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    logger = logging.getLogger("work_kernel.stream_test")
    logger.addHandler(handler)
    try:
        logger.warning("first")
        logger.warning("second")
    finally:
        logger.removeHandler(handler)

    lines = stream.getvalue().strip().split("\n")
    assert [json.loads(line)["message"] for line in lines] == ["first", "second"]
