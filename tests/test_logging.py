"""Tests for the structured logging setup (app/core/logging_config.py)."""

import json
import logging
from io import StringIO

from app.core.logging_config import LogContext, StructuredFormatter, configure_logging, get_logger
from services.wms.exceptions import InvalidStateTransition
from services.wms.tasking.service import TaskSpec


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().strip().split("\n") if line]


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello", extra={"qty": 4})

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "wms.test"
        assert record["qty"] == 4
        assert "ts" in record

    def test_bound_context_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")

        with LogContext.bind(task_id="t-1", actor_id="picker"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _parse_all_logs(stream)
        assert (inside["task_id"], inside["actor_id"]) == ("t-1", "picker")
        assert "task_id" not in outside

    def test_error_code_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InvalidStateTransition("WarehouseTask", "t-1", "completed", "complete")
        except InvalidStateTransition:
            get_logger("test").error("rejected", exc_info=True)

        record = _parse_all_logs(stream)[0]
        assert record["exc_code"] == "INVALID_STATE_TRANSITION"
        assert record["exc_type"] == "InvalidStateTransition"
        assert "traceback" in record

    def test_configure_is_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        assert len(logging.getLogger("wms").handlers) == 1


def test_lifecycle_events_carry_task_context(controller):
    handler, stream = _make_handler()
    configure_logging(handler=handler)

    task = controller.create(TaskSpec(task_type="putaway", qty_requested=3), actor="lead")
    controller.complete(task.id, actor="driver")

    completed = [r for r in _parse_all_logs(stream) if r["message"] == "task_completed"]
    assert completed[0]["logger"] == "wms.tasking.service"
    assert completed[0]["task_id"] == task.id
    assert completed[0]["actor_id"] == "driver"
