"""Tests for log formatting and the per-task logging context."""

import asyncio
import json
import logging
import sys

import pytest

from pipeline_engine.core.exceptions import RateLimitedError
from pipeline_engine.core.logging import (
    ContextualFormatter, ErrorRecoveryLogger, StructuredFormatter, WorkflowContextFilter,
    clear_logging_context, get_logging_context, set_logging_context
)


def make_record(message="hello", exc_info=None, **extra_fields):
    record = logging.LogRecord("pipeline_engine.test", logging.INFO, __file__, 10, message, None, exc_info)
    if extra_fields:
        record.extra_fields = extra_fields
    return record


class ListHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []
        self.addFilter(WorkflowContextFilter())

    def emit(self, record):
        self.records.append(record)


class TestFormatters:

    def test_structured_line_carries_context(self):
        line = StructuredFormatter().format(make_record(run_id="run-1", node_id="P"))
        entry = json.loads(line)

        assert entry["message"] == "hello"
        assert entry["run_id"] == "run-1"
        assert entry["node_id"] == "P"

    def test_structured_exception_reports_error_code(self):
        try:
            raise RateLimitedError("slow down", retry_after=3.0)
        except RateLimitedError:
            record = make_record("failed", exc_info=sys.exc_info())

        exception = json.loads(StructuredFormatter().format(record))["exception"]

        assert exception["type"] == "RateLimitedError"
        assert exception["error_code"] == "RateLimitedError"
        assert exception["recoverable"] is True

    def test_plain_line_appends_run_tags(self):
        formatter = ContextualFormatter(fmt="%(levelname)s %(message)s")

        assert formatter.format(make_record(run_id="r1", node_id="P", attempt=2)) == "INFO hello [run=r1 node=P]"
        assert formatter.format(make_record()) == "INFO hello"


class TestLoggingContext:

    def test_token_restores_previous_fields(self):
        outer = set_logging_context(run_id="run-1")
        inner = set_logging_context(node_id="P")
        assert get_logging_context() == {"run_id": "run-1", "node_id": "P"}

        clear_logging_context(inner)
        assert get_logging_context() == {"run_id": "run-1"}
        clear_logging_context(outer)
        assert get_logging_context() == {}

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_context(self):
        async def tagged(node_id):
            set_logging_context(node_id=node_id)
            await asyncio.sleep(0)
            return get_logging_context()

        results = await asyncio.gather(tagged("A"), tagged("B"))

        assert results == [{"node_id": "A"}, {"node_id": "B"}]
        assert get_logging_context() == {}


class TestErrorRecoveryLogger:

    def test_attempt_fields(self):
        recovery_logger = ErrorRecoveryLogger("scheduler")
        handler = ListHandler()
        recovery_logger.logger.addHandler(handler)
        token = set_logging_context(run_id="run-1")
        try:
            recovery_logger.log_recovery_attempt("node P", RateLimitedError("busy"), 1, 3, delay=1.23456)
        finally:
            clear_logging_context(token)
            recovery_logger.logger.removeHandler(handler)

        fields = handler.records[0].extra_fields
        assert handler.records[0].levelno == logging.WARNING
        assert fields["error_code"] == "RateLimitedError"
        assert fields["delay"] == 1.235
        assert fields["run_id"] == "run-1"
        assert fields["component"] == "scheduler"
