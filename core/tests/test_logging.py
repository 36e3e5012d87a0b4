"""Tests for trace context propagation and the log formatters."""

import json
import logging
import sys

import pytest

from adaptflow.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from adaptflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


def make_record(message="hello", level=logging.INFO, **extra):
    record = logging.LogRecord("adaptflow.test", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestTraceContext:
    def test_set_merges_fields(self):
        set_trace_context(run_id="run-1")
        set_trace_context(node_id="fetch")

        assert get_trace_context() == {"run_id": "run-1", "node_id": "fetch"}

    def test_get_returns_copy(self):
        set_trace_context(run_id="run-1")
        get_trace_context()["run_id"] = "changed"

        assert get_trace_context()["run_id"] == "run-1"

    def test_clear(self):
        set_trace_context(run_id="run-1")
        clear_trace_context()

        assert get_trace_context() == {}


class TestStructuredFormatter:
    def test_includes_context_and_extras(self):
        set_trace_context(run_id="run-1", graph_id="pipeline")
        record = make_record("\033[32mdone\033[0m", task_id="job-1", plan_id="p-1")

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "done"
        assert entry["level"] == "info"
        assert entry["logger"] == "adaptflow.test"
        assert entry["run_id"] == "run-1"
        assert entry["graph_id"] == "pipeline"
        assert entry["task_id"] == "job-1"
        assert entry["plan_id"] == "p-1"
        assert "metric_id" not in entry

    def test_exception_is_serialised(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record("failed", level=logging.ERROR)
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredFormatter().format(record))
        assert "ValueError: bad" in entry["exception"]


class TestHumanReadableFormatter:
    def test_prefix_from_context(self):
        set_trace_context(run_id="run-0123456789", graph_id="pipeline", node_id="fetch")

        output = strip_ansi_codes(HumanReadableFormatter().format(make_record("hi")))

        assert output == "[INFO    ] [run:23456789 | graph:pipeline | node:fetch] hi"

    def test_no_prefix_without_context(self):
        output = strip_ansi_codes(HumanReadableFormatter().format(make_record("hi", event="x")))

        assert output == "[INFO    ] hi [x]"


class TestConfigureLogging:
    def test_json_format(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "0")
        configure_logging(level="debug", format="json")

        [handler] = restore_root_logger.handlers
        assert isinstance(handler.formatter, StructuredFormatter)
        assert restore_root_logger.level == logging.DEBUG

    def test_auto_picks_json_in_production(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "0")
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        monkeypatch.setenv("ENV", "production")

        configure_logging()

        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)

    def test_auto_defaults_to_human(self, restore_root_logger, monkeypatch):
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        monkeypatch.delenv("ENV", raising=False)

        configure_logging(level="warning")

        assert isinstance(restore_root_logger.handlers[0].formatter, HumanReadableFormatter)
        assert restore_root_logger.level == logging.WARNING
