"""Tests for trace context propagation and log formatters."""

import asyncio
import json
import logging

import pytest

from actorgraph.config import EngineConfig
from actorgraph.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from actorgraph.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="actorgraph.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_set_merges(self):
        set_trace_context(run_id="run_1")
        set_trace_context(node="a")

        assert get_trace_context() == {"run_id": "run_1", "node": "a"}

        clear_trace_context()
        assert get_trace_context() == {}

    @pytest.mark.asyncio
    async def test_tasks_inherit_but_do_not_leak(self):
        set_trace_context(run_id="run_1")

        async def child():
            set_trace_context(node="inside")
            return get_trace_context()

        seen = await asyncio.create_task(child())

        assert seen == {"run_id": "run_1", "node": "inside"}
        assert get_trace_context() == {"run_id": "run_1"}


class TestFormatters:
    def test_json_includes_context_and_extras(self):
        set_trace_context(run_id="run_abc", graph="g", step=2)

        line = StructuredFormatter().format(make_record(event="step_committed"))
        data = json.loads(line)

        assert data["message"] == "hello"
        assert data["level"] == "info"
        assert data["run_id"] == "run_abc"
        assert data["step"] == 2
        assert data["event"] == "step_committed"

    def test_json_strips_ansi(self):
        line = StructuredFormatter().format(make_record("\033[32mgreen\033[0m"))
        assert json.loads(line)["message"] == "green"
        assert strip_ansi_codes("\033[1;31mx\033[0m") == "x"

    def test_human_prefix(self):
        set_trace_context(run_id="run_0123456789", step=3, node="fetch")

        line = HumanReadableFormatter().format(make_record())

        assert "[run:23456789 | step:3 | node:fetch]" in line
        assert line.endswith("hello")

    def test_human_without_context(self):
        line = HumanReadableFormatter().format(make_record())
        assert "[run:" not in line


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_format(self):
        configure_logging(level="debug", format="json")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_auto_uses_env(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        configure_logging()
        assert isinstance(logging.getLogger().handlers[0].formatter, StructuredFormatter)

        monkeypatch.delenv("LOG_FORMAT")
        monkeypatch.setenv("ENV", "development")
        configure_logging()
        assert isinstance(logging.getLogger().handlers[0].formatter, HumanReadableFormatter)

    def test_from_engine_config(self):
        EngineConfig(log_level="warning", log_format="json").apply_logging()

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
