"""Tests for structured logging and trace context propagation."""

import asyncio
import json
import logging

import pytest

from blockflow.observability import clear_trace_context, get_trace_context, set_trace_context
from blockflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


@pytest.fixture(autouse=True)
def clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("blockflow.test", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_set_trace_context_merges():
    set_trace_context(trace_id="t1", execution_id="exec_1")
    set_trace_context(block_id="fetch")

    assert get_trace_context() == {"trace_id": "t1", "execution_id": "exec_1", "block_id": "fetch"}


def test_get_trace_context_returns_copy():
    set_trace_context(trace_id="t1")
    get_trace_context()["trace_id"] = "mutated"

    assert get_trace_context()["trace_id"] == "t1"


@pytest.mark.asyncio
async def test_concurrent_tasks_keep_their_own_block_id():
    set_trace_context(execution_id="exec_1")

    async def block(block_id: str) -> dict:
        set_trace_context(block_id=block_id)
        await asyncio.sleep(0)
        return get_trace_context()

    first, second = await asyncio.gather(block("a"), block("b"))

    assert first["block_id"] == "a"
    assert second["block_id"] == "b"
    assert first["execution_id"] == "exec_1"
    assert "block_id" not in get_trace_context()


def test_structured_formatter_includes_context_and_extras():
    set_trace_context(trace_id="t1", workflow_id="wf", block_id="fetch")
    record = make_record("\033[32mdone\033[0m", event="block_completed", duration_ms=12)

    entry = json.loads(StructuredFormatter().format(record))

    assert entry["message"] == "done"
    assert entry["level"] == "info"
    assert entry["trace_id"] == "t1"
    assert entry["block_id"] == "fetch"
    assert entry["event"] == "block_completed"
    assert entry["duration_ms"] == 12


def test_human_formatter_prefix():
    set_trace_context(trace_id="abcdef123456", execution_id="exec_0123456789", block_id="fetch")

    line = strip_ansi_codes(HumanReadableFormatter().format(make_record("hello")))

    assert "[trace:abcdef12 | exec:23456789 | block:fetch]" in line
    assert line.endswith("hello")
