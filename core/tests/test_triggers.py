"""
Tests for start block resolution and initial input shaping.
"""

import pytest

from blockflow.errors import TriggerResolutionError
from blockflow.graph.block import Block
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.serializer import serialize_workflow
from blockflow.graph.triggers import (
    InvocationKind,
    TriggerKind,
    build_initial_input,
    coerce_value,
    resolve_start,
    trigger_kind,
)


def workflow_with(*triggers: Block):
    blocks = [*triggers, Block(id="work", type="echo")]
    edges = [EdgeSpec(source=t.id, target="work") for t in triggers]
    return serialize_workflow(blocks, edges)


class TestTriggerKind:
    def test_table_lookup(self):
        assert trigger_kind(Block(id="a", type="api_trigger")) == TriggerKind.API
        assert trigger_kind(Block(id="i", type="input_trigger")) == TriggerKind.MANUAL
        assert trigger_kind(Block(id="s", type="starter")) == TriggerKind.STARTER
        assert trigger_kind(Block(id="x", type="echo")) is None

    def test_trigger_mode_block_is_webhook(self):
        assert trigger_kind(Block(id="gh", type="github", trigger_mode=True)) == TriggerKind.WEBHOOK


class TestResolveStart:
    def test_manual_run_uses_starter(self):
        workflow = workflow_with(Block(id="start", type="starter"))

        start = resolve_start(workflow, InvocationKind.MANUAL, {"city": "Oslo"})

        assert start.block_id == "start"
        assert start.kind == TriggerKind.STARTER
        assert start.initial_input == {"city": "Oslo", "input": {"city": "Oslo"}}

    def test_api_trigger_preferred_over_starter(self):
        workflow = workflow_with(
            Block(id="start", type="starter"),
            Block(id="api", type="api_trigger"),
        )

        assert resolve_start(workflow, "api").block_id == "api"
        assert resolve_start(workflow, "manual").block_id == "api"

    def test_chat_falls_back_to_chat_mode_starter(self):
        starter = Block(id="start", type="starter", inputs={"start_workflow": "chat"})
        workflow = workflow_with(starter)

        start = resolve_start(workflow, InvocationKind.CHAT, "hello")

        assert start.block_id == "start"
        assert start.initial_input == {"input": "hello"}

    def test_chat_rejects_starter_not_configured_for_chat(self):
        workflow = workflow_with(Block(id="start", type="starter"))

        with pytest.raises(TriggerResolutionError, match="Chat execution requires a Chat Trigger"):
            resolve_start(workflow, InvocationKind.CHAT, "hello")

    def test_chat_mode_starter_does_not_serve_manual_runs(self):
        starter = Block(id="start", type="starter", inputs={"start_workflow": "chat"})
        workflow = workflow_with(starter)

        with pytest.raises(TriggerResolutionError, match="Manual execution requires"):
            resolve_start(workflow, InvocationKind.MANUAL)

    def test_chat_trigger_shapes_chat_input(self):
        workflow = workflow_with(Block(id="chat", type="chat_trigger"))

        start = resolve_start(workflow, InvocationKind.CHAT, "hello")

        assert start.initial_input == {"input": "hello", "conversation_id": None, "files": []}

    def test_missing_trigger_reports_requirement(self):
        workflow = workflow_with(Block(id="api", type="api_trigger"))

        with pytest.raises(TriggerResolutionError, match="Chat execution requires a Chat Trigger"):
            resolve_start(workflow, InvocationKind.CHAT)

    def test_webhook_never_falls_back(self):
        workflow = workflow_with(Block(id="start", type="starter"))

        with pytest.raises(TriggerResolutionError, match="requires a Webhook block"):
            resolve_start(workflow, InvocationKind.WEBHOOK)

    def test_two_schedules_are_ambiguous(self):
        workflow = workflow_with(
            Block(id="nightly", type="schedule"),
            Block(id="hourly", type="schedule"),
        )

        with pytest.raises(TriggerResolutionError, match="Multiple Schedule blocks"):
            resolve_start(workflow, InvocationKind.SCHEDULED)

    def test_explicit_start_block(self):
        workflow = workflow_with(
            Block(id="nightly", type="schedule"),
            Block(id="hourly", type="schedule"),
        )

        start = resolve_start(workflow, "scheduled", start_block_id="hourly")

        assert start.block_id == "hourly"
        assert start.kind == TriggerKind.SCHEDULE

    def test_explicit_disabled_start_block_rejected(self):
        workflow = serialize_workflow(
            [Block(id="start", type="starter", enabled=False), Block(id="work", type="echo")],
            [],
        )

        with pytest.raises(TriggerResolutionError, match="not found or disabled"):
            resolve_start(workflow, "manual", start_block_id="start")

    def test_unconnected_start_block_rejected(self):
        workflow = serialize_workflow([Block(id="start", type="starter")], [])

        with pytest.raises(TriggerResolutionError, match="must be connected") as exc_info:
            resolve_start(workflow, "manual")

        assert exc_info.value.block_id == "start"


class TestInitialInput:
    def test_declared_fields_double_as_test_input(self):
        block = Block(
            id="api",
            type="api_trigger",
            inputs={"input_format": [{"name": "count", "type": "number", "value": "3"}]},
        )

        assert build_initial_input(block, TriggerKind.API, None) == {"count": 3}

    def test_declared_fields_coerce_caller_input(self):
        block = Block(
            id="api",
            type="api_trigger",
            inputs={
                "input_format": [
                    {"name": "enabled", "type": "boolean"},
                    {"name": "tags", "type": "array"},
                ]
            },
        )

        result = build_initial_input(
            block, TriggerKind.API, {"enabled": "yes", "tags": '["a", "b"]', "extra": 1}
        )

        assert result["enabled"] is True
        assert result["tags"] == ["a", "b"]
        assert "extra" not in result
        assert result["input"]["extra"] == 1

    def test_scalar_input_wrapped(self):
        block = Block(id="s", type="starter")

        assert build_initial_input(block, TriggerKind.STARTER, 42) == {"input": 42}

    def test_caller_input_is_copied(self):
        block = Block(id="s", type="starter")
        payload = {"nested": {"value": 1}}

        result = build_initial_input(block, TriggerKind.STARTER, payload)
        payload["nested"]["value"] = 2

        assert result["nested"]["value"] == 1

    @pytest.mark.parametrize(
        ("value", "field_type", "expected"),
        [
            ("12", "number", 12),
            ("1.5", "number", 1.5),
            ("abc", "number", "abc"),
            (7, "string", "7"),
            ("false", "boolean", False),
            ('{"a": 1}', "object", {"a": 1}),
            (None, "number", None),
        ],
    )
    def test_coerce_value(self, value, field_type, expected):
        assert coerce_value(value, field_type) == expected
