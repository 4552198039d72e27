"""
Tests for WorkflowSerializer validation and the serialized workflow indexes.
"""

import pytest

from blockflow.errors import WorkflowValidationError
from blockflow.graph.block import Block, LoopSpec
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.serializer import WorkflowSerializer, load_workflow, serialize_workflow

# === HELPERS ===


def loop_workflow_parts(iterations: int | None = 3):
    blocks = [
        Block(id="start", type="starter"),
        Block(id="loop", type="loop", name="Retry Loop", inputs={"iterations": iterations}),
        Block(id="b", type="echo", parent_id="loop"),
        Block(id="d", type="echo"),
    ]
    edges = [
        EdgeSpec(source="start", target="loop"),
        EdgeSpec(source="loop", source_handle="loop-start-source", target="b"),
        EdgeSpec(source="loop", source_handle="loop-end-source", target="d"),
    ]
    return blocks, edges


# === BASIC SERIALIZATION ===


class TestSerializeBasics:
    def test_linear_workflow(self):
        workflow = serialize_workflow(
            blocks=[
                {"id": "start", "type": "starter"},
                {"id": "a", "type": "fetch", "name": "Fetch Data"},
            ],
            edges=[{"source": "start", "target": "a"}],
            workflow_id="wf-1",
        )

        assert workflow.id == "wf-1"
        assert [b.id for b in workflow.blocks] == ["start", "a"]
        assert workflow.get_outgoing_edges("start")[0].target == "a"
        assert workflow.get_incoming_edges("a")[0].source == "start"
        assert workflow.find_block("fetchdata").id == "a"
        assert workflow.find_block("Fetch Data").id == "a"

    def test_serialization_is_deterministic(self):
        blocks, edges = loop_workflow_parts()
        first = serialize_workflow(blocks, edges)
        second = serialize_workflow(blocks, edges)

        assert first.model_dump_json() == second.model_dump_json()

    def test_input_blocks_are_not_aliased(self):
        """Serializing copies blocks so later edits cannot reach the frozen form."""
        blocks, edges = loop_workflow_parts()
        workflow = serialize_workflow(blocks, edges)

        blocks[3].inputs["changed"] = True

        assert "changed" not in workflow.get_block("d").inputs

    def test_duplicate_block_id_rejected(self):
        with pytest.raises(WorkflowValidationError, match="Duplicate block id"):
            serialize_workflow(
                [Block(id="a", type="echo"), Block(id="a", type="echo")],
                [],
            )

    def test_load_workflow_accepts_connections_key(self):
        workflow = load_workflow(
            {
                "id": "doc",
                "blocks": [{"id": "start", "type": "starter"}, {"id": "a", "type": "echo"}],
                "connections": [{"source": "start", "target": "a"}],
            }
        )

        assert workflow.id == "doc"
        assert len(workflow.connections) == 1


# === EDGE ENDPOINTS ===


class TestEdgeEndpoints:
    def test_unknown_endpoint_rejected(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            serialize_workflow(
                [Block(id="start", type="starter")],
                [EdgeSpec(source="start", target="ghost")],
            )

        assert exc_info.value.block_id == "ghost"

    def test_edge_to_disabled_block_dropped_when_lenient(self):
        workflow = serialize_workflow(
            [
                Block(id="start", type="starter"),
                Block(id="a", type="echo"),
                Block(id="off", type="echo", enabled=False),
            ],
            [EdgeSpec(source="start", target="a"), EdgeSpec(source="a", target="off")],
        )

        assert workflow.get_outgoing_edges("a") == []

    def test_edge_to_disabled_block_rejected_when_strict(self):
        with pytest.raises(WorkflowValidationError, match="disabled") as exc_info:
            serialize_workflow(
                [
                    Block(id="start", type="starter"),
                    Block(id="off", type="echo", enabled=False),
                ],
                [EdgeSpec(source="start", target="off")],
                strict=True,
            )

        assert exc_info.value.block_id == "off"

    def test_incoming_edges_of_trigger_mode_block_ignored(self):
        workflow = serialize_workflow(
            [
                Block(id="a", type="echo"),
                Block(id="hook", type="http", trigger_mode=True),
            ],
            [EdgeSpec(source="a", target="hook"), EdgeSpec(source="hook", target="a")],
        )

        assert workflow.get_incoming_edges("hook") == []


# === CYCLES ===


class TestCycles:
    def test_cycle_outside_loop_rejected(self):
        with pytest.raises(WorkflowValidationError, match="cycle"):
            serialize_workflow(
                [Block(id="a", type="echo"), Block(id="b", type="echo")],
                [EdgeSpec(source="a", target="b"), EdgeSpec(source="b", target="a")],
            )

    def test_back_edge_to_own_loop_allowed(self):
        blocks, edges = loop_workflow_parts()
        edges.append(EdgeSpec(source="b", target="loop"))

        workflow = serialize_workflow(blocks, edges)

        assert workflow.container_of("b") == "loop"

    def test_cycle_between_loop_children_rejected(self):
        blocks, edges = loop_workflow_parts()
        blocks.append(Block(id="c", type="echo", parent_id="loop"))
        edges += [EdgeSpec(source="b", target="c"), EdgeSpec(source="c", target="b")]

        with pytest.raises(WorkflowValidationError, match="contains a cycle"):
            serialize_workflow(blocks, edges)


# === TRIGGERS ===


class TestTriggerCategories:
    def test_two_starters_rejected(self):
        with pytest.raises(WorkflowValidationError, match="Multiple Start blocks found"):
            serialize_workflow(
                [Block(id="s1", type="starter"), Block(id="s2", type="starter")],
                [],
            )

    def test_api_and_starter_may_coexist(self):
        workflow = serialize_workflow(
            [Block(id="api", type="api_trigger"), Block(id="s", type="starter")],
            [],
        )

        assert len(workflow.blocks) == 2

    def test_disabled_duplicate_is_ignored(self):
        workflow = serialize_workflow(
            [
                Block(id="s1", type="starter"),
                Block(id="s2", type="starter", enabled=False),
            ],
            [],
        )

        assert workflow.get_block("s2").enabled is False


# === SUBFLOWS ===


class TestSubflows:
    def test_loop_spec_derived_from_block_inputs(self):
        blocks, edges = loop_workflow_parts(iterations=3)
        workflow = serialize_workflow(blocks, edges)

        loop = workflow.loops["loop"]
        assert loop.iterations == 3
        assert loop.loop_type == "for"
        assert loop.nodes == ["b"]
        assert workflow.containing_loop("b").id == "loop"

    def test_declared_loop_spec(self):
        blocks, edges = loop_workflow_parts(iterations=None)
        blocks[2] = Block(id="b", type="echo")

        workflow = serialize_workflow(
            blocks,
            edges,
            loops={"loop": {"nodes": ["b"], "loop_type": "forEach", "for_each_items": [1, 2]}},
        )

        assert workflow.loops["loop"].loop_type == "forEach"
        assert workflow.container_of("b") == "loop"

    def test_declared_spec_without_container_block_rejected(self):
        blocks, edges = loop_workflow_parts()

        with pytest.raises(WorkflowValidationError, match="no matching loop block"):
            serialize_workflow(blocks, edges, loops={"d": LoopSpec(id="d", nodes=[])})

    def test_block_in_two_subflows_rejected(self):
        blocks, edges = loop_workflow_parts()
        blocks.append(Block(id="par", type="parallel", inputs={"count": 2}))

        with pytest.raises(WorkflowValidationError, match="more than one subflow"):
            serialize_workflow(blocks, edges, parallels={"par": {"nodes": ["b"]}})

    def test_nested_subflow_rejected(self):
        blocks, edges = loop_workflow_parts()
        blocks.append(Block(id="inner", type="loop", parent_id="loop"))
        edges.append(EdgeSpec(source="b", target="inner"))

        with pytest.raises(WorkflowValidationError, match="nested"):
            serialize_workflow(blocks, edges)

    def test_edge_crossing_boundary_rejected(self):
        blocks, edges = loop_workflow_parts()
        edges.append(EdgeSpec(source="start", target="b"))

        with pytest.raises(WorkflowValidationError, match="crosses a subflow boundary") as exc:
            serialize_workflow(blocks, edges)

        assert exc.value.block_id == "b"

    def test_child_not_reachable_from_start_handle_rejected(self):
        blocks, edges = loop_workflow_parts()
        blocks.append(Block(id="orphan", type="echo", parent_id="loop"))

        with pytest.raises(WorkflowValidationError, match="not connected to the start"):
            serialize_workflow(blocks, edges)

    def test_parent_must_be_container(self):
        with pytest.raises(WorkflowValidationError, match="not a loop or parallel"):
            serialize_workflow(
                [Block(id="a", type="echo"), Block(id="b", type="echo", parent_id="a")],
                [],
            )

    def test_malformed_loop_settings_carry_block_identity(self):
        blocks, edges = loop_workflow_parts()
        blocks[1] = Block(
            id="loop", type="loop", name="Retry Loop", inputs={"iterations": "<start.n>"}
        )

        with pytest.raises(WorkflowValidationError, match="iterations") as exc_info:
            serialize_workflow(blocks, edges)

        assert exc_info.value.block_id == "loop"
        assert exc_info.value.block_type == "loop"
        assert exc_info.value.block_name == "Retry Loop"

    def test_malformed_declared_parallel_settings_rejected(self):
        blocks = [Block(id="par", type="parallel"), Block(id="w", type="echo")]

        with pytest.raises(WorkflowValidationError, match="count") as exc_info:
            serialize_workflow(blocks, [], parallels={"par": {"nodes": ["w"], "count": "many"}})

        assert exc_info.value.block_id == "par"

    def test_malformed_raw_block_rejected(self):
        with pytest.raises(WorkflowValidationError, match="Invalid block b") as exc_info:
            serialize_workflow([{"id": "b", "type": "echo", "inputs": "oops"}], [])

        assert exc_info.value.block_id == "b"

    def test_malformed_raw_edge_rejected(self):
        with pytest.raises(WorkflowValidationError, match="Invalid connection from a"):
            serialize_workflow([{"id": "a", "type": "echo"}], [{"source": "a"}])


# === STRICT MODE ===


class TestStrictMode:
    def test_zero_iteration_loop_rejected(self):
        blocks, edges = loop_workflow_parts(iterations=0)

        with pytest.raises(WorkflowValidationError, match="at least once"):
            WorkflowSerializer().serialize(blocks, edges, strict=True)

    def test_zero_iteration_loop_allowed_when_lenient(self):
        blocks, edges = loop_workflow_parts(iterations=0)

        workflow = WorkflowSerializer().serialize(blocks, edges)

        assert workflow.loops["loop"].iterations == 0

    def test_collection_parallel_without_distribution_rejected(self):
        with pytest.raises(WorkflowValidationError, match="distribution"):
            serialize_workflow(
                [Block(id="par", type="parallel", inputs={"parallel_type": "collection"})],
                [],
                strict=True,
            )

    def test_error_carries_block_identity(self):
        blocks, edges = loop_workflow_parts(iterations=0)

        with pytest.raises(WorkflowValidationError) as exc_info:
            serialize_workflow(blocks, edges, strict=True)

        details = exc_info.value.to_dict()
        assert details["block_id"] == "loop"
        assert details["block_type"] == "loop"
        assert details["block_name"] == "Retry Loop"
