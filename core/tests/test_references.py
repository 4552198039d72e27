"""
Tests for reference resolution in block inputs and safe condition evaluation.
"""

import pytest

from blockflow.errors import ExpressionError, ReferenceResolutionError
from blockflow.graph.block import Block
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.references import InputResolver, IterationScope, split_path
from blockflow.graph.safe_eval import evaluate_condition, safe_eval
from blockflow.graph.serializer import serialize_workflow
from blockflow.schemas.context import ExecutionContext


@pytest.fixture
def workflow():
    return serialize_workflow(
        blocks=[
            Block(id="start", type="starter"),
            Block(id="fetch", type="http", name="Fetch Data"),
            Block(id="par", type="parallel", inputs={"count": 2}),
            Block(id="worker", type="echo", parent_id="par"),
            Block(id="summary", type="echo", parent_id="par"),
        ],
        edges=[
            EdgeSpec(source="start", target="fetch"),
            EdgeSpec(source="fetch", target="par"),
            EdgeSpec(source="par", source_handle="parallel-start-source", target="worker"),
            EdgeSpec(source="worker", target="summary"),
        ],
    )


@pytest.fixture
def context():
    ctx = ExecutionContext(
        execution_id="exec_1",
        start_block_id="start",
        environment_variables={"API_KEY": "secret"},
        workflow_variables={"threshold": 5, "Region Name": "eu"},
    )
    ctx.set_state("start", {"city": "Oslo", "input": {"city": "Oslo"}})
    ctx.set_state("fetch", {"status": 200, "data": {"items": [1, 2, 3]}})
    ctx.set_state("worker_parallel_par_iteration_1", {"value": "second"})
    return ctx


class TestSplitPath:
    def test_dotted_path_with_indices(self):
        assert split_path("fetch.data.items[2].name") == ["fetch", "data", "items", 2, "name"]


class TestInputResolver:
    def test_whole_reference_keeps_type(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("<fetch.data.items>") == [1, 2, 3]
        assert resolver.resolve_value("<fetchdata.status>") == 200

    def test_embedded_reference_renders_text(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("Status: <fetch.status>") == "Status: 200"
        assert resolver.resolve_value("Items <fetch.data.items>") == "Items [1, 2, 3]"

    def test_start_reference(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("<start.city>") == "Oslo"
        assert resolver.resolve_value("<start.input.city>") == "Oslo"

    def test_nested_inputs_resolved(self, workflow, context):
        resolver = InputResolver(workflow, context)
        block = Block(
            id="x",
            type="echo",
            inputs={"payload": {"codes": ["<fetch.status>", "literal"]}, "count": 3},
        )

        inputs = resolver.resolve_inputs(block)

        assert inputs == {"payload": {"codes": [200, "literal"]}, "count": 3}
        assert block.inputs["payload"]["codes"][0] == "<fetch.status>"

    def test_environment_variables(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("Bearer {{API_KEY}}") == "Bearer secret"
        with pytest.raises(ReferenceResolutionError, match="MISSING"):
            resolver.resolve_value("{{MISSING}}")

    def test_workflow_variables_match_normalized_names(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("<variable.threshold>") == 5
        assert resolver.resolve_value("<variable.regionname>") == "eu"
        with pytest.raises(ReferenceResolutionError, match="not found"):
            resolver.resolve_value("<variable.nope>")

    def test_comparisons_are_not_references(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("a < b and c > d") == "a < b and c > d"

    def test_unknown_block_raises(self, workflow, context):
        resolver = InputResolver(workflow, context)

        with pytest.raises(ReferenceResolutionError) as exc_info:
            resolver.resolve_value("<ghost.value>")

        assert exc_info.value.reference == "ghost.value"

    def test_missing_path_resolves_to_none(self, workflow, context):
        resolver = InputResolver(workflow, context)

        assert resolver.resolve_value("<fetch.data.items[9]>") is None

    def test_loop_reference_outside_loop_raises(self, workflow, context):
        resolver = InputResolver(workflow, context)

        with pytest.raises(ReferenceResolutionError, match="only valid inside a loop"):
            resolver.resolve_value("<loop.index>")

    def test_loop_scope(self, workflow, context):
        resolver = InputResolver(workflow, context)
        scope = IterationScope(loop_id="l1", loop_index=1, loop_items=["a", "b"])

        assert resolver.resolve_value("<loop.index>", scope) == 1
        assert resolver.resolve_value("<loop.currentItem>", scope) == "b"
        assert resolver.resolve_value("<loop.items>", scope) == ["a", "b"]

    def test_parallel_scope_reads_sibling_of_same_iteration(self, workflow, context):
        resolver = InputResolver(workflow, context)
        scope = IterationScope(parallel_id="par", parallel_index=1, parallel_items=["x", "y"])

        assert resolver.resolve_value("<worker.value>", scope) == "second"
        assert resolver.resolve_value("<parallel.currentItem>", scope) == "y"
        assert resolver.resolve_value("<parallel.index>", scope) == 1

    def test_resolved_values_are_copies(self, workflow, context):
        resolver = InputResolver(workflow, context)

        items = resolver.resolve_value("<fetch.data.items>")
        items.append(4)

        assert context.get_output("fetch")["data"]["items"] == [1, 2, 3]


class TestSafeEval:
    def test_comparisons_and_boolean_logic(self):
        assert safe_eval("x > 3 and y == 'ok'", {"x": 5, "y": "ok"}) is True
        assert safe_eval("len(items) >= 2", {"items": [1, 2]}) is True

    def test_javascript_operators_accepted(self):
        assert safe_eval("x === 1 && y !== 2", {"x": 1, "y": 3}) is True
        assert safe_eval("x == 1 || false", {"x": 2}) is False

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "x.__class__",
            "open('f')",
            "[i for i in range(3)]",
            "lambda: 1",
        ],
    )
    def test_unsafe_expressions_rejected(self, expression):
        with pytest.raises(ExpressionError):
            safe_eval(expression, {"x": 1})

    def test_unknown_name_rejected(self):
        with pytest.raises(ExpressionError, match="Unknown variable"):
            safe_eval("missing > 1")

    def test_empty_expression_rejected(self):
        with pytest.raises(ExpressionError, match="empty"):
            safe_eval("   ")

    def test_evaluate_condition_binds_references(self):
        values = {"fetch.status": 200, "fetch.body": "__import__('os')"}

        assert evaluate_condition("<fetch.status> == 200", values.__getitem__) is True
        # String outputs are bound as values, never evaluated as code
        assert evaluate_condition("<fetch.body> == 'x'", values.__getitem__) is False
