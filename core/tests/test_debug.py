"""
Tests for layer-at-a-time debug stepping and the DebugSession driver.
"""

import pytest

from blockflow.errors import DebugSessionError
from blockflow.graph.block import Block
from blockflow.graph.debug import DebugSession, DebugState
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.serializer import serialize_workflow


def echo(inputs):
    return dict(inputs)


def explode(inputs):
    raise ValueError("bad input")


def three_block_workflow(second_type: str = "echo"):
    return serialize_workflow(
        blocks=[
            Block(id="start", type="starter"),
            Block(id="a", type=second_type, inputs={"n": "<start.n>"}),
            Block(id="b", type="echo", inputs={"n": "<a.n>"}),
        ],
        edges=[EdgeSpec(source="start", target="a"), EdgeSpec(source="a", target="b")],
    )


class TestContinueExecution:
    @pytest.mark.asyncio
    async def test_debug_start_runs_nothing(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})

        result = await executor.execute(initial_input={"n": 1}, debug=True)

        assert result.success is True
        assert result.metadata.is_debug_session is True
        assert result.pending_blocks == ["start"]
        assert result.logs == []
        assert result.context.executed_blocks == set()

    @pytest.mark.asyncio
    async def test_three_step_session(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        result = await executor.execute(initial_input={"n": 7}, debug=True)
        context = result.context

        first = await executor.continue_execution(result.pending_blocks, context)
        assert first.pending_blocks == ["a"]
        assert first.metadata.is_debug_session is True
        assert first.path == ["start"]

        second = await executor.continue_execution(first.pending_blocks, first.context)
        assert second.pending_blocks == ["b"]
        assert second.path == ["start", "a"]

        third = await executor.continue_execution(second.pending_blocks, second.context)
        assert third.success is True
        assert third.metadata.is_debug_session is False
        assert third.pending_blocks == []
        assert third.path == ["start", "a", "b"]
        assert third.output == {"n": 7}

    @pytest.mark.asyncio
    async def test_step_runs_only_the_given_layer(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        result = await executor.execute(debug=True)
        step = await executor.continue_execution(["start"], result.context)

        assert step.context.executed_blocks == {"start"}
        assert "a" in step.context.active_execution_path

    @pytest.mark.asyncio
    async def test_missing_context_raises(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})

        with pytest.raises(DebugSessionError, match="execution context"):
            await executor.continue_execution(["start"], None)

    @pytest.mark.asyncio
    async def test_empty_pending_raises(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        result = await executor.execute(debug=True)

        with pytest.raises(DebugSessionError, match="No pending blocks"):
            await executor.continue_execution([], result.context)

    @pytest.mark.asyncio
    async def test_step_failure_returns_failed_result(self):
        executor = WorkflowExecutor(
            three_block_workflow("explode"), handlers={"echo": echo, "explode": explode}
        )
        result = await executor.execute(debug=True)
        step = await executor.continue_execution(result.pending_blocks, result.context)

        failed = await executor.continue_execution(step.pending_blocks, step.context)

        assert failed.success is False
        assert failed.error == "bad input"


class TestDebugSession:
    @pytest.mark.asyncio
    async def test_advance_walks_states(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        session = DebugSession(executor, initial_input={"n": 2})

        assert session.state == DebugState.IDLE
        assert await session.advance() == DebugState.STEPPING
        assert session.pending_blocks == ["start"]
        assert await session.advance() == DebugState.STEPPING
        assert await session.advance() == DebugState.STEPPING
        assert await session.advance() == DebugState.COMPLETED
        assert session.result.output == {"n": 2}

        # Terminal state is stable
        assert await session.advance() == DebugState.COMPLETED
        assert session.steps == 4

    @pytest.mark.asyncio
    async def test_run_to_completion(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        session = DebugSession(executor, initial_input={"n": 3})

        result = await session.run_to_completion()

        assert session.state == DebugState.COMPLETED
        assert result.success is True
        assert result.path == ["start", "a", "b"]

    @pytest.mark.asyncio
    async def test_step_cap_forces_completion(self, caplog):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})
        session = DebugSession(executor, max_steps=2)

        await session.run_to_completion()

        assert session.state == DebugState.COMPLETED
        assert session.steps == 2
        assert session.pending_blocks == ["a"]
        assert "Debug session stopped after 2 steps" in caplog.text

    @pytest.mark.asyncio
    async def test_max_steps_defaults_to_config(self):
        executor = WorkflowExecutor(three_block_workflow(), handlers={"echo": echo})

        assert DebugSession(executor).max_steps == executor.config.debug_max_steps

    @pytest.mark.asyncio
    async def test_failure_requires_reset(self):
        executor = WorkflowExecutor(
            three_block_workflow("explode"), handlers={"echo": echo, "explode": explode}
        )
        session = DebugSession(executor)

        await session.run_to_completion()

        assert session.state == DebugState.FAILED
        assert session.result.error == "bad input"
        with pytest.raises(DebugSessionError, match="reset"):
            await session.advance()

        session.reset()
        assert session.state == DebugState.IDLE
        assert session.context is None
