"""
Tests for wait blocks, context serialization, pause stores and resuming.
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from blockflow.errors import PausePersistenceError
from blockflow.graph.block import Block
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.executor import WorkflowExecutor
from blockflow.graph.handlers import FunctionHandler, WaitSignal
from blockflow.graph.serializer import serialize_workflow
from blockflow.runtime.pause_resume import PauseResumeManager, restore_context, serialize_context
from blockflow.schemas.pause import PausedExecution
from blockflow.storage.pause_store import FilePauseStore, InMemoryPauseStore

# === HELPERS ===


def echo(inputs):
    return dict(inputs)


HANDLERS = {"echo": echo}


def approval_workflow():
    return serialize_workflow(
        blocks=[
            Block(id="start", type="starter"),
            Block(id="a", type="echo", inputs={"value": "<start.amount>"}),
            Block(id="wait", type="wait", inputs={"description": "manager approval"}),
            Block(id="c", type="echo", inputs={"approved": "<a.value>"}),
        ],
        edges=[
            EdgeSpec(source="start", target="a"),
            EdgeSpec(source="a", target="wait"),
            EdgeSpec(source="wait", target="c"),
        ],
        workflow_id="approvals",
    )


async def run_until_pause(pause_manager=None):
    executor = WorkflowExecutor(approval_workflow(), handlers=HANDLERS, pause_manager=pause_manager)
    return await executor.execute(initial_input={"amount": 250})


# === PAUSING ===


class TestWaitBlocks:
    @pytest.mark.asyncio
    async def test_wait_block_pauses_after_layer(self):
        result = await run_until_pause()

        assert result.success is True
        assert result.is_paused is True
        assert result.pending_blocks == ["c"]
        assert result.path == ["start", "a", "wait"]
        assert result.metadata.pause_persisted is None

        info = result.metadata.wait_block_info
        assert info.block_id == "wait"
        assert info.description == "manager approval"
        assert result.context.is_paused is True
        assert result.context.pending_blocks == ["c"]

    @pytest.mark.asyncio
    async def test_non_wait_capable_handler_cannot_pause(self):
        def sneaky(inputs):
            return WaitSignal(description="nope")

        workflow = serialize_workflow(
            blocks=[Block(id="start", type="starter"), Block(id="x", type="sneaky")],
            edges=[EdgeSpec(source="start", target="x")],
        )
        executor = WorkflowExecutor(workflow, handlers={"sneaky": sneaky})

        result = await executor.execute()

        assert result.success is False
        assert "not allowed to pause" in result.error

    @pytest.mark.asyncio
    async def test_wait_capable_function_handler(self):
        def approval(inputs):
            return WaitSignal(output={"ticket": 7}, description="ticket")

        workflow = serialize_workflow(
            blocks=[
                Block(id="start", type="starter"),
                Block(id="x", type="approval"),
                Block(id="y", type="echo"),
            ],
            edges=[EdgeSpec(source="start", target="x"), EdgeSpec(source="x", target="y")],
        )
        handlers = {"approval": FunctionHandler(approval, wait_capable=True), "echo": echo}

        result = await WorkflowExecutor(workflow, handlers=handlers).execute()

        assert result.is_paused is True
        assert result.context.get_output("x") == {"ticket": 7}
        assert result.pending_blocks == ["y"]


# === SERIALIZATION ===


class TestContextSerialization:
    @pytest.mark.asyncio
    async def test_serialize_restore_is_deterministic(self):
        result = await run_until_pause()

        data = serialize_context(result.context)
        restored = restore_context(data)

        assert serialize_context(restored) == data
        assert restored.executed_blocks == {"start", "a", "wait"}
        assert restored.pending_blocks == ["c"]
        assert restored.wait_block_info.block_id == "wait"

    @pytest.mark.asyncio
    async def test_resume_in_fresh_executor(self):
        result = await run_until_pause()
        restored = restore_context(serialize_context(result.context))

        executor = WorkflowExecutor(approval_workflow(), handlers=HANDLERS)
        resumed = await executor.resume(restored)

        assert resumed.success is True
        assert resumed.is_paused is False
        assert resumed.path == ["start", "a", "wait", "c"]
        assert resumed.output == {"approved": 250}
        assert resumed.context.is_paused is False
        assert resumed.context.wait_block_info is None


# === MANAGER ===


class TestPauseResumeManager:
    @pytest.mark.asyncio
    async def test_pause_persisted_and_resumed(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)
        manager = PauseResumeManager(store)

        result = await run_until_pause(manager)
        execution_id = result.context.execution_id

        assert result.metadata.pause_persisted is True
        record = await manager.get_paused_execution(execution_id)
        assert record.workflow_id == "approvals"
        assert record.pending_blocks == ["c"]
        assert record.paused_block_id == "wait"
        assert record.workflow_input["amount"] == 250
        assert [s.execution_id for s in await manager.list_paused("approvals")] == [execution_id]

        resumed = await manager.resume_execution(execution_id, handlers=HANDLERS)

        assert resumed.success is True
        assert resumed.output == {"approved": 250}
        assert await store.load(execution_id) is None
        assert await manager.list_paused() == []

    @pytest.mark.asyncio
    async def test_store_failure_is_non_fatal_by_default(self, caplog):
        store = InMemoryPauseStore()
        store.save = AsyncMock(side_effect=OSError("disk full"))

        result = await run_until_pause(PauseResumeManager(store))

        assert result.success is True
        assert result.is_paused is True
        assert result.metadata.pause_persisted is False
        assert "(non-fatal)" in caplog.text

    @pytest.mark.asyncio
    async def test_store_failure_fails_run_when_strict(self):
        store = InMemoryPauseStore()
        store.save = AsyncMock(side_effect=OSError("disk full"))

        result = await run_until_pause(PauseResumeManager(store, fail_on_persist_error=True))

        assert result.success is False
        assert "Failed to persist paused execution" in result.error
        assert result.metadata.pause_persisted is False

    @pytest.mark.asyncio
    async def test_resume_unknown_execution_raises(self):
        manager = PauseResumeManager(InMemoryPauseStore())

        with pytest.raises(PausePersistenceError, match="No paused execution found") as exc_info:
            await manager.resume_execution("exec_missing")

        assert exc_info.value.execution_id == "exec_missing"


# === STORES ===


def make_record(execution_id: str = "exec_1", pending: list[str] | None = None):
    return PausedExecution.create(
        execution_id=execution_id,
        execution_context="{}",
        workflow_state=approval_workflow(),
        pending_blocks=pending or ["c"],
        paused_block_id="wait",
    )


class TestFilePauseStore:
    @pytest.mark.asyncio
    async def test_save_load_roundtrip(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)

        await store.save(make_record())
        loaded = await store.load("exec_1")

        assert loaded.execution_id == "exec_1"
        assert loaded.workflow_state.get_block("wait").type == "wait"
        assert (tmp_path / "paused" / "exec_1.json").exists()
        assert (tmp_path / "paused" / "index.json").exists()

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)

        await store.save(make_record(pending=["c"]))
        await store.save(make_record(pending=["d"]))

        summaries = await store.list_all()
        assert len(summaries) == 1
        assert summaries[0].pending_blocks == ["d"]

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)
        await store.save(make_record())

        assert await store.delete("exec_1") is True
        assert await store.delete("exec_1") is False
        assert await store.load("exec_1") is None
        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_corrupt_record_loads_as_none(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)
        (tmp_path / "paused").mkdir()
        (tmp_path / "paused" / "broken.json").write_text("{not json")

        assert await store.load("broken") is None

    @pytest.mark.asyncio
    async def test_list_filters_by_workflow(self, tmp_path: Path):
        store = FilePauseStore(tmp_path)
        await store.save(make_record("exec_1"))
        await store.save(make_record("exec_2"))

        assert len(await store.list_all("approvals")) == 2
        assert await store.list_all("other") == []


class TestInMemoryPauseStore:
    @pytest.mark.asyncio
    async def test_records_are_not_aliased(self):
        store = InMemoryPauseStore()
        record = make_record()
        await store.save(record)

        record.pending_blocks.append("zzz")
        loaded = await store.load("exec_1")

        assert loaded.pending_blocks == ["c"]
        assert len(await store.list_all()) == 1
