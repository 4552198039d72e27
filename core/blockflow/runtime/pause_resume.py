"""
Pause/Resume Manager - Persists paused runs and continues them later.

When a wait block halts a run, the executor hands its context to
``pause_execution``; the record is written to a PauseStore keyed by
execution ID. ``resume_execution`` loads the record in any process,
restores the context and continues from the serialized pending blocks.

Usage::

    manager = PauseResumeManager(FilePauseStore(get_storage_path()))
    executor = WorkflowExecutor(workflow, handlers=handlers, pause_manager=manager)
    result = await executor.execute(initial_input={"order": 42})
    ...
    result = await manager.resume_execution(result.context.execution_id, handlers=handlers)
"""

import logging
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import PausePersistenceError
from blockflow.graph.workflow import SerializedWorkflow
from blockflow.schemas.context import ExecutionContext
from blockflow.schemas.pause import PausedExecution, PausedExecutionSummary
from blockflow.schemas.result import ExecutionResult
from blockflow.storage.pause_store import PauseStore

logger = logging.getLogger(__name__)


def serialize_context(context: ExecutionContext) -> bytes:
    """Serialize a context to JSON bytes. Sets are written sorted."""
    return context.model_dump_json().encode("utf-8")


def restore_context(data: bytes | str) -> ExecutionContext:
    """Rebuild a context from ``serialize_context`` output."""
    return ExecutionContext.model_validate_json(data)


class PauseResumeManager:
    """Bridges the executor and a PauseStore."""

    def __init__(self, store: PauseStore, fail_on_persist_error: bool = False):
        """
        Args:
            store: Durable store for PausedExecution records
            fail_on_persist_error: Raise PausePersistenceError instead of
                logging when a record cannot be saved
        """
        self.store = store
        self.fail_on_persist_error = fail_on_persist_error

    async def pause_execution(
        self,
        workflow: SerializedWorkflow,
        context: ExecutionContext,
        workflow_input: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Persist a paused run.

        Returns:
            True if the record was stored, False if storing failed (best effort)

        Raises:
            PausePersistenceError: if storing failed and ``fail_on_persist_error`` is set
        """
        wait_info = context.wait_block_info
        record = PausedExecution.create(
            execution_id=context.execution_id,
            execution_context=serialize_context(context).decode("utf-8"),
            workflow_state=workflow,
            pending_blocks=context.pending_blocks,
            environment_variables=dict(context.environment_variables),
            workflow_input=workflow_input,
            paused_block_id=wait_info.block_id if wait_info else None,
            metadata=metadata,
        )
        try:
            await self.store.save(record)
        except Exception as e:
            if self.fail_on_persist_error:
                raise PausePersistenceError(
                    f"Failed to persist paused execution {context.execution_id}: {e}",
                    execution_id=context.execution_id,
                ) from e
            logger.exception(
                "Failed to persist paused execution %s (non-fatal)", context.execution_id
            )
            return False

        logger.info(f"💾 Paused execution {context.execution_id} saved")
        return True

    async def get_paused_execution(self, execution_id: str) -> PausedExecution | None:
        return await self.store.load(execution_id)

    async def list_paused(self, workflow_id: str | None = None) -> list[PausedExecutionSummary]:
        return await self.store.list_all(workflow_id)

    async def resume_execution(
        self,
        execution_id: str,
        handlers: Any = None,
        config: EngineConfig | None = None,
        **executor_kwargs: Any,
    ) -> ExecutionResult:
        """
        Continue a stored run in a fresh executor.

        The record is deleted once the run no longer pauses; pausing again
        replaces it.

        Args:
            execution_id: ID of the paused run
            handlers: Handler registry or mapping for the new executor
            config: Engine config for the new executor
            **executor_kwargs: event_bus / execution_logger for the new executor

        Raises:
            PausePersistenceError: if no record exists for ``execution_id``
        """
        from blockflow.graph.executor import WorkflowExecutor

        record = await self.store.load(execution_id)
        if record is None:
            raise PausePersistenceError(
                f"No paused execution found: {execution_id}", execution_id=execution_id
            )

        context = restore_context(record.execution_context)
        executor = WorkflowExecutor(
            record.workflow_state,
            handlers=handlers,
            config=config,
            pause_manager=self,
            **executor_kwargs,
        )
        result = await executor.resume(context)

        if not result.is_paused:
            await self.store.delete(execution_id)
        return result
