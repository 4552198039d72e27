"""
Pause Schema - Durable records of paused workflow runs.

A run that reaches a wait block is persisted as a PausedExecution holding
everything needed to continue later in a different process: the serialized
execution context, the workflow it was running, and the pending blocks to
seed the resume with.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from blockflow.graph.workflow import SerializedWorkflow


class PausedExecution(BaseModel):
    """
    One paused run, keyed by execution ID.

    ``execution_context`` is the JSON produced by ``serialize_context`` so
    the record can be restored byte-for-byte.
    """

    # Identity
    execution_id: str
    workflow_id: str = ""

    # Timestamps
    paused_at: str  # ISO 8601 format

    # State snapshots
    execution_context: str  # Serialized ExecutionContext (JSON)
    workflow_state: SerializedWorkflow
    environment_variables: dict[str, str] = Field(default_factory=dict)
    workflow_input: Any = None

    # Resume seed
    pending_blocks: list[str] = Field(default_factory=list)
    paused_block_id: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        execution_id: str,
        execution_context: str,
        workflow_state: SerializedWorkflow,
        pending_blocks: list[str],
        environment_variables: dict[str, str] | None = None,
        workflow_input: Any = None,
        paused_block_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "PausedExecution":
        """Create a new record stamped with the current time."""
        return cls(
            execution_id=execution_id,
            workflow_id=workflow_state.id,
            paused_at=datetime.now().isoformat(),
            execution_context=execution_context,
            workflow_state=workflow_state,
            environment_variables=environment_variables or {},
            workflow_input=workflow_input,
            pending_blocks=list(pending_blocks),
            paused_block_id=paused_block_id,
            metadata=metadata or {},
        )


class PausedExecutionSummary(BaseModel):
    """
    Lightweight paused-run metadata for index listings.

    Lets callers list paused runs without loading full contexts.
    """

    execution_id: str
    workflow_id: str = ""
    paused_at: str
    paused_block_id: str | None = None
    pending_blocks: list[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: PausedExecution) -> "PausedExecutionSummary":
        return cls(
            execution_id=record.execution_id,
            workflow_id=record.workflow_id,
            paused_at=record.paused_at,
            paused_block_id=record.paused_block_id,
            pending_blocks=record.pending_blocks,
        )


class PauseIndex(BaseModel):
    """Manifest of all paused runs in a store."""

    executions: list[PausedExecutionSummary] = Field(default_factory=list)

    def upsert(self, record: PausedExecution) -> None:
        """Add a record, replacing an earlier one for the same execution."""
        self.remove(record.execution_id)
        self.executions.append(PausedExecutionSummary.from_record(record))

    def remove(self, execution_id: str) -> bool:
        before = len(self.executions)
        self.executions = [e for e in self.executions if e.execution_id != execution_id]
        return len(self.executions) != before

    def filter_by_workflow(self, workflow_id: str) -> list[PausedExecutionSummary]:
        return [e for e in self.executions if e.workflow_id == workflow_id]
