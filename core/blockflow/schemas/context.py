"""
Execution Context Schema - The full mutable state of one workflow run.

The context is created at run start, mutated block by block, and either
discarded, persisted (pause), or retained by a debug driver between steps.
Everything in it is JSON-serializable. Open stream handles are not part of
the context; the executor and its stream relay own them for the run.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_serializer


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class BlockState(BaseModel):
    """Latest state of one block (or virtual parallel instance)."""

    executed: bool = False
    output: Any = Field(default_factory=dict)
    error: str | None = None
    execution_time_ms: int = 0


class BlockLog(BaseModel):
    """One block execution, appended in completion order."""

    block_id: str
    block_name: str = ""
    block_type: str = ""
    input: dict[str, Any] = Field(default_factory=dict)  # Resolved input snapshot
    output: Any = None
    success: bool = True
    error: str | None = None
    started_at: str = ""  # ISO 8601
    ended_at: str = ""
    duration_ms: int = 0

    # Subflow placement (None outside loops/parallels)
    loop_id: str | None = None
    parallel_id: str | None = None
    iteration: int | None = None

    @property
    def level(self) -> str:
        return "info" if self.success else "error"


class RoutingDecisions(BaseModel):
    """Branch choices made so far, keyed by the deciding block."""

    router: dict[str, str] = Field(default_factory=dict)  # router id -> chosen target id
    condition: dict[str, str] = Field(default_factory=dict)  # condition id -> condition id


class ParallelState(BaseModel):
    """Progress of one parallel container's fan-out."""

    parallel_id: str
    count: int
    items: list[Any] | None = None
    started: int = 0  # Iterations started so far (window bound by concurrency)
    completed: list[int] = Field(default_factory=list)
    results: dict[str, dict[str, Any]] = Field(default_factory=dict)  # iteration_N -> outputs


class VirtualBlockInfo(BaseModel):
    """Maps a virtual parallel block ID back to its origin."""

    original_block_id: str
    parallel_id: str
    iteration: int


class WaitBlockInfo(BaseModel):
    """Why and where a run paused."""

    block_id: str
    block_name: str = ""
    paused_at: str = Field(default_factory=utc_now_iso)
    description: str = ""
    trigger_config: dict[str, Any] = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    """
    Mutable state of a single run.

    Example:
        context = ExecutionContext(
            workflow_id="daily-report",
            execution_id="exec_123",
            environment_variables={"API_KEY": "..."},
        )
    """

    workflow_id: str = ""
    execution_id: str
    start_block_id: str | None = None
    started_at: str = Field(default_factory=utc_now_iso)

    # Immutable snapshots taken at run start
    initial_input: dict[str, Any] = Field(default_factory=dict)
    environment_variables: dict[str, str] = Field(default_factory=dict)
    workflow_variables: dict[str, Any] = Field(default_factory=dict)

    # Block bookkeeping
    block_states: dict[str, BlockState] = Field(default_factory=dict)
    block_logs: list[BlockLog] = Field(default_factory=list)
    executed_blocks: set[str] = Field(default_factory=set)
    active_execution_path: set[str] = Field(default_factory=set)
    decisions: RoutingDecisions = Field(default_factory=RoutingDecisions)

    # Subflow bookkeeping
    loop_iterations: dict[str, int] = Field(default_factory=dict)  # 0-based current iteration
    loop_items: dict[str, list[Any]] = Field(default_factory=dict)
    loop_results: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    completed_loops: set[str] = Field(default_factory=set)  # Loops and parallels
    parallel_executions: dict[str, ParallelState] = Field(default_factory=dict)
    parallel_block_mapping: dict[str, VirtualBlockInfo] = Field(default_factory=dict)

    # Pause bookkeeping
    pending_blocks: list[str] = Field(default_factory=list)
    is_paused: bool = False
    wait_block_info: WaitBlockInfo | None = None

    @field_serializer("executed_blocks", "active_execution_path", "completed_loops")
    def serialize_sets(self, value: set[str]) -> list[str]:
        # Sorted so identical states serialize to identical bytes
        return sorted(value)

    def get_output(self, block_id: str) -> Any:
        state = self.block_states.get(block_id)
        return state.output if state else None

    def has_error(self, block_id: str) -> bool:
        state = self.block_states.get(block_id)
        return bool(state and state.error)

    def set_state(
        self,
        block_id: str,
        output: Any,
        error: str | None = None,
        execution_time_ms: int = 0,
    ) -> None:
        self.block_states[block_id] = BlockState(
            executed=True, output=output, error=error, execution_time_ms=execution_time_ms
        )
