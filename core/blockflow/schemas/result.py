"""Result of executing (or stepping) a workflow."""

from dataclasses import dataclass, field
from typing import Any

from blockflow.schemas.context import BlockLog, ExecutionContext, WaitBlockInfo


@dataclass
class ExecutionMetadata:
    """Timing plus the debug/pause state a caller needs to continue a run."""

    started_at: str = ""
    ended_at: str = ""
    duration_ms: int = 0

    # Debug stepping
    is_debug_session: bool = False
    pending_blocks: list[str] = field(default_factory=list)
    context: ExecutionContext | None = None

    # Pause/resume
    is_paused: bool = False
    wait_block_info: WaitBlockInfo | None = None
    pause_persisted: bool | None = None  # None when no store is configured

    cancelled: bool = False


@dataclass
class ExecutionResult:
    """Result of executing a workflow."""

    success: bool
    output: Any = field(default_factory=dict)
    error: str | None = None
    logs: list[BlockLog] = field(default_factory=list)
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)

    @property
    def path(self) -> list[str]:
        """Block IDs in execution order."""
        return [log.block_id for log in self.logs]

    @property
    def is_paused(self) -> bool:
        return self.metadata.is_paused

    @property
    def pending_blocks(self) -> list[str]:
        return self.metadata.pending_blocks

    @property
    def context(self) -> ExecutionContext | None:
        return self.metadata.context
