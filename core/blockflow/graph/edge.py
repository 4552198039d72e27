"""
Edge Protocol - How blocks connect in a workflow.

An edge leaves a named output handle of its source block and enters the
target block. Handles decide when the edge is satisfied:

- source: the source block succeeded
- error: the source block failed (error-handling branch)
- condition-<id>: the condition block chose the branch <id>
- loop-start-source / parallel-start-source: the container started
- loop-end-source / parallel-end-source: every iteration finished

Router blocks use plain source handles; the router's decision names the
target block directly.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

CONDITION_HANDLE_PREFIX = "condition-"


class EdgeHandle(StrEnum):
    """Named output handles with engine-level meaning."""

    SOURCE = "source"
    ERROR = "error"
    LOOP_START = "loop-start-source"
    LOOP_END = "loop-end-source"
    PARALLEL_START = "parallel-start-source"
    PARALLEL_END = "parallel-end-source"


START_HANDLES = frozenset({EdgeHandle.LOOP_START, EdgeHandle.PARALLEL_START})
END_HANDLES = frozenset({EdgeHandle.LOOP_END, EdgeHandle.PARALLEL_END})


class EdgeSpec(BaseModel):
    """
    Specification for an edge between blocks.

    Examples:
        # Plain success edge
        EdgeSpec(source="fetch", target="summarize")

        # Branch taken when the condition block picks "cond-true"
        EdgeSpec(source="check", source_handle="condition-cond-true", target="notify")

        # Error-handling branch
        EdgeSpec(source="fetch", source_handle="error", target="fallback")
    """

    id: str = ""
    source: str = Field(description="Source block ID")
    target: str = Field(description="Target block ID")
    source_handle: str = Field(
        default=EdgeHandle.SOURCE.value, description="Output handle on source block"
    )
    target_handle: str = "target"

    model_config = {"extra": "allow"}

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = f"{self.source}:{self.source_handle}->{self.target}"

    @property
    def is_error(self) -> bool:
        return self.source_handle == EdgeHandle.ERROR

    @property
    def is_condition(self) -> bool:
        return self.source_handle.startswith(CONDITION_HANDLE_PREFIX)

    @property
    def condition_id(self) -> str | None:
        if not self.is_condition:
            return None
        return self.source_handle[len(CONDITION_HANDLE_PREFIX) :]

    @property
    def is_container_start(self) -> bool:
        return self.source_handle in START_HANDLES

    @property
    def is_container_end(self) -> bool:
        return self.source_handle in END_HANDLES
