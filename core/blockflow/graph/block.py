"""
Block Protocol - The building unit of a workflow.

A block is one operation in the graph. The engine only knows a handful of
block kinds itself (triggers, conditions, routers, loops, parallels, waits);
every other kind is an opaque operation looked up in the handler registry.

Subflow containers (loop, parallel) own child blocks through ``parent_id``
and carry their iteration metadata in a LoopSpec / ParallelSpec.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class BlockType(StrEnum):
    """Block kinds the engine treats specially."""

    STARTER = "starter"  # Legacy single-entry start block
    API_TRIGGER = "api_trigger"
    INPUT_TRIGGER = "input_trigger"
    MANUAL_TRIGGER = "manual_trigger"
    CHAT_TRIGGER = "chat_trigger"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"

    CONDITION = "condition"
    ROUTER = "router"
    LOOP = "loop"
    PARALLEL = "parallel"
    WAIT = "wait"


CONTAINER_TYPES = frozenset({BlockType.LOOP, BlockType.PARALLEL})

DEFAULT_MAX_ITERATIONS = 5


class Block(BaseModel):
    """
    A single node in the workflow graph.

    Example:
        Block(
            id="fetch",
            type="http",
            name="Fetch Weather",
            inputs={"url": "https://api.example.com/<start.city>"},
        )
    """

    id: str
    type: str = Field(description="Block kind, e.g. 'condition', 'loop' or a handler name")
    name: str = ""
    inputs: dict[str, Any] = Field(
        default_factory=dict,
        description="Named input values; strings may contain <block.path> references",
    )
    parent_id: str | None = Field(
        default=None, description="Containing loop/parallel block, if any"
    )
    enabled: bool = True
    trigger_mode: bool = Field(
        default=False,
        description="Block acts as an external trigger; its incoming edges are ignored",
    )
    category: str = "blocks"  # "blocks" | "triggers"

    model_config = {"extra": "allow"}

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def normalized_name(self) -> str:
        """Name used in reference tokens: lowercase, no whitespace."""
        return normalize_block_name(self.name or self.id)

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES


def normalize_block_name(name: str) -> str:
    return "".join(name.split()).lower()


class LoopSpec(BaseModel):
    """Iteration metadata for a loop container."""

    id: str
    nodes: list[str] = Field(default_factory=list, description="Child block IDs")
    iterations: int | None = None  # None: engine default (DEFAULT_MAX_ITERATIONS)
    loop_type: str = "for"  # "for" | "forEach"
    for_each_items: Any = Field(
        default=None,
        description="Collection for forEach loops: list, dict, JSON string or reference",
    )

    model_config = {"extra": "allow"}


class ParallelSpec(BaseModel):
    """Fan-out metadata for a parallel container."""

    id: str
    nodes: list[str] = Field(default_factory=list, description="Child block IDs")
    count: int | None = None
    distribution: Any = Field(
        default=None,
        description="Items distributed across iterations: list, dict, JSON string or reference",
    )
    parallel_type: str = "count"  # "count" | "collection"

    model_config = {"extra": "allow"}


def virtual_block_id(block_id: str, parallel_id: str, iteration: int) -> str:
    """ID of one parallel iteration's copy of a child block."""
    return f"{block_id}_parallel_{parallel_id}_iteration_{iteration}"
