"""Graph structures: blocks, edges, serialized workflows and trigger resolution."""

from blockflow.graph.block import (
    CONTAINER_TYPES,
    DEFAULT_MAX_ITERATIONS,
    Block,
    BlockType,
    LoopSpec,
    ParallelSpec,
    virtual_block_id,
)
from blockflow.graph.edge import EdgeHandle, EdgeSpec
from blockflow.graph.serializer import WorkflowSerializer, load_workflow, serialize_workflow
from blockflow.graph.triggers import InvocationKind, TriggerKind, resolve_start
from blockflow.graph.workflow import SerializedWorkflow

__all__ = [
    # Blocks
    "Block",
    "BlockType",
    "CONTAINER_TYPES",
    "DEFAULT_MAX_ITERATIONS",
    "LoopSpec",
    "ParallelSpec",
    "virtual_block_id",
    # Edges
    "EdgeHandle",
    "EdgeSpec",
    # Workflow
    "SerializedWorkflow",
    "WorkflowSerializer",
    "serialize_workflow",
    "load_workflow",
    # Triggers
    "InvocationKind",
    "TriggerKind",
    "resolve_start",
]
