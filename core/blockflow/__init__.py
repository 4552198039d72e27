"""
blockflow - an execution engine for visual block workflows.

Serialize a graph of blocks once, then run it layer by layer with
conditional routing, loops, parallel fan-out, streaming, debug stepping
and durable pause/resume.
"""

from blockflow.config import EngineConfig
from blockflow.errors import (
    BlockExecutionError,
    BlockflowError,
    DebugSessionError,
    ExpressionError,
    PausePersistenceError,
    ReferenceResolutionError,
    TriggerResolutionError,
    WorkflowValidationError,
)
from blockflow.graph import (
    Block,
    BlockType,
    EdgeSpec,
    InvocationKind,
    SerializedWorkflow,
    load_workflow,
    serialize_workflow,
)
from blockflow.graph.debug import DebugSession, DebugState
from blockflow.graph.executor import StreamingExecution, WorkflowExecutor
from blockflow.graph.handlers import BlockContext, HandlerRegistry, StreamingOutput, WaitSignal
from blockflow.graph.stream_relay import StreamChunk, StreamOptions
from blockflow.schemas import ExecutionContext, ExecutionResult

__version__ = "0.1.0"

__all__ = [
    # Engine
    "WorkflowExecutor",
    "StreamingExecution",
    "DebugSession",
    "DebugState",
    "EngineConfig",
    # Graph
    "Block",
    "BlockType",
    "EdgeSpec",
    "InvocationKind",
    "SerializedWorkflow",
    "serialize_workflow",
    "load_workflow",
    # Handlers
    "BlockContext",
    "HandlerRegistry",
    "StreamingOutput",
    "WaitSignal",
    "StreamChunk",
    "StreamOptions",
    # State
    "ExecutionContext",
    "ExecutionResult",
    # Errors
    "BlockflowError",
    "WorkflowValidationError",
    "TriggerResolutionError",
    "ReferenceResolutionError",
    "ExpressionError",
    "BlockExecutionError",
    "DebugSessionError",
    "PausePersistenceError",
]
