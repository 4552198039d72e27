"""Schema definitions for run state, results and pause records."""

from blockflow.schemas.context import (
    BlockLog,
    BlockState,
    ExecutionContext,
    ParallelState,
    RoutingDecisions,
    VirtualBlockInfo,
    WaitBlockInfo,
)
from blockflow.schemas.pause import PausedExecution, PausedExecutionSummary, PauseIndex
from blockflow.schemas.result import ExecutionMetadata, ExecutionResult

__all__ = [
    "BlockLog",
    "BlockState",
    "ExecutionContext",
    "ExecutionMetadata",
    "ExecutionResult",
    "ParallelState",
    "PausedExecution",
    "PausedExecutionSummary",
    "PauseIndex",
    "RoutingDecisions",
    "VirtualBlockInfo",
    "WaitBlockInfo",
]
