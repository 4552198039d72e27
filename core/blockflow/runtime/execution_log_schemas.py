"""Pydantic models for persisted execution logs.

Level 1 - SUMMARY:  Per run status, timing, block path and trace spans
Level 2 - BLOCKS:   Per block execution (schemas.context.BlockLog), appended as JSONL

Trace spans are derived from the block logs when the run ends: one span per
block, with loop and parallel children grouped under their container by
iteration.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class TraceSpan(BaseModel):
    """A timed unit of work in a run: a block, a container, or an iteration."""

    id: str
    name: str
    type: str = "block"  # "block" | "loop" | "parallel" | "iteration"
    block_id: str | None = None
    start_time: str = ""  # ISO timestamp
    end_time: str = ""
    duration_ms: int = 0
    status: str = "success"  # "success" | "error"
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    loop_id: str | None = None
    parallel_id: str | None = None
    iteration: int | None = None
    children: list[TraceSpan] = Field(default_factory=list)


class RunSummaryLog(BaseModel):
    """Run-level summary, written once when a run completes or fails.

    OTel-aligned fields (trace_id, execution_id) tie the summary to the same
    trace as the block logs.
    """

    run_id: str
    workflow_id: str = ""
    execution_id: str = ""
    status: str = ""  # "success" | "failure" | "cancelled" | "in_progress"
    total_blocks_executed: int = 0
    block_path: list[str] = Field(default_factory=list)
    failed_blocks: list[str] = Field(default_factory=list)
    started_at: str = ""  # ISO timestamp
    ended_at: str = ""
    duration_ms: int = 0
    error: str | None = None
    trace_spans: list[TraceSpan] = Field(default_factory=list)
    trace_id: str = ""
