"""ExecutionLogger: persists block logs while a workflow runs.

Injected into WorkflowExecutor as an optional parameter. Each log_block()
call writes immediately to disk (JSONL append). Only the run summary, with
its derived trace spans, is written at end_run().

Block logs survive process death without needing end_run() to complete.

Usage::

    store = ExecutionLogStore(Path(work_dir) / "execution_logs")
    execution_logger = ExecutionLogger(store=store)
    executor = WorkflowExecutor(workflow, handlers=handlers, execution_logger=execution_logger)

Safety: ``end_run()`` catches all exceptions internally and logs them via
the Python logger. Logging failure must never kill a successful run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from blockflow.observability import get_trace_context
from blockflow.runtime.execution_log_schemas import RunSummaryLog
from blockflow.runtime.execution_log_store import ExecutionLogStore
from blockflow.runtime.trace_spans import build_trace_spans
from blockflow.schemas.context import BlockLog

if TYPE_CHECKING:
    from blockflow.schemas.result import ExecutionResult

logger = logging.getLogger(__name__)


class ExecutionLogger:
    """Captures block logs during workflow execution.

    Thread-safe: uses a lock around file appends for concurrent blocks.
    """

    def __init__(self, store: ExecutionLogStore) -> None:
        self._store = store
        self._run_id = ""
        self._workflow_id = ""
        self._execution_id = ""
        self._started_at = ""
        self._lock = threading.Lock()

    @property
    def run_id(self) -> str:
        return self._run_id

    def start_run(self, workflow_id: str = "", execution_id: str = "") -> str:
        """Start a new run. Called by WorkflowExecutor at run start. Returns run_id."""
        ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        self._run_id = f"{ts}_{uuid.uuid4().hex[:8]}"
        self._workflow_id = workflow_id
        self._execution_id = execution_id
        self._started_at = datetime.now(UTC).isoformat()
        self._store.ensure_run_dir(self._run_id)
        return self._run_id

    def log_block(self, log: BlockLog) -> None:
        """Append one block log. Called after every block finishes."""
        if not self._run_id:
            self.start_run()
        try:
            with self._lock:
                self._store.append_block_log(self._run_id, log)
        except OSError:
            logger.exception(
                "Failed to append block log for run_id=%s block=%s (non-fatal)",
                self._run_id,
                log.block_id,
            )

    async def end_run(self, result: ExecutionResult) -> None:
        """Read block logs back, build trace spans, write summary.json.

        Called by WorkflowExecutor when a run completes, fails or is
        cancelled. Catches all exceptions internally; logging failure must
        not propagate to the caller.
        """
        try:
            logs = self._store.read_block_logs_sync(self._run_id)

            if result.metadata.cancelled:
                status = "cancelled"
            else:
                status = "success" if result.success else "failure"

            ctx = get_trace_context()
            summary = RunSummaryLog(
                run_id=self._run_id,
                workflow_id=self._workflow_id,
                execution_id=self._execution_id or ctx.get("execution_id", ""),
                status=status,
                total_blocks_executed=len(logs),
                block_path=[log.block_id for log in logs],
                failed_blocks=[log.block_id for log in logs if not log.success],
                started_at=self._started_at,
                ended_at=datetime.now(UTC).isoformat(),
                duration_ms=result.metadata.duration_ms,
                error=result.error,
                trace_spans=build_trace_spans(logs),
                trace_id=ctx.get("trace_id", ""),
            )

            await self._store.save_summary(self._run_id, summary)
            logger.info(
                "Execution logs saved: run_id=%s status=%s blocks=%d",
                self._run_id,
                status,
                len(logs),
            )
        except Exception:
            logger.exception(
                "Failed to save execution logs for run_id=%s (non-fatal)",
                self._run_id,
            )
