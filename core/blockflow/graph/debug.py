"""
Debug Session - Drives a workflow one layer at a time.

The executor's debug protocol is stateless: ``execute(debug=True)`` returns
the first pending layer, and every ``continue_execution`` call runs exactly
the layer it is handed. DebugSession wraps that protocol in an explicit
state machine so callers do not have to thread results back themselves.

    IDLE ──advance──▶ STEPPING ──advance──▶ ... ──▶ COMPLETED
                         │  ▲
                         ▼  │ advance
                       PAUSED
    any ──error──▶ FAILED (advance raises until reset())
"""

import logging
from enum import StrEnum
from typing import Any

from blockflow.errors import DebugSessionError
from blockflow.schemas.context import ExecutionContext
from blockflow.schemas.result import ExecutionResult

logger = logging.getLogger(__name__)


class DebugState(StrEnum):
    IDLE = "idle"
    STEPPING = "stepping"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class DebugSession:
    """
    Step-by-step execution of one workflow run.

    Example:
        session = DebugSession(executor, initial_input={"city": "Oslo"})
        while session.state not in (DebugState.COMPLETED, DebugState.FAILED):
            await session.advance()
            print(session.pending_blocks)
    """

    def __init__(self, executor: Any, max_steps: int | None = None, **execute_kwargs: Any):
        """
        Args:
            executor: WorkflowExecutor to drive
            max_steps: Step cap for run_to_completion (defaults to the
                executor's ``debug_max_steps``)
            **execute_kwargs: Forwarded to ``executor.execute`` on the first step
        """
        self.executor = executor
        self.max_steps = max_steps if max_steps is not None else executor.config.debug_max_steps
        self._execute_kwargs = execute_kwargs
        self.reset()

    def reset(self) -> None:
        """Forget the current run; the next advance() starts a new one."""
        self.state = DebugState.IDLE
        self.result: ExecutionResult | None = None
        self.context: ExecutionContext | None = None
        self.pending_blocks: list[str] = []
        self.steps = 0

    async def advance(self) -> DebugState:
        """
        Perform one transition.

        IDLE starts the session; STEPPING and PAUSED run the pending layer;
        COMPLETED is terminal.

        Raises:
            DebugSessionError: in FAILED state, or when the executor rejects the step
        """
        if self.state == DebugState.COMPLETED:
            return self.state
        if self.state == DebugState.FAILED:
            raise DebugSessionError("Debug session failed; call reset() before advancing")

        try:
            if self.state == DebugState.IDLE:
                result = await self.executor.execute(debug=True, **self._execute_kwargs)
            else:
                if self.state == DebugState.PAUSED and self.context is not None:
                    self.context.is_paused = False
                    self.context.wait_block_info = None
                result = await self.executor.continue_execution(self.pending_blocks, self.context)
        except DebugSessionError:
            self.state = DebugState.FAILED
            raise

        self.steps += 1
        self._apply(result)
        logger.debug(f"Debug step {self.steps}: {self.state} pending={self.pending_blocks}")
        return self.state

    async def run_to_completion(self) -> ExecutionResult | None:
        """Advance until the session ends or ``max_steps`` is reached."""
        while self.state not in (DebugState.COMPLETED, DebugState.FAILED):
            if self.steps >= self.max_steps:
                logger.warning(
                    f"⚠ Debug session stopped after {self.steps} steps "
                    f"with {len(self.pending_blocks)} pending block(s)"
                )
                self.state = DebugState.COMPLETED
                break
            await self.advance()
        return self.result

    def _apply(self, result: ExecutionResult) -> None:
        self.result = result
        self.context = result.context or self.context
        self.pending_blocks = list(result.pending_blocks)

        if not result.success:
            self.state = DebugState.FAILED
        elif result.is_paused:
            self.state = DebugState.PAUSED
        elif result.metadata.is_debug_session and self.pending_blocks:
            self.state = DebugState.STEPPING
        else:
            self.state = DebugState.COMPLETED
