"""
Workflow Executor - Runs serialized workflows.

The executor:
1. Resolves the start block and snapshots the run's inputs
2. Executes ready blocks one layer at a time (each layer concurrently)
3. Records every block's state and log in the ExecutionContext
4. Advances loop and parallel iterations between layers
5. Stops on completion, cancellation, an unhandled block error, or a wait block
6. Returns an ExecutionResult (with the context when a caller may continue)

Debug stepping runs exactly one layer per ``continue_execution`` call.
Paused runs continue through ``resume`` with a restored context.
"""

import asyncio
import copy
import inspect
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import (
    BlockExecutionError,
    DebugSessionError,
    PausePersistenceError,
    TriggerResolutionError,
)
from blockflow.graph.block import CONTAINER_TYPES, Block, BlockType, normalize_block_name
from blockflow.graph.handlers import (
    BlockContext,
    HandlerRegistry,
    StreamingOutput,
    WaitSignal,
    call_handler,
    is_stream,
)
from blockflow.graph.path import PathTracker
from blockflow.graph.references import InputResolver, IterationScope
from blockflow.graph.stream_relay import StreamChunk, StreamOptions, StreamOutcome, StreamRelay
from blockflow.graph.subflows import LoopManager, ParallelManager
from blockflow.graph.triggers import InvocationKind, resolve_start
from blockflow.graph.workflow import SerializedWorkflow
from blockflow.observability import set_trace_context
from blockflow.schemas.context import (
    BlockLog,
    ExecutionContext,
    VirtualBlockInfo,
    WaitBlockInfo,
    utc_now_iso,
)
from blockflow.schemas.result import ExecutionMetadata, ExecutionResult

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Workflow execution was cancelled"


@dataclass
class _BlockRun:
    """Outcome of one block within a layer."""

    key: str
    block: Block | None = None
    error: str | None = None
    recovered: bool = True  # False when a failure has no error edge to follow
    wait: WaitSignal | None = None
    streaming: bool = False


@dataclass
class _InFlightStream:
    """A streaming block whose output is still being drained."""

    key: str
    block: Block
    inputs: dict[str, Any]
    extra_output: dict[str, Any]
    started_at: str
    t0: float


@dataclass
class _RunState:
    """Per-call scheduling state wrapped around the (persistent) context."""

    context: ExecutionContext
    tracker: PathTracker
    loops: LoopManager
    parallels: ParallelManager
    stream_options: StreamOptions
    relay: StreamRelay | None = None
    debug: bool = False
    in_flight: dict[str, _InFlightStream] = field(default_factory=dict)
    t0: float = field(default_factory=time.perf_counter)


_DONE = object()


class StreamingExecution:
    """
    A run whose streamed chunks can be consumed while it executes.

    Example:
        run = executor.execute_streaming(initial_input={"topic": "tides"})
        async for chunk in run:
            print(chunk.data, end="")
        result = await run.result()
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[ExecutionResult] | None = None

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        while True:
            item = await self._queue.get()
            if item is _DONE:
                return
            yield item

    async def result(self) -> ExecutionResult:
        """Wait for the run to finish and return its result."""
        assert self._task is not None
        return await self._task


class WorkflowExecutor:
    """
    Executes a SerializedWorkflow.

    Example:
        executor = WorkflowExecutor(
            workflow,
            handlers={"fetch": fetch_weather, "summarize": Summarizer()},
        )
        result = await executor.execute(initial_input={"city": "Lisbon"})
    """

    def __init__(
        self,
        workflow: SerializedWorkflow,
        handlers: HandlerRegistry | dict[str, Any] | None = None,
        config: EngineConfig | None = None,
        event_bus: Any = None,
        execution_logger: Any = None,
        pause_manager: Any = None,
    ):
        """
        Initialize the executor.

        Args:
            workflow: Serialized workflow to run
            handlers: Registry or mapping of block type / block ID to handler
            config: Execution limits and failure policy
            event_bus: Optional EventBus receiving lifecycle events
            execution_logger: Optional ExecutionLogger persisting block logs
            pause_manager: Optional PauseResumeManager persisting paused runs
        """
        self.workflow = workflow
        if isinstance(handlers, HandlerRegistry):
            self.handlers = handlers
        else:
            self.handlers = HandlerRegistry(handlers)
        self.config = config or EngineConfig()
        self.event_bus = event_bus
        self.execution_logger = execution_logger
        self.pause_manager = pause_manager
        self._cancelled = False

    # === CONTROL ===

    def cancel(self) -> None:
        """Request cooperative cancellation; in-flight blocks finish first."""
        self._cancelled = True
        logger.info("⏹ Cancellation requested")

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    # === ENTRY POINTS ===

    async def execute(
        self,
        start_block_id: str | None = None,
        initial_input: Any = None,
        env_vars: dict[str, str] | None = None,
        workflow_vars: dict[str, Any] | None = None,
        stream_options: StreamOptions | None = None,
        invocation_kind: InvocationKind | str = InvocationKind.MANUAL,
        debug: bool = False,
        execution_id: str | None = None,
    ) -> ExecutionResult:
        """
        Execute the workflow from its resolved start block.

        Args:
            start_block_id: Explicit start block; otherwise resolved by trigger priority
            initial_input: Caller input handed to the start block
            env_vars: Environment variables for {{VAR}} substitution
            workflow_vars: Workflow variables for <variable.name> references
            stream_options: Streaming preferences (see execute_streaming)
            invocation_kind: How the run was requested (chat, manual, api, ...)
            debug: Resolve the start block and return it as the first pending layer
            execution_id: Reuse an ID instead of generating one

        Returns:
            ExecutionResult
        """
        execution_id = execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        set_trace_context(
            trace_id=uuid.uuid4().hex,
            workflow_id=self.workflow.id,
            execution_id=execution_id,
        )

        try:
            resolved = resolve_start(
                self.workflow, invocation_kind, initial_input, start_block_id=start_block_id
            )
        except TriggerResolutionError as e:
            logger.error(f"❌ Cannot start execution: {e}")
            now = utc_now_iso()
            return ExecutionResult(
                success=False,
                error=str(e),
                metadata=ExecutionMetadata(started_at=now, ended_at=now),
            )

        # Snapshots: nothing outside the context is read once the run starts
        context = ExecutionContext(
            workflow_id=self.workflow.id,
            execution_id=execution_id,
            start_block_id=resolved.block_id,
            initial_input=copy.deepcopy(resolved.initial_input),
            environment_variables=copy.deepcopy(dict(env_vars or {})),
            workflow_variables=copy.deepcopy(dict(workflow_vars or {})),
        )
        context.active_execution_path.add(resolved.block_id)
        state = self._new_state(context, stream_options, debug=debug)

        if self.execution_logger is not None:
            self.execution_logger.start_run(self.workflow.id, execution_id)

        logger.info(f"🚀 Starting execution {execution_id}: {self.workflow.id or '(unnamed)'}")
        logger.info(f"   Start block: {resolved.block_id} ({resolved.kind})")
        if self.event_bus is not None:
            await self.event_bus.emit_execution_started(
                self.workflow.id, execution_id, resolved.block_id, context.initial_input
            )

        if debug:
            if self._cancelled:
                return await self._finish_run(state, self._cancelled_result(state))
            logger.info("🐞 Debug session started")
            return self._build_result(
                state, True, is_debug_session=True, pending_blocks=[resolved.block_id]
            )

        return await self._run(state, [resolved.block_id])

    def execute_streaming(self, **kwargs: Any) -> StreamingExecution:
        """
        Start ``execute`` in a task and expose streamed chunks as they arrive.

        Accepts the same keyword arguments as ``execute``. Must be called
        from a running event loop.
        """
        streaming = StreamingExecution()
        options: StreamOptions = kwargs.pop("stream_options", None) or StreamOptions()
        user_callback = options.on_chunk

        async def forward(chunk: StreamChunk) -> None:
            streaming._queue.put_nowait(chunk)
            if user_callback is not None:
                result = user_callback(chunk)
                if inspect.isawaitable(result):
                    await result

        options = replace(options, enabled=True, on_chunk=forward)

        async def run() -> ExecutionResult:
            try:
                return await self.execute(stream_options=options, **kwargs)
            finally:
                streaming._queue.put_nowait(_DONE)

        streaming._task = asyncio.create_task(run())
        return streaming

    async def continue_execution(
        self,
        pending_blocks: list[str],
        context: ExecutionContext | None,
    ) -> ExecutionResult:
        """
        Run exactly one layer of a debug session.

        Args:
            pending_blocks: The layer to run (from the previous result)
            context: The session's execution context

        Returns:
            ExecutionResult with the next pending layer; ``is_debug_session``
            is False once nothing is left to run

        Raises:
            DebugSessionError: if the context is missing or the layer is empty
        """
        if context is None:
            raise DebugSessionError("Cannot continue a debug session without its execution context")
        if not pending_blocks:
            raise DebugSessionError("No pending blocks to execute")

        set_trace_context(workflow_id=context.workflow_id, execution_id=context.execution_id)
        state = self._new_state(context, None, debug=True)
        if self._cancelled:
            return await self._finish_run(state, self._cancelled_result(state))

        layer = [key for key in pending_blocks if key not in context.executed_blocks]
        logger.info(f"🐞 Debug step: {', '.join(layer) or '(nothing new)'}")
        try:
            runs = await self._execute_layer(state, layer)
            await self._process_subflows(state)
        except BlockExecutionError as e:
            return await self._finish_run(state, self._build_result(state, False, str(e)))

        waits = [run for run in runs if run.wait is not None]
        if waits:
            return await self._pause(state, waits)

        next_layer = state.tracker.get_next_layer()
        if not next_layer:
            return await self._finish_run(state, self._build_result(state, True))
        return self._build_result(state, True, is_debug_session=True, pending_blocks=next_layer)

    async def resume(
        self,
        context: ExecutionContext,
        stream_options: StreamOptions | None = None,
    ) -> ExecutionResult:
        """
        Continue a paused run from its restored context.

        The first layer is exactly the context's serialized ``pending_blocks``.
        """
        pending = list(context.pending_blocks)
        context.pending_blocks = []
        context.is_paused = False
        context.wait_block_info = None

        set_trace_context(
            trace_id=uuid.uuid4().hex,
            workflow_id=context.workflow_id,
            execution_id=context.execution_id,
        )
        state = self._new_state(context, stream_options, debug=False)
        if self.execution_logger is not None:
            self.execution_logger.start_run(context.workflow_id, context.execution_id)

        logger.info(f"🔄 Resuming execution {context.execution_id} with {len(pending)} block(s)")
        if self.event_bus is not None:
            await self.event_bus.emit_execution_resumed(
                context.workflow_id, context.execution_id, pending
            )
        return await self._run(state, pending)

    # === MAIN LOOP ===

    def _new_state(
        self,
        context: ExecutionContext,
        stream_options: StreamOptions | None,
        debug: bool,
    ) -> _RunState:
        options = stream_options or StreamOptions()
        tracker = PathTracker(self.workflow, context)
        relay = None
        if options.enabled and not debug:
            relay = StreamRelay(on_chunk=self._chunk_forwarder(context, options))
        return _RunState(
            context=context,
            tracker=tracker,
            loops=LoopManager(
                self.workflow, context, tracker, self.config.default_loop_iterations
            ),
            parallels=ParallelManager(
                self.workflow, context, tracker, self.config.max_parallel_concurrency
            ),
            stream_options=options,
            relay=relay,
            debug=debug,
        )

    async def _run(self, state: _RunState, layer: list[str]) -> ExecutionResult:
        layers = 0
        try:
            while True:
                if self._cancelled:
                    return await self._finish_run(state, self._cancelled_result(state))

                if not layer:
                    if state.relay is not None and state.relay.has_active:
                        # Nothing else can run until a stream finishes
                        for outcome in await state.relay.wait_next():
                            await self._finish_stream(state, outcome)
                        await self._process_subflows(state)
                        layer = state.tracker.get_next_layer(exclude=set(state.in_flight))
                        continue
                    break

                layers += 1
                if layers > self.config.max_layers:
                    message = f"Maximum layer count ({self.config.max_layers}) exceeded"
                    logger.error(f"❌ {message}")
                    return await self._finish_run(state, self._build_result(state, False, message))

                runs = await self._execute_layer(state, layer)
                if state.relay is not None:
                    for outcome in state.relay.pop_finished():
                        await self._finish_stream(state, outcome)
                await self._process_subflows(state)

                waits = [run for run in runs if run.wait is not None]
                if waits and not self._cancelled:
                    return await self._pause(state, waits)

                layer = state.tracker.get_next_layer(exclude=set(state.in_flight))
        except BlockExecutionError as e:
            return await self._finish_run(state, self._build_result(state, False, str(e)))
        finally:
            if state.relay is not None:
                await state.relay.aclose()

        return await self._finish_run(state, self._build_result(state, True))

    async def _execute_layer(self, state: _RunState, layer: list[str]) -> list[_BlockRun]:
        """Run one layer concurrently; raise for the first unhandled block failure."""
        results = await asyncio.gather(
            *(self._execute_block(state, key) for key in layer), return_exceptions=True
        )

        runs: list[_BlockRun] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            runs.append(result)

        for run in runs:
            if run.error is not None and not run.recovered:
                block = run.block
                raise BlockExecutionError(
                    run.error,
                    block_id=run.key,
                    block_name=block.name if block else "",
                    block_type=block.type if block else "",
                )
        return runs

    async def _process_subflows(self, state: _RunState) -> None:
        started = state.loops.process_iterations(lambda: self._cancelled)
        started += state.parallels.process_iterations(lambda: self._cancelled)
        if self.event_bus is not None:
            for container_id, iteration in started:
                await self.event_bus.emit_loop_iteration(
                    state.context.workflow_id, container_id, iteration, state.context.execution_id
                )

    # === BLOCK EXECUTION ===

    async def _execute_block(self, state: _RunState, key: str) -> _BlockRun:
        context = state.context
        if key in context.executed_blocks or self._cancelled:
            return _BlockRun(key=key)

        block_id = state.tracker.block_id_of(key)
        block = self.workflow.get_block(block_id)
        if block is None:
            return _BlockRun(key=key, error=f"Block {block_id} not found", recovered=False)

        info = context.parallel_block_mapping.get(key)
        scope = self._scope_for(context, block, info)
        set_trace_context(block_id=key)
        started_at = utc_now_iso()
        t0 = time.perf_counter()

        logger.info(f"▶ {block.display_name} ({block.type})")
        if self.event_bus is not None:
            await self.event_bus.emit_block_started(
                context.workflow_id, key, context.execution_id, block.type
            )

        resolver = InputResolver(self.workflow, context)
        if block.is_container:
            return await self._start_container(state, key, block, resolver, started_at, t0)

        handler = self.handlers.get(block)
        inputs: dict[str, Any] = {}
        try:
            if handler is None:
                raise BlockExecutionError(
                    f"No handler registered for block type '{block.type}'",
                    block_id=block.id,
                    block_name=block.name,
                    block_type=block.type,
                )
            if getattr(handler, "resolves_own_inputs", False):
                inputs = copy.deepcopy(block.inputs)
            else:
                inputs = resolver.resolve_inputs(block, scope)

            block_context = BlockContext(
                block=block,
                workflow=self.workflow,
                workflow_id=context.workflow_id,
                execution_id=context.execution_id,
                scope=scope,
                initial_input=copy.deepcopy(context.initial_input),
                environment_variables=dict(context.environment_variables),
                workflow_variables=copy.deepcopy(context.workflow_variables),
                resolve=lambda token: resolver.resolve_reference(token, scope),
            )
            result = await call_handler(handler, inputs, block_context)
        except Exception as e:
            error = str(e) or type(e).__name__
            return await self._fail_block(state, key, block, inputs, error, started_at, t0)

        if isinstance(result, WaitSignal):
            if not getattr(handler, "wait_capable", False):
                error = f"Block {block.display_name} is not allowed to pause execution"
                return await self._fail_block(state, key, block, inputs, error, started_at, t0)
            run = await self._complete_block(
                state, key, block, inputs, result.output, started_at, t0
            )
            run.wait = result
            return run

        if is_stream(result):
            if isinstance(result, StreamingOutput):
                stream, extra_output = result.stream, dict(result.output)
            else:
                stream, extra_output = result, {}
            pending = _InFlightStream(key, block, inputs, extra_output, started_at, t0)

            if state.relay is not None:
                state.in_flight[key] = pending
                state.relay.start(key, stream, forward=self._should_forward(state, block))
                return _BlockRun(key=key, block=block, streaming=True)

            outcome = await StreamRelay().drain(key, stream)
            return await self._settle_stream(state, pending, outcome)

        return await self._complete_block(state, key, block, inputs, result, started_at, t0)

    async def _start_container(
        self,
        state: _RunState,
        key: str,
        block: Block,
        resolver: InputResolver,
        started_at: str,
        t0: float,
    ) -> _BlockRun:
        manager = state.loops if block.type == BlockType.LOOP else state.parallels
        try:
            output = manager.start(block, resolver)
        except Exception as e:
            return await self._fail_block(state, key, block, {}, str(e), started_at, t0)
        # Exit edges fire when the last iteration completes, not now
        return await self._complete_block(
            state, key, block, {}, output, started_at, t0, activate=False
        )

    async def _complete_block(
        self,
        state: _RunState,
        key: str,
        block: Block,
        inputs: dict[str, Any],
        output: Any,
        started_at: str,
        t0: float,
        activate: bool = True,
    ) -> _BlockRun:
        context = state.context
        duration_ms = int((time.perf_counter() - t0) * 1000)
        context.set_state(key, output, execution_time_ms=duration_ms)
        context.executed_blocks.add(key)
        self._record_decision(context, key, block, output)
        self._append_log(state, key, block, inputs, output, None, started_at, duration_ms)

        if activate:
            state.tracker.activate_successors(key)

        logger.info(f"   ✓ {block.display_name} completed in {duration_ms}ms")
        if self.event_bus is not None:
            await self.event_bus.emit_block_completed(
                context.workflow_id, key, context.execution_id, duration_ms
            )
        return _BlockRun(key=key, block=block)

    async def _fail_block(
        self,
        state: _RunState,
        key: str,
        block: Block,
        inputs: dict[str, Any],
        error: str,
        started_at: str,
        t0: float,
        output: dict[str, Any] | None = None,
    ) -> _BlockRun:
        context = state.context
        duration_ms = int((time.perf_counter() - t0) * 1000)
        output = {**(output or {}), "error": error}
        context.set_state(key, output, error=error, execution_time_ms=duration_ms)
        context.executed_blocks.add(key)
        self._append_log(state, key, block, inputs, output, error, started_at, duration_ms)

        recovered = bool(state.tracker.activate_successors(key, failed=True))
        if not recovered:
            recovered = any(e.is_error for e in self.workflow.get_outgoing_edges(block.id))

        if recovered:
            logger.warning(f"   ✗ {block.display_name} failed: {error} (following error path)")
        else:
            logger.error(f"   ✗ {block.display_name} failed: {error}")
        if self.event_bus is not None:
            await self.event_bus.emit_block_failed(
                context.workflow_id, key, error, context.execution_id
            )
        return _BlockRun(key=key, block=block, error=error, recovered=recovered)

    async def _settle_stream(
        self, state: _RunState, pending: _InFlightStream, outcome: StreamOutcome
    ) -> _BlockRun:
        output = {**pending.extra_output, "content": outcome.content}
        if outcome.error is not None:
            return await self._fail_block(
                state,
                pending.key,
                pending.block,
                pending.inputs,
                outcome.error,
                pending.started_at,
                pending.t0,
                output=output,
            )
        return await self._complete_block(
            state,
            pending.key,
            pending.block,
            pending.inputs,
            output,
            pending.started_at,
            pending.t0,
        )

    async def _finish_stream(self, state: _RunState, outcome: StreamOutcome) -> None:
        pending = state.in_flight.pop(outcome.block_id)
        run = await self._settle_stream(state, pending, outcome)
        if run.error is not None and not run.recovered:
            raise BlockExecutionError(
                run.error,
                block_id=run.key,
                block_name=pending.block.name,
                block_type=pending.block.type,
            )

    # === PAUSE ===

    async def _pause(self, state: _RunState, waits: list[_BlockRun]) -> ExecutionResult:
        context = state.context
        if state.relay is not None:
            for outcome in await state.relay.drain_all():
                await self._finish_stream(state, outcome)
            await self._process_subflows(state)

        wait_run = waits[0]
        signal = wait_run.wait
        pending = state.tracker.get_next_layer()
        context.pending_blocks = pending
        context.is_paused = True
        context.wait_block_info = WaitBlockInfo(
            block_id=wait_run.key,
            block_name=wait_run.block.display_name if wait_run.block else "",
            description=signal.description if signal else "",
            trigger_config=signal.trigger_config if signal else {},
        )
        logger.info(f"⏸ Paused at {wait_run.key} with {len(pending)} pending block(s)")

        pause_persisted = None
        if self.pause_manager is not None:
            try:
                pause_persisted = await self.pause_manager.pause_execution(
                    self.workflow,
                    context,
                    workflow_input=context.initial_input,
                    metadata={"paused_block_id": wait_run.key},
                )
            except PausePersistenceError as e:
                result = self._build_result(state, False, str(e), pause_persisted=False)
                return await self._finish_run(state, result)

        if self.event_bus is not None:
            await self.event_bus.emit_execution_paused(
                context.workflow_id, context.execution_id, wait_run.key, pending
            )
        return self._build_result(
            state,
            True,
            is_paused=True,
            wait_block_info=context.wait_block_info,
            pending_blocks=pending,
            pause_persisted=pause_persisted,
            is_debug_session=state.debug,
        )

    # === RESULTS ===

    def _cancelled_result(self, state: _RunState) -> ExecutionResult:
        logger.info("⏹ Execution cancelled")
        return self._build_result(state, False, CANCELLED_MESSAGE, cancelled=True)

    def _build_result(
        self,
        state: _RunState,
        success: bool,
        error: str | None = None,
        **metadata: Any,
    ) -> ExecutionResult:
        context = state.context
        return ExecutionResult(
            success=success,
            output=self._final_output(context),
            error=error,
            logs=list(context.block_logs),
            metadata=ExecutionMetadata(
                started_at=context.started_at,
                ended_at=utc_now_iso(),
                duration_ms=int((time.perf_counter() - state.t0) * 1000),
                context=context,
                **metadata,
            ),
        )

    async def _finish_run(self, state: _RunState, result: ExecutionResult) -> ExecutionResult:
        """Terminal bookkeeping shared by success, failure and cancellation."""
        context = state.context
        if result.success:
            logger.info(
                f"✓ Execution {context.execution_id} completed: "
                f"{len(context.block_logs)} block(s) in {result.metadata.duration_ms}ms"
            )
        elif not result.metadata.cancelled:
            logger.error(f"❌ Execution {context.execution_id} failed: {result.error}")

        if self.execution_logger is not None:
            await self.execution_logger.end_run(result)

        if self.event_bus is not None:
            if result.metadata.cancelled:
                await self.event_bus.emit_execution_cancelled(
                    context.workflow_id, context.execution_id
                )
            elif result.success:
                await self.event_bus.emit_execution_completed(
                    context.workflow_id, context.execution_id, result.output
                )
            else:
                await self.event_bus.emit_execution_failed(
                    context.workflow_id, context.execution_id, result.error or ""
                )
        return result

    @staticmethod
    def _final_output(context: ExecutionContext) -> Any:
        for log in reversed(context.block_logs):
            if log.block_type not in CONTAINER_TYPES and log.success:
                return log.output
        return {}

    # === HELPERS ===

    def _scope_for(
        self,
        context: ExecutionContext,
        block: Block,
        info: VirtualBlockInfo | None,
    ) -> IterationScope:
        loop = self.workflow.containing_loop(block.id)
        if loop is not None:
            return IterationScope(
                loop_id=loop.id,
                loop_index=context.loop_iterations.get(loop.id, 0),
                loop_items=context.loop_items.get(loop.id),
            )
        if info is not None:
            parallel_state = context.parallel_executions.get(info.parallel_id)
            return IterationScope(
                parallel_id=info.parallel_id,
                parallel_index=info.iteration,
                parallel_items=parallel_state.items if parallel_state else None,
            )
        return IterationScope()

    def _record_decision(
        self, context: ExecutionContext, key: str, block: Block, output: Any
    ) -> None:
        if not isinstance(output, dict):
            return
        if block.type == BlockType.CONDITION:
            selected = output.get("selected_condition_id")
            if selected is not None:
                context.decisions.condition[key] = str(selected)
        elif block.type == BlockType.ROUTER:
            selected = (output.get("selected_path") or {}).get("block_id")
            target = self.workflow.find_block(str(selected)) if selected else None
            if target is not None:
                context.decisions.router[key] = target.id

    def _append_log(
        self,
        state: _RunState,
        key: str,
        block: Block,
        inputs: dict[str, Any],
        output: Any,
        error: str | None,
        started_at: str,
        duration_ms: int,
    ) -> None:
        context = state.context
        loop = self.workflow.containing_loop(block.id)
        info = context.parallel_block_mapping.get(key)
        iteration = None
        if loop is not None:
            iteration = context.loop_iterations.get(loop.id, 0)
        elif info is not None:
            iteration = info.iteration

        log = BlockLog(
            block_id=block.id,
            block_name=block.display_name,
            block_type=block.type,
            input=copy.deepcopy(inputs),
            output=copy.deepcopy(output),
            success=error is None,
            error=error,
            started_at=started_at,
            ended_at=utc_now_iso(),
            duration_ms=duration_ms,
            loop_id=loop.id if loop else None,
            parallel_id=info.parallel_id if info else None,
            iteration=iteration,
        )
        context.block_logs.append(log)
        if self.execution_logger is not None:
            self.execution_logger.log_block(log)

    def _should_forward(self, state: _RunState, block: Block) -> bool:
        selected = state.stream_options.selected_outputs
        if not selected:
            return True
        wanted = {normalize_block_name(s) for s in selected}
        return block.id in selected or block.normalized_name in wanted

    def _chunk_forwarder(self, context: ExecutionContext, options: StreamOptions):
        async def forward(chunk: StreamChunk) -> None:
            if self.event_bus is not None:
                await self.event_bus.emit_stream_chunk(
                    context.workflow_id, chunk.block_id, chunk.data, context.execution_id
                )
            if options.on_chunk is not None:
                result = options.on_chunk(chunk)
                if inspect.isawaitable(result):
                    await result

        return forward
