"""
Subflow Managers - Iteration bookkeeping for loop and parallel containers.

A container block "executes" once when it starts: the manager records its
iteration plan and activates the children wired to its start handle. After
every layer the executor asks the managers to ``process_iterations``:

- LoopManager runs one iteration at a time. When every active child of
  the current iteration has executed it records the results, resets the
  children and starts the next iteration, or completes the loop.
- ParallelManager starts iterations as virtual block copies, at most
  ``max_parallel_concurrency`` at a time, and completes once every
  iteration has finished.

On completion the container's output becomes the aggregated results and
its exit edges fire.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

from blockflow.graph.block import DEFAULT_MAX_ITERATIONS, Block
from blockflow.graph.path import PathTracker
from blockflow.graph.references import InputResolver
from blockflow.graph.workflow import SerializedWorkflow
from blockflow.schemas.context import ExecutionContext, ParallelState

logger = logging.getLogger(__name__)


def resolve_collection(value: Any, resolver: InputResolver, owner: str) -> list[Any]:
    """
    Turn a loop/parallel collection into a list.

    Accepts a list, a dict (iterated as ``[key, value]`` pairs), a JSON
    string, or a reference token resolving to one of those.
    """
    resolved = resolver.resolve_value(value)
    if isinstance(resolved, str):
        text = resolved.strip()
        if not text:
            resolved = []
        else:
            try:
                resolved = json.loads(text)
            except json.JSONDecodeError as e:
                raise ValueError(f"Collection for {owner} is not valid JSON: {e}") from e
    if isinstance(resolved, dict):
        return [[key, item] for key, item in resolved.items()]
    if isinstance(resolved, list | tuple):
        return list(resolved)
    if resolved is None:
        return []
    raise ValueError(
        f"Collection for {owner} must be a list or object, got {type(resolved).__name__}"
    )


class LoopManager:
    """Sequential iterations of ``for`` and ``forEach`` loops."""

    def __init__(
        self,
        workflow: SerializedWorkflow,
        context: ExecutionContext,
        tracker: PathTracker,
        default_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.workflow = workflow
        self.context = context
        self.tracker = tracker
        self.default_iterations = default_iterations

    def start(self, block: Block, resolver: InputResolver) -> dict[str, Any]:
        """Plan the loop's iterations and activate the first one. Returns the start output."""
        loop = self.workflow.loops[block.id]
        if loop.loop_type == "forEach":
            items = resolve_collection(loop.for_each_items, resolver, block.display_name)
            if not items:
                raise ValueError(f"Loop {block.display_name} has an empty collection")
            max_iterations = len(items)
            self.context.loop_items[block.id] = items
        else:
            max_iterations = self.max_iterations(block.id)

        self.context.loop_iterations[block.id] = 0
        self.context.loop_results[block.id] = []
        logger.info(
            f"🔁 Loop {block.display_name}: {max_iterations} iteration(s) ({loop.loop_type})"
        )

        if max_iterations > 0:
            for target in self.tracker.start_targets(block.id):
                self.tracker.activate(target)

        return {
            "loop_id": block.id,
            "max_iterations": max_iterations,
            "loop_type": loop.loop_type,
            "completed": False,
        }

    def max_iterations(self, loop_id: str) -> int:
        loop = self.workflow.loops[loop_id]
        if loop.loop_type == "forEach":
            return len(self.context.loop_items.get(loop_id, []))
        return loop.iterations if loop.iterations is not None else self.default_iterations

    def process_iterations(self, is_cancelled: Callable[[], bool]) -> list[tuple[str, int]]:
        """
        Advance loops whose current iteration finished.

        Returns (loop_id, iteration) for every iteration started.
        """
        started: list[tuple[str, int]] = []
        for loop_id, loop in self.workflow.loops.items():
            if (
                loop_id not in self.context.executed_blocks
                or loop_id in self.context.completed_loops
            ):
                continue
            if self.context.has_error(loop_id):
                continue
            if not self._iteration_done(loop.nodes):
                continue

            iteration = self.context.loop_iterations.get(loop_id, 0)
            max_iterations = self.max_iterations(loop_id)
            if max_iterations > 0:
                self.context.loop_results[loop_id].append(
                    {
                        node_id: self.context.get_output(node_id)
                        for node_id in loop.nodes
                        if node_id in self.context.executed_blocks
                    }
                )

            if iteration + 1 < max_iterations:
                if is_cancelled():
                    continue
                self.tracker.reset_blocks(loop.nodes)
                self.context.loop_iterations[loop_id] = iteration + 1
                for target in self.tracker.start_targets(loop_id):
                    self.tracker.activate(target)
                logger.info(f"   ↻ Loop {loop_id}: iteration {iteration + 2}/{max_iterations}")
                started.append((loop_id, iteration + 1))
            else:
                self._complete(loop_id, max_iterations)
        return started

    def _iteration_done(self, nodes: list[str]) -> bool:
        return not any(
            node_id in self.context.active_execution_path
            and node_id not in self.context.executed_blocks
            for node_id in nodes
        )

    def _complete(self, loop_id: str, max_iterations: int) -> None:
        loop = self.workflow.loops[loop_id]
        state = self.context.block_states[loop_id]
        state.output = {
            "loop_id": loop_id,
            "max_iterations": max_iterations,
            "loop_type": loop.loop_type,
            "completed": True,
            "results": self.context.loop_results.get(loop_id, []),
        }
        self.context.completed_loops.add(loop_id)
        logger.info(f"✓ Loop {loop_id} completed after {max_iterations} iteration(s)")
        self.tracker.activate_exit(loop_id)


class ParallelManager:
    """Concurrent iterations of a parallel container as virtual block copies."""

    def __init__(
        self,
        workflow: SerializedWorkflow,
        context: ExecutionContext,
        tracker: PathTracker,
        max_concurrency: int = 10,
    ):
        self.workflow = workflow
        self.context = context
        self.tracker = tracker
        self.max_concurrency = max(1, max_concurrency)

    def start(self, block: Block, resolver: InputResolver) -> dict[str, Any]:
        """Plan the fan-out and start the first window of iterations."""
        parallel = self.workflow.parallels[block.id]
        items: list[Any] | None = None
        if parallel.parallel_type == "collection" or parallel.distribution not in (None, ""):
            items = resolve_collection(parallel.distribution, resolver, block.display_name)
            if not items:
                raise ValueError(f"Parallel {block.display_name} has an empty distribution")
            count = len(items)
        else:
            count = parallel.count if parallel.count is not None else DEFAULT_MAX_ITERATIONS

        self.context.parallel_executions[block.id] = ParallelState(
            parallel_id=block.id, count=count, items=items
        )
        logger.info(f"🔀 Parallel {block.display_name}: {count} iteration(s)")
        self._start_window(block.id)

        return {"parallel_id": block.id, "count": count, "completed": False}

    def _start_window(self, parallel_id: str) -> list[int]:
        state = self.context.parallel_executions[parallel_id]
        started = []
        targets = self.tracker.start_targets(parallel_id)
        while (
            state.started < state.count
            and state.started - len(state.completed) < self.max_concurrency
        ):
            iteration = state.started
            for target in targets:
                self.tracker.activate(target, (parallel_id, iteration))
            state.started += 1
            started.append(iteration)
        return started

    def process_iterations(self, is_cancelled: Callable[[], bool]) -> list[tuple[str, int]]:
        """Record finished iterations, start new ones, complete finished parallels."""
        started: list[tuple[str, int]] = []
        for parallel_id, state in self.context.parallel_executions.items():
            if parallel_id in self.context.completed_loops or self.context.has_error(parallel_id):
                continue
            parallel = self.workflow.parallels[parallel_id]

            for iteration in range(state.started):
                if iteration in state.completed or not self._iteration_done(parallel_id, iteration):
                    continue
                outputs = {}
                for node_id in parallel.nodes:
                    key = self.tracker.key_for(node_id, (parallel_id, iteration))
                    if key in self.context.executed_blocks:
                        outputs[node_id] = self.context.get_output(key)
                state.results[f"iteration_{iteration}"] = outputs
                state.completed.append(iteration)

            if len(state.completed) >= state.count:
                self._complete(parallel_id)
            elif not is_cancelled():
                started.extend((parallel_id, i) for i in self._start_window(parallel_id))
        return started

    def _iteration_done(self, parallel_id: str, iteration: int) -> bool:
        for key in self.context.active_execution_path:
            info = self.context.parallel_block_mapping.get(key)
            if (
                info is not None
                and info.parallel_id == parallel_id
                and info.iteration == iteration
                and key not in self.context.executed_blocks
            ):
                return False
        return True

    def _complete(self, parallel_id: str) -> None:
        state = self.context.parallel_executions[parallel_id]
        self.context.block_states[parallel_id].output = {
            "parallel_id": parallel_id,
            "count": state.count,
            "completed": True,
            "results": [state.results.get(f"iteration_{i}", {}) for i in range(state.count)],
        }
        self.context.completed_loops.add(parallel_id)
        logger.info(f"✓ Parallel {parallel_id} completed {state.count} iteration(s)")
        self.tracker.activate_exit(parallel_id)
