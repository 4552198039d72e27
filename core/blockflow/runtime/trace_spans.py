"""Build a span tree from a run's block logs.

Blocks outside subflows become top-level spans in execution order. Blocks
inside a loop or parallel are grouped under their container's span, one
"Iteration N" child span per iteration, so a 3-iteration loop reads as::

    loop1
      Iteration 1: body, check
      Iteration 2: body, check
      Iteration 3: body, check
"""

from blockflow.graph.block import BlockType
from blockflow.runtime.execution_log_schemas import TraceSpan
from blockflow.schemas.context import BlockLog


def span_from_log(log: BlockLog, index: int) -> TraceSpan:
    is_container = log.block_type in (BlockType.LOOP, BlockType.PARALLEL)
    span_type = log.block_type if is_container else "block"
    return TraceSpan(
        id=f"span-{index}-{log.block_id}",
        name=log.block_name or log.block_id,
        type=span_type,
        block_id=log.block_id,
        start_time=log.started_at,
        end_time=log.ended_at,
        duration_ms=log.duration_ms,
        status="success" if log.success else "error",
        input=log.input,
        output=log.output,
        error=log.error,
        loop_id=log.loop_id,
        parallel_id=log.parallel_id,
        iteration=log.iteration,
    )


def build_trace_spans(logs: list[BlockLog]) -> list[TraceSpan]:
    """Group block logs into container/iteration spans."""
    roots: list[TraceSpan] = []
    containers: dict[str, TraceSpan] = {}
    iterations: dict[tuple[str, int], TraceSpan] = {}

    for index, log in enumerate(logs):
        span = span_from_log(log, index)
        container_id = log.loop_id or log.parallel_id

        if container_id is None:
            roots.append(span)
            if span.type != "block":
                containers[log.block_id] = span
            continue

        parent = containers.get(container_id)
        if parent is None:
            # Child logged without its container (e.g. resumed mid-loop)
            parent = TraceSpan(id=f"span-{container_id}", name=container_id, block_id=container_id)
            containers[container_id] = parent
            roots.append(parent)

        iteration = log.iteration or 0
        group = iterations.get((container_id, iteration))
        if group is None:
            group = TraceSpan(
                id=f"{parent.id}-iteration-{iteration}",
                name=f"Iteration {iteration + 1}",
                type="iteration",
                iteration=iteration,
                loop_id=log.loop_id,
                parallel_id=log.parallel_id,
                start_time=log.started_at,
            )
            iterations[(container_id, iteration)] = group
            parent.children.append(group)

        group.children.append(span)
        group.end_time = max(group.end_time, log.ended_at)
        if not log.success:
            group.status = "error"

    for group in iterations.values():
        group.duration_ms = sum(child.duration_ms for child in group.children)
    for parent in containers.values():
        if parent.children:
            parent.end_time = max(child.end_time for child in parent.children)
            if any(child.status == "error" for child in parent.children):
                parent.status = "error"

    return roots
