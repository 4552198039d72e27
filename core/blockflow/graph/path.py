"""
Path Tracker - Decides which blocks run next.

Two sets in the ExecutionContext drive scheduling:

- ``active_execution_path``: blocks some executed predecessor activated
- ``executed_blocks``: blocks (or virtual parallel instances) that finished

A block is ready when it is on the active path, not yet executed, and every
incoming edge is settled. An edge from a finished source is settled only
when the source took it: ``error`` edges need a failed source, condition
and router edges need the recorded decision, and every other edge needs a
successful source. An edge from a source that never ran is settled when
that source can no longer run: it sits off the active path and none of its
own predecessors can still activate it. That is how a join after a
condition waits for the taken branch but not for the pruned one.

Parallel children never appear on the path under their own ID; each
iteration runs a virtual copy ``{child}_parallel_{parallel}_iteration_{n}``
whose sibling edges stay within the same iteration.
"""

import logging

from blockflow.graph.block import Block, BlockType, virtual_block_id
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.workflow import SerializedWorkflow
from blockflow.schemas.context import ExecutionContext, VirtualBlockInfo

logger = logging.getLogger(__name__)

# (parallel_id, iteration) of a virtual block; None outside parallels
Frame = tuple[str, int] | None


class PathTracker:
    """Computes ready layers and activates successors of finished blocks."""

    def __init__(self, workflow: SerializedWorkflow, context: ExecutionContext):
        self.workflow = workflow
        self.context = context
        self._order = {block.id: index for index, block in enumerate(workflow.blocks)}
        self._settled_cache: dict[tuple[str, Frame], bool] = {}

    # === KEYS ===

    def key_for(self, block_id: str, frame: Frame) -> str:
        """State key of a block, virtual when it runs inside a parallel iteration."""
        if frame is not None:
            parallel_id, iteration = frame
            parallel = self.workflow.parallels.get(parallel_id)
            if parallel is not None and block_id in parallel.nodes:
                return virtual_block_id(block_id, parallel_id, iteration)
        return block_id

    def frame_of(self, key: str) -> Frame:
        info = self.context.parallel_block_mapping.get(key)
        return (info.parallel_id, info.iteration) if info else None

    def block_id_of(self, key: str) -> str:
        info = self.context.parallel_block_mapping.get(key)
        return info.original_block_id if info else key

    # === READINESS ===

    def get_next_layer(self, exclude: set[str] | frozenset[str] = frozenset()) -> list[str]:
        """Ready blocks in workflow order (virtual blocks ordered by iteration)."""
        self._settled_cache = {}
        ready = [
            key
            for key in self.context.active_execution_path
            if key not in self.context.executed_blocks
            and key not in exclude
            and self.is_ready(key)
        ]
        return sorted(ready, key=self._sort_key)

    def is_ready(self, key: str) -> bool:
        block = self.workflow.get_block(self.block_id_of(key))
        if block is None or not block.enabled:
            return False
        frame = self.frame_of(key)
        for edge in self.workflow.get_incoming_edges(block.id):
            if self.is_back_edge(edge):
                continue
            if not self._edge_settled(edge, frame):
                return False
        return True

    def is_back_edge(self, edge: EdgeSpec) -> bool:
        """Edge from a subflow child back to its own container."""
        return self.workflow.container_of(edge.source) == edge.target

    def _edge_settled(self, edge: EdgeSpec, frame: Frame) -> bool:
        """The edge lets its target run: its source took it, or its source is dead."""
        source = self.workflow.get_block(edge.source)
        if source is None:
            return True
        if source.is_container:
            return self._container_edge_settled(edge, source)
        source_frame = frame if self.workflow.container_of(source.id) else None
        key = self.key_for(source.id, source_frame)
        if key in self.context.executed_blocks:
            return self._edge_selected(edge, source, key, self.context.has_error(key))
        return self._is_dead(source.id, source_frame)

    def _edge_resolved(self, edge: EdgeSpec, frame: Frame) -> bool:
        """The edge can no longer activate its target, whatever the outcome."""
        source = self.workflow.get_block(edge.source)
        if source is None:
            return True
        if source.is_container:
            return self._container_edge_settled(edge, source)
        source_frame = frame if self.workflow.container_of(source.id) else None
        key = self.key_for(source.id, source_frame)
        return key in self.context.executed_blocks or self._is_dead(source.id, source_frame)

    def _container_edge_settled(self, edge: EdgeSpec, source: Block) -> bool:
        if self.workflow.container_of(edge.target) == source.id:
            return source.id in self.context.executed_blocks
        return source.id in self.context.completed_loops or self._is_dead(source.id, None)

    def _is_dead(self, block_id: str, frame: Frame) -> bool:
        """True when a block is off the path and nothing can still activate it."""
        key = self.key_for(block_id, frame)
        if key in self.context.executed_blocks or key in self.context.active_execution_path:
            return False

        cache_key = (block_id, frame)
        if cache_key in self._settled_cache:
            return self._settled_cache[cache_key]
        # Provisional answer guards against revisiting during the walk
        self._settled_cache[cache_key] = False

        dead = all(
            self._edge_resolved(edge, frame)
            for edge in self.workflow.get_incoming_edges(block_id)
            if not self.is_back_edge(edge)
        )
        self._settled_cache[cache_key] = dead
        return dead

    def _sort_key(self, key: str) -> tuple[int, int]:
        info = self.context.parallel_block_mapping.get(key)
        block_id = info.original_block_id if info else key
        return (self._order.get(block_id, len(self._order)), info.iteration if info else -1)

    # === ACTIVATION ===

    def activate(self, block_id: str, frame: Frame = None) -> str | None:
        """Put a block (or its virtual copy for ``frame``) on the active path."""
        block = self.workflow.get_block(block_id)
        if block is None or not block.enabled:
            return None
        key = self.key_for(block_id, frame)
        if key != block_id and frame is not None:
            self.context.parallel_block_mapping[key] = VirtualBlockInfo(
                original_block_id=block_id, parallel_id=frame[0], iteration=frame[1]
            )
        self.context.active_execution_path.add(key)
        return key

    def activate_successors(self, key: str, failed: bool = False) -> list[str]:
        """
        Activate the outgoing edges a finished block selects.

        Failed blocks follow only ``error`` edges. Conditions follow the
        ``condition-<id>`` edge they chose plus plain edges; routers follow
        only the edge to their chosen target.
        """
        block = self.workflow.get_block(self.block_id_of(key))
        if block is None:
            return []
        frame = self.frame_of(key)

        undecided = key not in self.context.decisions.router
        if not failed and block.type == BlockType.ROUTER and undecided:
            logger.warning(f"⚠ Router {block.display_name} made no routing decision")
            return []

        activated = []
        for edge in self.workflow.get_outgoing_edges(block.id):
            if self.is_back_edge(edge):
                continue
            if not self._edge_selected(edge, block, key, failed):
                continue
            target = self.activate(edge.target, frame)
            if target is not None:
                activated.append(target)
        return activated

    def _edge_selected(self, edge: EdgeSpec, block: Block, key: str, failed: bool) -> bool:
        if failed:
            return edge.is_error
        if edge.is_error:
            return False
        if edge.is_condition:
            return self.context.decisions.condition.get(key) == edge.condition_id
        if block.type == BlockType.ROUTER:
            return self.context.decisions.router.get(key) == edge.target
        return True

    def start_targets(self, container_id: str) -> list[str]:
        """Children a container activates when an iteration begins."""
        return [
            edge.target
            for edge in self.workflow.get_outgoing_edges(container_id)
            if edge.is_container_start or self.workflow.container_of(edge.target) == container_id
        ]

    def activate_exit(self, container_id: str) -> list[str]:
        """Fire a finished container's exit: end-handle and plain outgoing edges."""
        activated = []
        for edge in self.workflow.get_outgoing_edges(container_id):
            if edge.is_error or edge.is_container_start:
                continue
            if self.workflow.container_of(edge.target) == container_id:
                continue
            target = self.activate(edge.target)
            if target is not None:
                activated.append(target)
        return activated

    def reset_blocks(self, keys: list[str]) -> None:
        """Forget that blocks ran so a new loop iteration can run them again."""
        for key in keys:
            self.context.executed_blocks.discard(key)
            self.context.active_execution_path.discard(key)
            self.context.decisions.router.pop(key, None)
            self.context.decisions.condition.pop(key, None)
