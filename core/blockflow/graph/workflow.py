"""
Serialized Workflow - The immutable, execution-ready form of a graph.

Produced once per invocation by the WorkflowSerializer and never mutated
afterwards. Lookup indexes are built once at construction.
"""

from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from blockflow.graph.block import Block, LoopSpec, ParallelSpec, normalize_block_name
from blockflow.graph.edge import EdgeSpec


class SerializedWorkflow(BaseModel):
    """
    Complete, validated specification of a workflow graph.

    Example:
        SerializedWorkflow(
            id="daily-report",
            blocks=[Block(id="start", type="starter"), Block(id="a", type="fetch")],
            connections=[EdgeSpec(source="start", target="a")],
        )
    """

    id: str = ""
    version: str = "1.0"
    blocks: list[Block] = Field(default_factory=list)
    connections: list[EdgeSpec] = Field(default_factory=list)
    loops: dict[str, LoopSpec] = Field(default_factory=dict)
    parallels: dict[str, ParallelSpec] = Field(default_factory=dict)

    model_config = {"frozen": True}

    _blocks_by_id: dict[str, Block] = PrivateAttr(default_factory=dict)
    _blocks_by_name: dict[str, Block] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[EdgeSpec]] = PrivateAttr(default_factory=dict)
    _loop_of: dict[str, str] = PrivateAttr(default_factory=dict)
    _parallel_of: dict[str, str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for block in self.blocks:
            self._blocks_by_id[block.id] = block
            self._blocks_by_name.setdefault(block.normalized_name, block)
        for edge in self.connections:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)
        for loop_id, loop in self.loops.items():
            for node_id in loop.nodes:
                self._loop_of[node_id] = loop_id
        for parallel_id, parallel in self.parallels.items():
            for node_id in parallel.nodes:
                self._parallel_of[node_id] = parallel_id

    def get_block(self, block_id: str) -> Block | None:
        """Get a block by ID."""
        return self._blocks_by_id.get(block_id)

    def find_block(self, reference: str) -> Block | None:
        """Find a block by ID or by its normalized name (as used in references)."""
        block = self._blocks_by_id.get(reference)
        if block is not None:
            return block
        return self._blocks_by_name.get(normalize_block_name(reference))

    def get_outgoing_edges(self, block_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a block, in declaration order."""
        return list(self._outgoing.get(block_id, []))

    def get_incoming_edges(self, block_id: str) -> list[EdgeSpec]:
        """Get all edges entering a block, in declaration order."""
        return list(self._incoming.get(block_id, []))

    def containing_loop(self, block_id: str) -> LoopSpec | None:
        loop_id = self._loop_of.get(block_id)
        return self.loops.get(loop_id) if loop_id else None

    def containing_parallel(self, block_id: str) -> ParallelSpec | None:
        parallel_id = self._parallel_of.get(block_id)
        return self.parallels.get(parallel_id) if parallel_id else None

    def container_of(self, block_id: str) -> str | None:
        """ID of the loop or parallel containing a block, if any."""
        return self._loop_of.get(block_id) or self._parallel_of.get(block_id)

    def enabled_blocks(self) -> list[Block]:
        return [b for b in self.blocks if b.enabled]
