"""
Workflow Serializer - Validates an editable graph and freezes it for execution.

Checks run in a fixed order and the first violation raises a
WorkflowValidationError carrying the offending block's identity:

1. Edges reference existing, enabled blocks
2. Subflow membership is unambiguous (one container per block)
3. No cycles outside a single subflow (outer DAG + inner graph per container)
4. At most one start-capable trigger per trigger category
5. Subflow children form a connected region entered/exited through the
   container's handles, with no subflow nested in another

Serialization is deterministic: the same inputs always produce the same
SerializedWorkflow.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from blockflow.errors import WorkflowValidationError
from blockflow.graph.block import Block, BlockType, LoopSpec, ParallelSpec
from blockflow.graph.edge import EdgeSpec
from blockflow.graph.triggers import SINGLE_INSTANCE_KINDS, TRIGGER_LABELS, trigger_kind
from blockflow.graph.workflow import SerializedWorkflow

logger = logging.getLogger(__name__)

BlockInput = Block | Mapping[str, Any]
EdgeInput = EdgeSpec | Mapping[str, Any]


def _error(message: str, block: Block | None = None) -> WorkflowValidationError:
    if block is None:
        return WorkflowValidationError(message)
    return WorkflowValidationError(
        message, block_id=block.id, block_type=block.type, block_name=block.display_name
    )


def _describe(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in e.errors()
    )


class WorkflowSerializer:
    """
    Turns blocks, edges and subflow descriptors into a SerializedWorkflow.

    Example:
        workflow = WorkflowSerializer().serialize(
            blocks=[starter, fetch, summarize],
            edges=[EdgeSpec(source="start", target="fetch"), ...],
        )
    """

    def serialize(
        self,
        blocks: Iterable[BlockInput],
        edges: Iterable[EdgeInput],
        loops: Mapping[str, LoopSpec | Mapping[str, Any]] | None = None,
        parallels: Mapping[str, ParallelSpec | Mapping[str, Any]] | None = None,
        strict: bool = False,
        workflow_id: str = "",
    ) -> SerializedWorkflow:
        """
        Validate and serialize a workflow graph.

        Args:
            blocks: Blocks (models or dicts)
            edges: Edges (models or dicts)
            loops: Loop descriptors keyed by container ID; derived from the
                container block's inputs when omitted
            parallels: Parallel descriptors keyed by container ID
            strict: Reject edges to disabled blocks and invalid subflow metadata
            workflow_id: ID stamped on the serialized form

        Returns:
            Immutable SerializedWorkflow

        Raises:
            WorkflowValidationError: on the first violated check
        """
        block_list = self._coerce_blocks(blocks)
        by_id = {b.id: b for b in block_list}

        connections = self._check_edges(by_id, [self._coerce_edge(e) for e in edges], strict)
        loop_specs, parallel_specs = self._build_subflows(
            block_list, by_id, loops or {}, parallels or {}
        )
        container_of = {n: lid for lid, spec in loop_specs.items() for n in spec.nodes}
        container_of.update({n: pid for pid, spec in parallel_specs.items() for n in spec.nodes})

        self._check_cycles(block_list, connections, container_of, by_id)
        self._check_triggers(block_list)
        self._check_subflow_structure(by_id, connections, container_of, loop_specs, parallel_specs)

        if strict:
            self._check_strict(by_id, connections, loop_specs, parallel_specs)

        logger.debug(
            f"Serialized workflow {workflow_id or '<anonymous>'}: {len(block_list)} blocks, "
            f"{len(connections)} connections, {len(loop_specs)} loops, "
            f"{len(parallel_specs)} parallels"
        )

        return SerializedWorkflow(
            id=workflow_id,
            blocks=block_list,
            connections=connections,
            loops=loop_specs,
            parallels=parallel_specs,
        )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _coerce_blocks(self, blocks: Iterable[BlockInput]) -> list[Block]:
        result: list[Block] = []
        seen: set[str] = set()
        for raw in blocks:
            if isinstance(raw, Block):
                block = raw.model_copy(deep=True)
            else:
                try:
                    block = Block.model_validate(raw)
                except ValidationError as e:
                    block_id = raw.get("id") if isinstance(raw, Mapping) else None
                    raise WorkflowValidationError(
                        f"Invalid block {block_id or '<unnamed>'}: {_describe(e)}",
                        block_id=block_id,
                        block_type=raw.get("type") if isinstance(raw, Mapping) else None,
                    ) from e
            if block.id in seen:
                raise _error(f"Duplicate block id: {block.id}", block)
            seen.add(block.id)
            result.append(block)
        return result

    def _coerce_edge(self, raw: EdgeInput) -> EdgeSpec:
        if isinstance(raw, EdgeSpec):
            return raw.model_copy()
        try:
            return EdgeSpec.model_validate(raw)
        except ValidationError as e:
            source = raw.get("source") if isinstance(raw, Mapping) else None
            raise WorkflowValidationError(
                f"Invalid connection from {source or '<unknown>'}: {_describe(e)}",
                block_id=source,
            ) from e

    # ------------------------------------------------------------------
    # (a) edge endpoints
    # ------------------------------------------------------------------

    def _check_edges(
        self, by_id: dict[str, Block], edges: list[EdgeSpec], strict: bool
    ) -> list[EdgeSpec]:
        kept: list[EdgeSpec] = []
        for edge in edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in by_id:
                    raise WorkflowValidationError(
                        f"Connection {edge.id} references unknown block {endpoint}",
                        block_id=endpoint,
                    )

            source, target = by_id[edge.source], by_id[edge.target]
            disabled = [b for b in (source, target) if not b.enabled]
            if disabled:
                if strict:
                    raise _error(
                        f"Connection {edge.id} references disabled block "
                        f"{disabled[0].display_name}",
                        disabled[0],
                    )
                logger.debug(f"Dropping connection {edge.id} to disabled block")
                continue

            if target.trigger_mode:
                logger.debug(f"Ignoring incoming connection {edge.id} on trigger-mode block")
                continue

            kept.append(edge)
        return kept

    # ------------------------------------------------------------------
    # (b) subflow membership
    # ------------------------------------------------------------------

    def _build_subflows(
        self,
        blocks: list[Block],
        by_id: dict[str, Block],
        loops: Mapping[str, LoopSpec | Mapping[str, Any]],
        parallels: Mapping[str, ParallelSpec | Mapping[str, Any]],
    ) -> tuple[dict[str, LoopSpec], dict[str, ParallelSpec]]:
        loop_specs: dict[str, LoopSpec] = {}
        parallel_specs: dict[str, ParallelSpec] = {}

        for container_id, raw in loops.items():
            loop_specs[container_id] = self._declared_spec(
                LoopSpec, container_id, raw, by_id, BlockType.LOOP
            )
        for container_id, raw in parallels.items():
            parallel_specs[container_id] = self._declared_spec(
                ParallelSpec, container_id, raw, by_id, BlockType.PARALLEL
            )

        for block in blocks:
            try:
                if block.type == BlockType.LOOP and block.id not in loop_specs:
                    loop_specs[block.id] = LoopSpec(
                        id=block.id,
                        iterations=block.inputs.get("iterations"),
                        loop_type=block.inputs.get("loop_type", "for"),
                        for_each_items=block.inputs.get("collection"),
                    )
                elif block.type == BlockType.PARALLEL and block.id not in parallel_specs:
                    parallel_specs[block.id] = ParallelSpec(
                        id=block.id,
                        count=block.inputs.get("count"),
                        distribution=block.inputs.get("distribution"),
                        parallel_type=block.inputs.get("parallel_type", "count"),
                    )
            except ValidationError as e:
                raise _error(
                    f"Invalid {block.type} settings on {block.display_name}: {_describe(e)}",
                    block,
                ) from e

        specs: dict[str, LoopSpec | ParallelSpec] = {**loop_specs, **parallel_specs}
        owner: dict[str, str] = {}
        for container_id, spec in specs.items():
            for node_id in spec.nodes:
                if node_id not in by_id:
                    raise _error(
                        f"Subflow {container_id} lists unknown block {node_id}",
                        by_id[container_id],
                    )
                self._claim(owner, node_id, container_id, by_id)

        for block in blocks:
            if block.parent_id is None:
                continue
            parent = by_id.get(block.parent_id)
            if parent is None or not parent.is_container:
                raise _error(
                    f"Block {block.display_name} has parent {block.parent_id} "
                    "which is not a loop or parallel block",
                    block,
                )
            self._claim(owner, block.id, block.parent_id, by_id)

        order = {b.id: i for i, b in enumerate(blocks)}
        for container_id, spec in specs.items():
            members = sorted(
                (n for n, c in owner.items() if c == container_id), key=order.__getitem__
            )
            spec.nodes = members

        return loop_specs, parallel_specs

    def _declared_spec(
        self,
        model: type[LoopSpec] | type[ParallelSpec],
        container_id: str,
        raw: Any,
        by_id: dict[str, Block],
        expected_type: BlockType,
    ) -> Any:
        block = by_id.get(container_id)
        if block is None or block.type != expected_type:
            raise WorkflowValidationError(
                f"{expected_type.value.capitalize()} {container_id} has no matching "
                f"{expected_type.value} block",
                block_id=container_id,
                block_type=expected_type.value,
            )
        if isinstance(raw, model):
            spec = raw.model_copy(deep=True)
        else:
            try:
                spec = model.model_validate({**raw, "id": container_id})
            except (TypeError, ValidationError) as e:
                detail = _describe(e) if isinstance(e, ValidationError) else str(e)
                raise _error(
                    f"Invalid {expected_type.value} settings on {block.display_name}: {detail}",
                    block,
                ) from e
        spec.id = container_id
        return spec

    def _claim(
        self, owner: dict[str, str], node_id: str, container_id: str, by_id: dict[str, Block]
    ) -> None:
        current = owner.get(node_id)
        if current is not None and current != container_id:
            raise _error(
                f"Block {by_id[node_id].display_name} belongs to more than one subflow "
                f"({current}, {container_id})",
                by_id[node_id],
            )
        owner[node_id] = container_id

    # ------------------------------------------------------------------
    # (c) cycles: outer DAG, inner graph per container
    # ------------------------------------------------------------------

    def _check_cycles(
        self,
        blocks: list[Block],
        connections: list[EdgeSpec],
        container_of: dict[str, str],
        by_id: dict[str, Block],
    ) -> None:
        def representative(block_id: str) -> str:
            return container_of.get(block_id, block_id)

        outer: dict[str, list[str]] = {b.id: [] for b in blocks if b.id not in container_of}
        inner: dict[str, dict[str, list[str]]] = {}

        for edge in connections:
            src, tgt = representative(edge.source), representative(edge.target)
            if src != tgt:
                outer.setdefault(src, []).append(tgt)
                continue
            container_id = container_of.get(edge.source)
            # Container -> child start edges and child -> container back-edges
            # are the subflow's own ports
            if container_id is None or edge.target == container_id:
                continue
            if container_of.get(edge.target) != container_id:
                continue
            graph = inner.setdefault(container_id, {})
            graph.setdefault(edge.source, []).append(edge.target)

        cycle_node = _find_cycle(outer)
        if cycle_node is not None:
            raise _error(
                f"Workflow contains a cycle through {by_id[cycle_node].display_name}; "
                "cycles are only allowed inside a loop",
                by_id[cycle_node],
            )

        for container_id, graph in inner.items():
            cycle_node = _find_cycle(graph)
            if cycle_node is not None:
                raise _error(
                    f"Subflow {by_id[container_id].display_name} contains a cycle through "
                    f"{by_id[cycle_node].display_name}",
                    by_id[cycle_node],
                )

    # ------------------------------------------------------------------
    # (d) trigger categories
    # ------------------------------------------------------------------

    def _check_triggers(self, blocks: list[Block]) -> None:
        seen: dict[str, Block] = {}
        for block in blocks:
            if not block.enabled:
                continue
            kind = trigger_kind(block)
            if kind is None or kind not in SINGLE_INSTANCE_KINDS:
                continue
            if kind in seen:
                raise _error(f"Multiple {TRIGGER_LABELS[kind]} blocks found. Keep only one.", block)
            seen[kind] = block

    # ------------------------------------------------------------------
    # (e) subflow structure
    # ------------------------------------------------------------------

    def _check_subflow_structure(
        self,
        by_id: dict[str, Block],
        connections: list[EdgeSpec],
        container_of: dict[str, str],
        loop_specs: dict[str, LoopSpec],
        parallel_specs: dict[str, ParallelSpec],
    ) -> None:
        for container_id in [*loop_specs, *parallel_specs]:
            if container_id in container_of:
                raise _error(
                    f"Subflow {by_id[container_id].display_name} is nested inside "
                    f"{container_of[container_id]}; nested subflows are not supported",
                    by_id[container_id],
                )

        for edge in connections:
            src_scope = container_of.get(edge.source)
            tgt_scope = container_of.get(edge.target)
            source = by_id[edge.source]

            if edge.is_container_start:
                if not source.is_container or tgt_scope != edge.source:
                    raise _error(
                        f"Start handle of {source.display_name} must connect to a block "
                        "inside it",
                        source,
                    )
                continue

            if edge.is_container_end:
                if not source.is_container or tgt_scope == edge.source:
                    raise _error(
                        f"End handle of {source.display_name} must connect to a block "
                        "outside it",
                        source,
                    )
                continue

            if src_scope == tgt_scope:
                continue
            if src_scope is not None and edge.target == src_scope:
                continue  # iteration back-edge to own container
            offender = by_id[edge.target] if tgt_scope is not None else source
            raise _error(
                f"Connection {edge.id} crosses a subflow boundary; use the container's "
                "start or end handle",
                offender,
            )

        specs: dict[str, LoopSpec | ParallelSpec] = {**loop_specs, **parallel_specs}
        for container_id, spec in specs.items():
            members = set(spec.nodes)
            frontier = [
                e.target
                for e in connections
                if e.source == container_id and e.is_container_start
            ]
            reached: set[str] = set()
            while frontier:
                node_id = frontier.pop()
                if node_id in reached or node_id not in members:
                    continue
                reached.add(node_id)
                frontier.extend(e.target for e in connections if e.source == node_id)

            for node_id in spec.nodes:
                block = by_id[node_id]
                if block.enabled and node_id not in reached:
                    raise _error(
                        f"Block {block.display_name} is not connected to the start of "
                        f"subflow {by_id[container_id].display_name}",
                        block,
                    )

    # ------------------------------------------------------------------
    # strict-only checks
    # ------------------------------------------------------------------

    def _check_strict(
        self,
        by_id: dict[str, Block],
        connections: list[EdgeSpec],
        loop_specs: dict[str, LoopSpec],
        parallel_specs: dict[str, ParallelSpec],
    ) -> None:
        for loop_id, loop in loop_specs.items():
            block = by_id[loop_id]
            if loop.loop_type == "forEach":
                if loop.for_each_items in (None, "", [], {}):
                    raise _error(f"Loop {block.display_name} requires a collection", block)
            elif loop.iterations is not None and loop.iterations < 1:
                raise _error(f"Loop {block.display_name} must run at least once", block)

        for parallel_id, parallel in parallel_specs.items():
            block = by_id[parallel_id]
            if parallel.parallel_type == "collection":
                if parallel.distribution in (None, "", [], {}):
                    raise _error(
                        f"Parallel {block.display_name} requires a distribution collection", block
                    )
            elif parallel.count is not None and parallel.count < 1:
                raise _error(f"Parallel {block.display_name} must run at least once", block)

        for block in by_id.values():
            if block.type == BlockType.STARTER and any(
                e.target == block.id for e in connections
            ):
                raise _error("Start block cannot have incoming connections", block)


def _find_cycle(graph: dict[str, list[str]]) -> str | None:
    """Return a node on a cycle, or None if the graph is acyclic."""
    white, grey, black = 0, 1, 2
    color: dict[str, int] = {}

    for root in graph:
        if color.get(root, white) != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = grey
        while stack:
            node, index = stack[-1]
            children = graph.get(node, [])
            if index < len(children):
                stack[-1] = (node, index + 1)
                child = children[index]
                state = color.get(child, white)
                if state == grey:
                    return child
                if state == white:
                    color[child] = grey
                    stack.append((child, 0))
            else:
                color[node] = black
                stack.pop()
    return None


def serialize_workflow(
    blocks: Iterable[BlockInput],
    edges: Iterable[EdgeInput],
    loops: Mapping[str, LoopSpec | Mapping[str, Any]] | None = None,
    parallels: Mapping[str, ParallelSpec | Mapping[str, Any]] | None = None,
    strict: bool = False,
    workflow_id: str = "",
) -> SerializedWorkflow:
    """Convenience wrapper around WorkflowSerializer.serialize()."""
    return WorkflowSerializer().serialize(
        blocks, edges, loops=loops, parallels=parallels, strict=strict, workflow_id=workflow_id
    )


def load_workflow(data: Mapping[str, Any], strict: bool = False) -> SerializedWorkflow:
    """Serialize a workflow from its JSON document form.

    Expected keys: ``blocks``, ``edges`` (or ``connections``), optional
    ``loops``, ``parallels`` and ``id``.
    """
    return serialize_workflow(
        data.get("blocks", []),
        data.get("edges", data.get("connections", [])),
        loops=data.get("loops"),
        parallels=data.get("parallels"),
        strict=strict,
        workflow_id=data.get("id", ""),
    )
