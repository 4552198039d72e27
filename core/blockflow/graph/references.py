"""
Input Resolution - Substitutes reference tokens in block inputs.

Supported tokens:
- <blockName.path> / <blockId.path>: output of an upstream block
- <start.path>: output of the run's start block
- <loop.index>, <loop.currentItem>, <loop.items>: current loop iteration
- <parallel.index>, <parallel.currentItem>, <parallel.items>: current parallel iteration
- <variable.name>: workflow-scoped variable
- {{ENV_VAR}}: environment variable

A string consisting of exactly one reference keeps the referenced value's
type; references embedded in a longer string are rendered as text.

Resolution reads only the run's ExecutionContext, whose variable maps are
snapshots taken at run start.
"""

import copy
import json
import re
from dataclasses import dataclass
from typing import Any

from blockflow.errors import ReferenceResolutionError
from blockflow.graph.block import Block, normalize_block_name, virtual_block_id
from blockflow.graph.workflow import SerializedWorkflow
from blockflow.schemas.context import ExecutionContext

REFERENCE_PATTERN = re.compile(r"<([^<>\s]+)>")
ENV_PATTERN = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")
_VALID_REFERENCE = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+(\[\d+\])*)*$")
_SEGMENT = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")

SYSTEM_PREFIXES = frozenset({"start", "loop", "parallel", "variable"})


@dataclass(frozen=True)
class IterationScope:
    """Subflow position of the block being resolved."""

    loop_id: str | None = None
    loop_index: int = 0
    loop_items: list[Any] | None = None
    parallel_id: str | None = None
    parallel_index: int = 0
    parallel_items: list[Any] | None = None

    @property
    def loop_item(self) -> Any:
        if self.loop_items is None or self.loop_index >= len(self.loop_items):
            return None
        return self.loop_items[self.loop_index]

    @property
    def parallel_item(self) -> Any:
        if self.parallel_items is None or self.parallel_index >= len(self.parallel_items):
            return None
        return self.parallel_items[self.parallel_index]


def is_likely_reference(token: str) -> bool:
    """Filter out comparisons and markup that merely look like <tokens>."""
    return bool(_VALID_REFERENCE.match(token))


def split_path(path: str) -> list[str | int]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    parts: list[str | int] = []
    for segment in path.split("."):
        match = _SEGMENT.match(segment)
        if not match:
            parts.append(segment)
            continue
        key, indices = match.groups()
        if key:
            parts.append(key)
        parts.extend(int(i) for i in re.findall(r"\[(\d+)\]", indices))
    return parts


def navigate(value: Any, path: list[str | int]) -> Any:
    """Walk a path into nested dicts/lists, returning None when it runs out."""
    for part in path:
        if isinstance(part, int):
            if isinstance(value, list | tuple) and 0 <= part < len(value):
                value = value[part]
            else:
                return None
        elif isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class InputResolver:
    """
    Resolves a block's inputs against the current execution context.

    Example:
        resolver = InputResolver(workflow, context)
        inputs = resolver.resolve_inputs(block, IterationScope(loop_id="l1", loop_index=2))
    """

    def __init__(self, workflow: SerializedWorkflow, context: ExecutionContext):
        self.workflow = workflow
        self.context = context

    def resolve_inputs(self, block: Block, scope: IterationScope | None = None) -> dict[str, Any]:
        scope = scope or IterationScope()
        return {
            key: self.resolve_value(copy.deepcopy(value), scope)
            for key, value in block.inputs.items()
        }

    def resolve_value(self, value: Any, scope: IterationScope | None = None) -> Any:
        scope = scope or IterationScope()
        if isinstance(value, str):
            return self._resolve_string(value, scope)
        if isinstance(value, list):
            return [self.resolve_value(v, scope) for v in value]
        if isinstance(value, dict):
            return {k: self.resolve_value(v, scope) for k, v in value.items()}
        return value

    def _resolve_string(self, text: str, scope: IterationScope) -> Any:
        whole = REFERENCE_PATTERN.fullmatch(text.strip())
        if whole and is_likely_reference(whole.group(1)):
            return self.resolve_reference(whole.group(1), scope)

        def replace_reference(match: re.Match) -> str:
            token = match.group(1)
            if not is_likely_reference(token):
                return match.group(0)
            return render(self.resolve_reference(token, scope))

        text = ENV_PATTERN.sub(self._replace_env, text)
        return REFERENCE_PATTERN.sub(replace_reference, text)

    def _replace_env(self, match: re.Match) -> str:
        name = match.group(1)
        if name not in self.context.environment_variables:
            raise ReferenceResolutionError(
                f'Environment variable "{name}" was not found', reference=match.group(0)
            )
        return self.context.environment_variables[name]

    def resolve_reference(self, token: str, scope: IterationScope | None = None) -> Any:
        """Resolve a single ``head.path`` token (without angle brackets)."""
        scope = scope or IterationScope()
        parts = split_path(token)
        head, path = str(parts[0]), parts[1:]
        prefix = head.lower()

        if prefix == "start":
            start_id = self.context.start_block_id
            value = self.context.get_output(start_id) if start_id else self.context.initial_input
            return navigate(value, path)

        if prefix == "loop":
            if scope.loop_id is None:
                raise ReferenceResolutionError(
                    "Loop references are only valid inside a loop", reference=token
                )
            fields = {
                "index": scope.loop_index,
                "currentitem": scope.loop_item,
                "items": scope.loop_items,
            }
            return self._subflow_field(fields, path, token)

        if prefix == "parallel":
            if scope.parallel_id is None:
                raise ReferenceResolutionError(
                    "Parallel references are only valid inside a parallel", reference=token
                )
            fields = {
                "index": scope.parallel_index,
                "currentitem": scope.parallel_item,
                "items": scope.parallel_items,
            }
            return self._subflow_field(fields, path, token)

        if prefix == "variable":
            if not path:
                raise ReferenceResolutionError("Variable reference needs a name", reference=token)
            wanted = normalize_block_name(str(path[0]))
            for name, value in self.context.workflow_variables.items():
                if normalize_block_name(name) == wanted:
                    return navigate(copy.deepcopy(value), path[1:])
            raise ReferenceResolutionError(f'Variable "{path[0]}" not found', reference=token)

        block = self.workflow.find_block(head)
        if block is None:
            raise ReferenceResolutionError(f'Block "{head}" not found', reference=token)

        state_id = block.id
        if scope.parallel_id is not None:
            parallel = self.workflow.parallels.get(scope.parallel_id)
            if parallel is not None and block.id in parallel.nodes:
                state_id = virtual_block_id(block.id, scope.parallel_id, scope.parallel_index)

        return navigate(copy.deepcopy(self.context.get_output(state_id)), path)

    def _subflow_field(self, fields: dict[str, Any], path: list[str | int], token: str) -> Any:
        if not path:
            raise ReferenceResolutionError(f"Incomplete reference <{token}>", reference=token)
        name = str(path[0]).lower()
        if name not in fields:
            raise ReferenceResolutionError(f"Unknown field in <{token}>", reference=token)
        return navigate(copy.deepcopy(fields[name]), path[1:])
