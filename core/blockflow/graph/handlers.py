"""
Block Handlers - The operations behind non-structural blocks.

The engine treats every block kind it does not own as an opaque operation
looked up in a HandlerRegistry. A handler is anything with an
``invoke(inputs, context)`` method, or a plain callable taking
``(inputs)`` or ``(inputs, context)``. ``invoke`` may return:

- a plain value (the block's output)
- an awaitable resolving to a value
- an async iterator of chunks (the block streams; its output becomes
  ``{"content": <joined chunks>}``)
- a StreamingOutput pairing a stream with extra output fields
- a WaitSignal, asking the engine to pause the run (wait-capable handlers only)

Handlers raise to report failure. The engine records the error and either
follows the block's error edges or fails the run.
"""

import copy
import inspect
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from blockflow.errors import BlockExecutionError
from blockflow.graph.block import Block, BlockType
from blockflow.graph.references import IterationScope
from blockflow.graph.safe_eval import evaluate_condition
from blockflow.graph.workflow import SerializedWorkflow

logger = logging.getLogger(__name__)


@dataclass
class BlockContext:
    """Everything a handler may read about the run it executes in."""

    block: Block
    workflow: SerializedWorkflow
    workflow_id: str
    execution_id: str
    scope: IterationScope
    initial_input: dict[str, Any] = field(default_factory=dict)
    environment_variables: dict[str, str] = field(default_factory=dict)
    workflow_variables: dict[str, Any] = field(default_factory=dict)

    # Resolves a reference token (without brackets) against the run state
    resolve: Callable[[str], Any] = lambda token: None


@dataclass
class WaitSignal:
    """Returned by a wait-capable handler to pause the run after this layer."""

    output: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    trigger_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamingOutput:
    """A stream plus output fields known before the stream starts."""

    stream: AsyncIterator[Any]
    output: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class BlockHandler(Protocol):
    """
    Interface all block handlers implement.

    ``wait_capable`` marks handlers allowed to return a WaitSignal.
    ``resolves_own_inputs`` asks the engine to pass raw (unresolved) inputs.
    """

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> Any: ...


class FunctionHandler:
    """Adapts a sync or async function taking (inputs) or (inputs, context)."""

    def __init__(self, func: Callable[..., Any], wait_capable: bool = False):
        self.func = func
        self.wait_capable = wait_capable
        try:
            params = inspect.signature(func).parameters
        except (TypeError, ValueError):
            params = {}
        positional = [
            p
            for p in params.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
        ]
        self._wants_context = len(positional) >= 2 or any(
            p.kind == p.VAR_POSITIONAL for p in positional
        )

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> Any:
        if self._wants_context:
            return self.func(inputs, context)
        return self.func(inputs)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


class TriggerHandler:
    """Trigger and starter blocks emit the run's initial input."""

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> dict[str, Any]:
        return copy.deepcopy(context.initial_input)


class ConditionHandler:
    """
    Evaluates ordered if / else-if / else branches.

    ``inputs["conditions"]`` is a list (or JSON string) of
    ``{"id", "title", "value"}`` entries. The first entry whose expression is
    truthy wins; an entry titled ``else`` (or with an empty expression) is the
    fallback. The chosen id is matched against ``condition-<id>`` edges.
    """

    resolves_own_inputs = True

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> dict[str, Any]:
        conditions = inputs.get("conditions", [])
        if isinstance(conditions, str):
            try:
                conditions = json.loads(conditions)
            except json.JSONDecodeError as e:
                raise BlockExecutionError(
                    f"Invalid conditions format: {e}",
                    block_id=context.block.id,
                    block_name=context.block.name,
                    block_type=context.block.type,
                ) from e

        fallback: dict[str, Any] | None = None
        for condition in conditions:
            expression = str(condition.get("value") or "").strip()
            if condition.get("title") == "else" or not expression:
                fallback = fallback or condition
                continue
            if evaluate_condition(expression, context.resolve):
                return self._selected(condition, True)

        if fallback is not None:
            return self._selected(fallback, False)

        raise BlockExecutionError(
            f"No matching condition found for block {context.block.display_name}",
            block_id=context.block.id,
            block_name=context.block.name,
            block_type=context.block.type,
        )

    @staticmethod
    def _selected(condition: dict[str, Any], result: bool) -> dict[str, Any]:
        return {
            "condition_result": result,
            "selected_condition_id": condition.get("id"),
            "selected_option": condition.get("title", ""),
        }


class RouterHandler:
    """Routes to the block named by ``inputs["selected"]`` (ID or block name)."""

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> dict[str, Any]:
        selected = inputs.get("selected")
        target = context.workflow.find_block(str(selected)) if selected else None
        if target is None:
            raise BlockExecutionError(
                f"Router {context.block.display_name} selected unknown block: {selected!r}",
                block_id=context.block.id,
                block_name=context.block.name,
                block_type=context.block.type,
            )
        return {
            "selected_path": {
                "block_id": target.id,
                "block_name": target.display_name,
                "block_type": target.type,
            }
        }


class WaitHandler:
    """Pauses the run until it is resumed from the pause store."""

    wait_capable = True

    def invoke(self, inputs: dict[str, Any], context: BlockContext) -> WaitSignal:
        description = str(inputs.get("description", ""))
        trigger_config = inputs.get("trigger_config") or {}
        return WaitSignal(
            output={"waiting": True, "description": description},
            description=description,
            trigger_config=dict(trigger_config),
        )


_TRIGGER_TYPES = (
    BlockType.STARTER,
    BlockType.API_TRIGGER,
    BlockType.INPUT_TRIGGER,
    BlockType.MANUAL_TRIGGER,
    BlockType.CHAT_TRIGGER,
    BlockType.SCHEDULE,
    BlockType.WEBHOOK,
)


class HandlerRegistry:
    """
    Maps block IDs and block types to handlers.

    Lookup tries the block ID first, then its type, then the built-ins.
    Blocks in trigger mode fall back to the trigger handler.

    Example:
        registry = HandlerRegistry({"http": fetch_url, "summarize": Summarizer()})
        registry.register("notify", lambda inputs: {"sent": True})
    """

    def __init__(self, handlers: Mapping[str, Any] | None = None):
        self._handlers: dict[str, Any] = {}
        trigger = TriggerHandler()
        for block_type in _TRIGGER_TYPES:
            self._handlers[block_type] = trigger
        self._handlers[BlockType.CONDITION] = ConditionHandler()
        self._handlers[BlockType.ROUTER] = RouterHandler()
        self._handlers[BlockType.WAIT] = WaitHandler()
        for key, handler in (handlers or {}).items():
            self.register(key, handler)

    def register(self, key: str, handler: Any) -> None:
        """Register a handler for a block ID or block type."""
        if not hasattr(handler, "invoke"):
            if not callable(handler):
                raise TypeError(f"Handler for '{key}' must be callable or define invoke()")
            handler = FunctionHandler(handler)
        self._handlers[key] = handler

    def get(self, block: Block) -> Any | None:
        handler = self._handlers.get(block.id) or self._handlers.get(block.type)
        if handler is None and block.trigger_mode:
            handler = self._handlers[BlockType.WEBHOOK]
        return handler

    def __contains__(self, key: str) -> bool:
        return key in self._handlers


async def call_handler(handler: Any, inputs: dict[str, Any], context: BlockContext) -> Any:
    """Invoke a handler and await its result when it is awaitable."""
    result = handler.invoke(inputs, context)
    if inspect.isawaitable(result):
        result = await result
    return result


def is_stream(value: Any) -> bool:
    return isinstance(value, StreamingOutput) or hasattr(value, "__aiter__")
