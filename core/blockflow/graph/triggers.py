"""
Trigger Resolver - Picks the start block and initial input for a run.

Trigger blocks are classified into a closed set of TriggerKinds through an
explicit table; an invocation consults TRIGGER_PRIORITY to decide which kinds
may start it, tier by tier. The first tier with exactly one candidate wins.

Example:
    start = resolve_start(workflow, InvocationKind.API, workflow_input={"city": "Oslo"})
    start.block_id      # "api-trigger-1"
    start.initial_input  # {"city": "Oslo", "input": {"city": "Oslo"}}
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from blockflow.errors import TriggerResolutionError
from blockflow.graph.block import Block, BlockType
from blockflow.graph.workflow import SerializedWorkflow

logger = logging.getLogger(__name__)


class TriggerKind(StrEnum):
    """Closed set of start-capable block categories."""

    API = "api"
    MANUAL = "manual"
    CHAT = "chat"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    STARTER = "starter"  # Legacy single-entry block


class InvocationKind(StrEnum):
    """How a run was requested."""

    CHAT = "chat"
    MANUAL = "manual"
    API = "api"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


BLOCK_TRIGGER_KINDS: dict[str, TriggerKind] = {
    BlockType.API_TRIGGER: TriggerKind.API,
    BlockType.INPUT_TRIGGER: TriggerKind.MANUAL,
    BlockType.MANUAL_TRIGGER: TriggerKind.MANUAL,
    BlockType.CHAT_TRIGGER: TriggerKind.CHAT,
    BlockType.SCHEDULE: TriggerKind.SCHEDULE,
    BlockType.WEBHOOK: TriggerKind.WEBHOOK,
    BlockType.STARTER: TriggerKind.STARTER,
}

# Kinds a workflow may contain at most once
SINGLE_INSTANCE_KINDS = frozenset(
    {TriggerKind.API, TriggerKind.MANUAL, TriggerKind.CHAT, TriggerKind.STARTER}
)

TRIGGER_PRIORITY: dict[InvocationKind, tuple[tuple[TriggerKind, ...], ...]] = {
    InvocationKind.API: ((TriggerKind.API,), (TriggerKind.MANUAL, TriggerKind.STARTER)),
    InvocationKind.MANUAL: ((TriggerKind.API,), (TriggerKind.MANUAL, TriggerKind.STARTER)),
    InvocationKind.CHAT: ((TriggerKind.CHAT,), (TriggerKind.STARTER,)),
    InvocationKind.SCHEDULED: ((TriggerKind.SCHEDULE,), (TriggerKind.STARTER,)),
    InvocationKind.WEBHOOK: ((TriggerKind.WEBHOOK,),),
}

# Legacy starters serve only the invocations their "start_workflow" input selects
STARTER_MODES: dict[InvocationKind, frozenset[str | None]] = {
    InvocationKind.API: frozenset({None, "manual"}),
    InvocationKind.MANUAL: frozenset({None, "manual"}),
    InvocationKind.CHAT: frozenset({"chat"}),
    InvocationKind.SCHEDULED: frozenset({"schedule"}),
}

TRIGGER_LABELS: dict[TriggerKind, str] = {
    TriggerKind.API: "API Trigger",
    TriggerKind.MANUAL: "Input Trigger",
    TriggerKind.CHAT: "Chat Trigger",
    TriggerKind.SCHEDULE: "Schedule",
    TriggerKind.WEBHOOK: "Webhook",
    TriggerKind.STARTER: "Start",
}

INVOCATION_LABELS: dict[InvocationKind, str] = {
    InvocationKind.CHAT: "Chat",
    InvocationKind.MANUAL: "Manual",
    InvocationKind.API: "API",
    InvocationKind.SCHEDULED: "Scheduled",
    InvocationKind.WEBHOOK: "Webhook",
}


def trigger_kind(block: Block) -> TriggerKind | None:
    """Classify a block, or None if it cannot start a run."""
    kind = BLOCK_TRIGGER_KINDS.get(block.type)
    if kind is None and block.trigger_mode:
        return TriggerKind.WEBHOOK
    return kind


def starter_serves(block: Block, invocation_kind: InvocationKind) -> bool:
    """Whether a legacy starter is configured for this kind of invocation."""
    mode = block.inputs.get("start_workflow")
    return mode in STARTER_MODES.get(invocation_kind, frozenset())


@dataclass(frozen=True)
class ResolvedStart:
    """The chosen start block and the input it will emit."""

    block_id: str
    kind: TriggerKind
    initial_input: dict[str, Any] = field(default_factory=dict)


def resolve_start(
    workflow: SerializedWorkflow,
    invocation_kind: InvocationKind | str,
    workflow_input: Any = None,
    start_block_id: str | None = None,
) -> ResolvedStart:
    """
    Resolve the unique start block for an invocation.

    Args:
        workflow: Serialized workflow
        invocation_kind: How the run was requested
        workflow_input: Raw input supplied by the caller
        start_block_id: Explicit start block (webhook/schedule deliveries)

    Returns:
        ResolvedStart with the block ID, its trigger kind and initial input

    Raises:
        TriggerResolutionError: if no unique start block exists
    """
    invocation_kind = InvocationKind(invocation_kind)

    if start_block_id is not None:
        block = workflow.get_block(start_block_id)
        if block is None or not block.enabled:
            raise TriggerResolutionError(
                f"Start block {start_block_id} not found or disabled", block_id=start_block_id
            )
        kind = trigger_kind(block) or TriggerKind.MANUAL
    else:
        block, kind = _select_by_priority(workflow, invocation_kind)

    _validate_start_block(workflow, block, kind)
    initial_input = build_initial_input(block, kind, workflow_input)

    logger.info(f"🚩 Start block resolved: {block.display_name} ({kind}) for {invocation_kind}")
    return ResolvedStart(block_id=block.id, kind=kind, initial_input=initial_input)


def _select_by_priority(
    workflow: SerializedWorkflow, invocation_kind: InvocationKind
) -> tuple[Block, TriggerKind]:
    candidates: dict[TriggerKind, list[Block]] = {}
    for block in workflow.enabled_blocks():
        kind = trigger_kind(block)
        if kind is None:
            continue
        if kind == TriggerKind.STARTER and not starter_serves(block, invocation_kind):
            continue
        candidates.setdefault(kind, []).append(block)

    tiers = TRIGGER_PRIORITY[invocation_kind]
    for tier in tiers:
        found = [(b, kind) for kind in tier for b in candidates.get(kind, [])]
        if len(found) == 1:
            return found[0]
        if len(found) > 1:
            label = " / ".join(TRIGGER_LABELS[k] for k in tier)
            raise TriggerResolutionError(
                f"Multiple {label} blocks found. Keep only one.", block_id=found[1][0].id
            )

    label = TRIGGER_LABELS[tiers[0][0]]
    article = "an" if label[0] in "AEIOU" else "a"
    raise TriggerResolutionError(
        f"{INVOCATION_LABELS[invocation_kind]} execution requires {article} {label} block"
    )


def _validate_start_block(workflow: SerializedWorkflow, block: Block, kind: TriggerKind) -> None:
    outgoing = workflow.get_outgoing_edges(block.id)

    if kind == TriggerKind.STARTER:
        if not block.enabled:
            raise TriggerResolutionError("Start block is disabled", block_id=block.id)
        if workflow.get_incoming_edges(block.id):
            raise TriggerResolutionError(
                "Start block cannot have incoming connections", block_id=block.id
            )

    if not outgoing:
        raise TriggerResolutionError(
            f"{block.display_name} must be connected to at least one block", block_id=block.id
        )


def build_initial_input(block: Block, kind: TriggerKind, workflow_input: Any) -> dict[str, Any]:
    """
    Shape caller input into the start block's output.

    Declared ``input_format`` fields are coerced to their types; API and
    manual triggers fall back to the declared field values as test input and
    mirror object input under ``input``; chat input becomes
    ``{input, conversation_id, files}``.
    """
    workflow_input = copy.deepcopy(workflow_input)
    fields = block.inputs.get("input_format") or []

    if kind == TriggerKind.CHAT:
        if not isinstance(workflow_input, dict):
            workflow_input = {"input": workflow_input if workflow_input is not None else ""}
        output = {
            "input": workflow_input.get("input", ""),
            "conversation_id": workflow_input.get("conversation_id"),
            "files": workflow_input.get("files", []),
        }
        for f in fields:
            name = f.get("name")
            if name and name not in output:
                raw = workflow_input.get(name, f.get("value"))
                output[name] = coerce_value(raw, f.get("type", "string"))
        return output

    if workflow_input is None:
        # Declared values double as test input for manual/API runs
        return {
            f["name"]: coerce_value(f.get("value"), f.get("type", "string"))
            for f in fields
            if f.get("name")
        }

    if not isinstance(workflow_input, dict):
        return {"input": workflow_input}

    if fields:
        output = {}
        for f in fields:
            name = f.get("name")
            if not name:
                continue
            raw = workflow_input.get(name, f.get("value"))
            output[name] = coerce_value(raw, f.get("type", "string"))
    else:
        output = dict(workflow_input)

    if kind in (TriggerKind.API, TriggerKind.MANUAL, TriggerKind.STARTER):
        output["input"] = dict(workflow_input)
    return output


def coerce_value(value: Any, field_type: str) -> Any:
    """Coerce a raw input value to a declared field type, leaving unparseable values as-is."""
    if value is None:
        return None

    if field_type == "string":
        return value if isinstance(value, str) else json.dumps(value)

    if field_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int | float):
            return value
        try:
            text = str(value).strip()
            return int(text) if text.lstrip("-").isdigit() else float(text)
        except ValueError:
            logger.warning(f"Could not coerce {value!r} to number")
            return value

    if field_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)

    if field_type in ("object", "array"):
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Could not parse {field_type} input: {value[:50]}")
                return value
        return value

    return value
