"""
Command-line interface for blockflow.

Usage:
    blockflow validate workflow.json [--strict]
    blockflow start workflow.json --kind api
    blockflow paused [--storage ~/.blockflow/storage] [--workflow wf-1]
    blockflow trace 20250101T120000_abc12345 [--storage ...]
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from blockflow.config import get_storage_path
from blockflow.errors import TriggerResolutionError, WorkflowValidationError
from blockflow.graph.serializer import load_workflow
from blockflow.graph.triggers import InvocationKind, resolve_start
from blockflow.observability import configure_logging
from blockflow.runtime.execution_log_store import ExecutionLogStore
from blockflow.storage.pause_store import FilePauseStore


def _load_document(path: str) -> dict:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def cmd_validate(args: argparse.Namespace) -> int:
    """Serialize a workflow file and report the first validation error."""
    try:
        workflow = load_workflow(_load_document(args.file), strict=args.strict)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 1
    except WorkflowValidationError as e:
        print(f"✗ Invalid workflow: {e}", file=sys.stderr)
        if e.block_id:
            print(f"  Block: {e.block_name or e.block_id} ({e.block_type})", file=sys.stderr)
        return 1

    print(f"✓ Valid workflow {workflow.id or '(unnamed)'}")
    print(f"  Blocks: {len(workflow.blocks)}")
    print(f"  Edges: {len(workflow.connections)}")
    print(f"  Loops: {len(workflow.loops)}  Parallels: {len(workflow.parallels)}")
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    """Show which block an invocation would start from."""
    try:
        workflow = load_workflow(_load_document(args.file))
        workflow_input = json.loads(args.input) if args.input else None
        resolved = resolve_start(workflow, args.kind, workflow_input)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (WorkflowValidationError, TriggerResolutionError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    block = workflow.get_block(resolved.block_id)
    print(f"Start block: {block.display_name if block else resolved.block_id} ({resolved.kind})")
    if args.json:
        print(json.dumps(resolved.initial_input, indent=2, default=str))
    return 0


def cmd_paused(args: argparse.Namespace) -> int:
    """List paused executions in a storage directory."""
    store = FilePauseStore(Path(args.storage).expanduser())
    summaries = asyncio.run(store.list_all(args.workflow))
    if not summaries:
        print("No paused executions.")
        return 0

    for summary in summaries:
        print(f"{summary.execution_id}  workflow={summary.workflow_id or '-'}")
        print(f"  Paused at: {summary.paused_at}")
        if summary.paused_block_id:
            print(f"  Wait block: {summary.paused_block_id}")
        print(f"  Pending: {', '.join(summary.pending_blocks) or '-'}")
    return 0


def _print_span(span, depth: int = 0) -> None:
    indent = "  " * depth
    marker = "✗" if span.status == "error" else "✓"
    print(f"{indent}{marker} {span.name} [{span.type}] {span.duration_ms}ms")
    if span.error:
        print(f"{indent}    error: {span.error}")
    for child in span.children:
        _print_span(child, depth + 1)


def cmd_trace(args: argparse.Namespace) -> int:
    """Print a stored run summary with its trace spans."""
    store = ExecutionLogStore(Path(args.storage).expanduser() / "execution_logs")
    summary = asyncio.run(store.load_summary(args.run_id))
    if summary is None:
        print(f"Error: no summary for run {args.run_id}", file=sys.stderr)
        return 1

    if args.json:
        print(summary.model_dump_json(indent=2))
        return 0

    print(f"Run {summary.run_id} ({summary.status})")
    print(f"  Workflow: {summary.workflow_id or '-'}  Execution: {summary.execution_id or '-'}")
    print(f"  Blocks executed: {summary.total_blocks_executed}  Duration: {summary.duration_ms}ms")
    if summary.error:
        print(f"  Error: {summary.error}")
    for span in summary.trace_spans:
        _print_span(span, depth=1)
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register blockflow commands with the main CLI."""
    validate_parser = subparsers.add_parser("validate", help="Validate a workflow JSON file")
    validate_parser.add_argument("file", help="Path to workflow JSON")
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Reject edges to disabled blocks and invalid subflow metadata",
    )
    validate_parser.set_defaults(func=cmd_validate)

    start_parser = subparsers.add_parser("start", help="Resolve the start block of a workflow")
    start_parser.add_argument("file", help="Path to workflow JSON")
    start_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in InvocationKind],
        default=InvocationKind.MANUAL.value,
        help="Invocation kind (default: manual)",
    )
    start_parser.add_argument("--input", "-i", type=str, help="Workflow input as JSON string")
    start_parser.add_argument(
        "--json", action="store_true", help="Also print the initial input as JSON"
    )
    start_parser.set_defaults(func=cmd_start)

    default_storage = str(get_storage_path())

    paused_parser = subparsers.add_parser("paused", help="List paused executions")
    paused_parser.add_argument("--storage", default=default_storage, help="Storage directory")
    paused_parser.add_argument("--workflow", type=str, help="Only this workflow ID")
    paused_parser.set_defaults(func=cmd_paused)

    trace_parser = subparsers.add_parser("trace", help="Show a stored run with its trace spans")
    trace_parser.add_argument("run_id", help="Run ID (directory name under execution_logs/runs)")
    trace_parser.add_argument("--storage", default=default_storage, help="Storage directory")
    trace_parser.add_argument("--json", action="store_true", help="Output the raw summary")
    trace_parser.set_defaults(func=cmd_trace)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="blockflow",
        description="blockflow - validate and inspect block workflows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level")
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format="human")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
