"""
Command-line interface for flowforge.

Usage:
    flowforge run workflow.json --input '{"city": "Oslo"}'
    flowforge run workflow.json --checkpoint-dir ./checkpoints --log-level DEBUG
    flowforge validate workflow.json

Workflow file format:
    {
        "id": "daily-report",
        "nodes": [{"id": "fetch", "type": "tool", "config": {"url": "https://..."}}],
        "edges": [{"source": "fetch", "target": "decide"}],
        "config": {"checkpoint_interval": 2},
        "variables": {"city": "Oslo"}
    }
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from flowforge.config import RuntimeConfig, get_default_execution_config
from flowforge.errors import GraphValidationError
from flowforge.executors import register_default_executors
from flowforge.graph.edge import GraphSpec
from flowforge.graph.execution_config import ExecutionConfig
from flowforge.graph.executor import ExecutionResult
from flowforge.observability import configure_logging
from flowforge.runtime.executor_registry import ExecutorRegistry
from flowforge.runtime.workflow_runtime import WorkflowRuntime


class WorkflowFileError(Exception):
    """Workflow file is missing, unreadable or malformed."""


def load_workflow_file(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise WorkflowFileError(f"Workflow file not found: {path}")
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise WorkflowFileError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise WorkflowFileError(f"{path} must contain a JSON object")
    return data


def build_graph(data: dict[str, Any]) -> GraphSpec:
    """GraphSpec from the workflow file's id/name/nodes/edges."""
    return GraphSpec.model_validate(
        {
            "id": data.get("id", "workflow"),
            "name": data.get("name", ""),
            "description": data.get("description", ""),
            "nodes": data.get("nodes", []),
            "edges": data.get("edges", []),
        }
    )


def build_execution_config(data: dict[str, Any]) -> ExecutionConfig:
    """User defaults from configuration.json with the workflow's "config" on top."""
    base = get_default_execution_config().model_dump()
    return ExecutionConfig.model_validate({**base, **data.get("config", {})})


async def _run_workflow(
    graph: GraphSpec,
    variables: dict[str, Any],
    config: ExecutionConfig,
    runtime_config: RuntimeConfig,
) -> ExecutionResult | None:
    async with httpx.AsyncClient() as client:
        registry = register_default_executors(ExecutorRegistry(), client=client)
        runtime = WorkflowRuntime(registry=registry, config=runtime_config)
        try:
            return await runtime.run(graph, variables, config)
        finally:
            await runtime.shutdown()


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow file and print the result as JSON."""
    runtime_config = RuntimeConfig()
    if args.checkpoint_dir:
        runtime_config.checkpoint_dir = Path(args.checkpoint_dir)
    configure_logging(level=args.log_level or runtime_config.log_level)

    try:
        data = load_workflow_file(args.workflow)
        graph = build_graph(data)
        config = build_execution_config(data)
        variables = dict(data.get("variables", {}))
        if args.input:
            extra = json.loads(args.input)
            if not isinstance(extra, dict):
                raise WorkflowFileError("--input must be a JSON object")
            variables.update(extra)
    except json.JSONDecodeError as e:
        print(f"Error: invalid --input JSON: {e}", file=sys.stderr)
        return 1
    except (WorkflowFileError, GraphValidationError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = asyncio.run(_run_workflow(graph, variables, config, runtime_config))
    if result is None:
        print("Error: workflow did not finish", file=sys.stderr)
        return 1

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Check a workflow file for structural problems."""
    try:
        data = load_workflow_file(args.workflow)
        graph = build_graph(data)
        build_execution_config(data)
    except WorkflowFileError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except GraphValidationError as e:
        print("Workflow is invalid:")
        for error in e.errors:
            print(f"  • {error}")
        return 1
    except ValidationError as e:
        print(f"Workflow is invalid:\n{e}")
        return 1

    problems = graph.validate()
    if problems:
        print("Workflow is invalid:")
        for problem in problems:
            print(f"  • {problem}")
        return 1

    registry = register_default_executors(ExecutorRegistry())
    unknown = sorted({n.type for n in graph.nodes if not registry.has(n.type)})

    print(f"✓ {graph.id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    if unknown:
        print(f"  Note: types without a built-in executor: {', '.join(unknown)}")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="flowforge",
        description="flowforge - Run dependency-ordered workflow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a workflow file")
    run_parser.add_argument("workflow", help="Path to workflow JSON")
    run_parser.add_argument("--input", help="JSON object merged over the file's variables")
    run_parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default from configuration.json, else INFO)",
    )
    run_parser.add_argument("--checkpoint-dir", help="Persist checkpoints under this directory")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow file")
    validate_parser.add_argument("workflow", help="Path to workflow JSON")
    validate_parser.set_defaults(func=cmd_validate)

    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
