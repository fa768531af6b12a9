"""
Command-line interface for appflow.

Usage:
    appflow validate flows/triage.json
    appflow describe flows/triage.json
    appflow describe flows/triage.json --json

FILE holds either a list of flow nodes or an app object with a
``flow_definition`` key.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from appflow.config import EngineConfig
from appflow.errors import FlowValidationError
from appflow.graph.executor import FlowExecutor
from appflow.graph.validator import FlowValidator, parse_flow
from appflow.observability import configure_logging
from appflow.schemas.app import FlowNode


def _load_flow_file(path: str) -> list[Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("flow_definition", [])
    return data


def _load_nodes(path: str) -> list[FlowNode] | None:
    """Parse a flow file, printing every problem and returning None on failure."""
    try:
        raw = _load_flow_file(path)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return None
    try:
        return parse_flow(raw)
    except FlowValidationError as e:
        print(f"✗ {path}: {len(e.violations)} problem(s)")
        for violation in e.violations:
            print(f"  - {violation}")
        return None


def cmd_validate(args: argparse.Namespace) -> int:
    nodes = _load_nodes(args.file)
    if nodes is None:
        return 1

    result = FlowValidator().validate(nodes)
    if not result.success:
        print(f"✗ {args.file}: {len(result.errors)} problem(s)")
        for error in result.errors:
            print(f"  - {error}")
        return 1

    print(f"✓ {args.file}: {len(nodes)} nodes, valid")
    return 0


def describe_flow(nodes: list[FlowNode]) -> dict[str, Any]:
    start = FlowExecutor.find_start_node(nodes)
    edges = []
    for node in nodes:
        edges.extend({"from": node.id, "to": target} for target in node.outputs)
        edges.extend(
            {"from": node.id, "to": c.next_node, "when": f"{c.field} {c.operator} {c.value}"}
            for c in node.conditions
            if c.next_node
        )

    type_counts: dict[str, int] = {}
    for node in nodes:
        type_counts[node.type.value] = type_counts.get(node.type.value, 0) + 1

    return {
        "start_node": start.id if start else None,
        "node_count": len(nodes),
        "node_types": type_counts,
        "nodes": [{"id": n.id, "type": n.type.value, "name": n.label} for n in nodes],
        "edges": edges,
    }


def cmd_describe(args: argparse.Namespace) -> int:
    nodes = _load_nodes(args.file)
    if nodes is None:
        return 1

    summary = describe_flow(nodes)
    if args.json:
        print(json.dumps(summary, indent=2))
        return 0

    print(f"Flow: {args.file}")
    print(f"Start node: {summary['start_node'] or '(none)'}")
    print(f"Nodes ({summary['node_count']}):")
    for node in summary["nodes"]:
        print(f"  • {node['id']} [{node['type']}] {node['name']}")
    print(f"Edges ({len(summary['edges'])}):")
    for edge in summary["edges"]:
        when = f"  (when {edge['when']})" if "when" in edge else ""
        print(f"  {edge['from']} -> {edge['to']}{when}")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser(
        "validate",
        help="Check a flow definition for structural problems",
    )
    validate_parser.add_argument("file", help="JSON file with a node list or an app object")
    validate_parser.set_defaults(func=cmd_validate)

    describe_parser = subparsers.add_parser(
        "describe",
        help="Summarize a flow's start node, nodes and edges",
    )
    describe_parser.add_argument("file", help="JSON file with a node list or an app object")
    describe_parser.add_argument("--json", action="store_true", help="Output as JSON")
    describe_parser.set_defaults(func=cmd_describe)


def main(argv: list[str] | None = None) -> int:
    config = EngineConfig.load()

    parser = argparse.ArgumentParser(
        prog="appflow",
        description="appflow - Validate and inspect agent app flows",
    )
    parser.add_argument("--log-level", default=config.log_level, help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=config.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
