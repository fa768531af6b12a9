"""
Execution context and reference resolution.

The ExecutionContext is the per-run state threaded through traversal. The
ContextResolver turns paths such as ``input.score``, ``variables.city``,
``node.fetch.items[0].name``, ``geo.country`` or ``user.tier`` into values,
and renders ``{{path}}`` templates.

Resolution never raises: a path that cannot be followed yields UNDEFINED,
and an unresolved placeholder stays in the rendered text as written.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class _Undefined:
    """Sentinel for references that could not be resolved."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


def is_missing(value: Any) -> bool:
    """True for None and UNDEFINED."""
    return value is None or value is UNDEFINED


@dataclass
class ExecutionContext:
    """
    Mutable state for one execution.

    ``node_results`` only ever grows: a node's output is written once, after
    the node succeeds. Contexts are never shared between executions; parallel
    branches work on a ``snapshot()`` and are folded back with ``absorb()``.
    """

    input: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    geo_context: dict[str, Any] | None = None
    user_profile: dict[str, Any] | None = None
    node_results: dict[str, Any] = field(default_factory=dict)
    node_errors: dict[str, str] = field(default_factory=dict)
    current_node: str | None = None
    execution_path: list[str] = field(default_factory=list)

    # Nodes still being expanded above the current one; lets a parallel
    # branch detect a cycle back into its ancestors.
    active_path: list[str] = field(default_factory=list, repr=False)

    # Merge nodes an enclosing parallel node runs after its branches join
    held_joins: set[str] = field(default_factory=set, repr=False)

    def record_result(self, node_id: str, output: Any) -> None:
        if node_id in self.node_results:
            raise ValueError(f"Result for node '{node_id}' already recorded")
        self.node_results[node_id] = output

    def record_error(self, node_id: str, error: str) -> None:
        self.node_errors.setdefault(node_id, error)

    def is_visited(self, node_id: str) -> bool:
        return node_id in self.node_results or node_id in self.node_errors

    def snapshot(self) -> "ExecutionContext":
        """Branch context: reads see everything recorded so far, writes stay local."""
        return ExecutionContext(
            input=self.input,
            variables=dict(self.variables),
            geo_context=self.geo_context,
            user_profile=self.user_profile,
            node_results=dict(self.node_results),
            node_errors=dict(self.node_errors),
            current_node=self.current_node,
            execution_path=[],
            active_path=list(self.active_path),
            held_joins=set(self.held_joins),
        )

    def absorb(self, branch: "ExecutionContext") -> None:
        """Fold a finished branch back in without overwriting existing entries."""
        for node_id, output in branch.node_results.items():
            self.node_results.setdefault(node_id, output)
        for node_id, error in branch.node_errors.items():
            self.node_errors.setdefault(node_id, error)
        self.execution_path.extend(branch.execution_path)


_INDEX_PATTERN = re.compile(r"^([^\[\]]*)((?:\[\d+\])+)$")


def _split_path(path: str) -> list[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``."""
    segments: list[str] = []
    for part in path.strip().split("."):
        match = _INDEX_PATTERN.match(part)
        if match:
            if match.group(1):
                segments.append(match.group(1))
            segments.extend(re.findall(r"\[(\d+)\]", match.group(2)))
        elif part:
            segments.append(part)
    return segments


def _descend(value: Any, segments: list[str]) -> Any:
    current = value
    for segment in segments:
        if isinstance(current, dict):
            if segment not in current:
                return UNDEFINED
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit():
                return UNDEFINED
            index = int(segment)
            if index >= len(current):
                return UNDEFINED
            current = current[index]
        else:
            return UNDEFINED
    return current


def to_text(value: Any) -> str:
    """String form used in templates: strings verbatim, everything else as JSON."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class ContextResolver:
    """
    Resolves references against an ExecutionContext.

    Example:
        resolver = ContextResolver()
        resolver.resolve("node.fetch.total", ctx)          # -> 42
        resolver.render("Hello {{user.name}}", ctx)        # -> "Hello Ada"
        resolver.resolve_value({"q": "{{input.query}}"}, ctx)
    """

    TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

    def resolve(self, path: str, context: ExecutionContext) -> Any:
        segments = _split_path(path or "")
        if not segments:
            return UNDEFINED

        prefix, rest = segments[0], segments[1:]

        if prefix == "input":
            return _descend(context.input, rest)
        if prefix == "variables":
            return _descend(context.variables, rest) if rest else context.variables
        if prefix == "node":
            if not rest:
                return UNDEFINED
            if rest[0] not in context.node_results:
                return UNDEFINED
            return _descend(context.node_results[rest[0]], rest[1:])
        if prefix == "geo":
            return _descend(context.geo_context or {}, rest) if rest else UNDEFINED
        if prefix == "user":
            return _descend(context.user_profile or {}, rest) if rest else UNDEFINED

        # Bare names: variables first, then a dict input
        value = _descend(context.variables, segments)
        if value is UNDEFINED and isinstance(context.input, dict):
            value = _descend(context.input, segments)
        if value is UNDEFINED:
            logger.debug(f"Unresolved reference: {path}")
        return value

    def render(self, template: Any, context: ExecutionContext) -> str:
        """Replace every {{path}} with its string form; unresolved ones stay literal."""
        if template is None:
            return ""
        if not isinstance(template, str):
            return to_text(template)

        def replace(match: re.Match) -> str:
            value = self.resolve(match.group(1), context)
            if value is UNDEFINED:
                return match.group(0)
            return to_text(value)

        return self.TEMPLATE_PATTERN.sub(replace, template)

    def resolve_value(self, value: Any, context: ExecutionContext) -> Any:
        """
        Resolve a parameter value.

        A string that is exactly one placeholder keeps the referenced value's
        type; other strings are rendered; dicts and lists recurse; anything
        else is returned as is.
        """
        if isinstance(value, str):
            match = self.TEMPLATE_PATTERN.fullmatch(value.strip())
            if match:
                resolved = self.resolve(match.group(1), context)
                return value if resolved is UNDEFINED else resolved
            return self.render(value, context)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, context) for item in value]
        return value
