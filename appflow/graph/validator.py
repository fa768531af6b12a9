"""Structural validation of flow definitions.

Every check runs on every call, so one pass reports all the problems in a
flow rather than the first one found.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from appflow.errors import FlowValidationError
from appflow.schemas.app import FlowNode

logger = logging.getLogger(__name__)


@dataclass
class FlowViolation:
    """One problem in a flow, tied to the node that causes it."""

    node_id: str | None
    message: str

    def __str__(self) -> str:
        if self.node_id is None:
            return self.message
        return f"Node '{self.node_id}': {self.message}"


@dataclass
class ValidationResult:
    """Result of validating a flow."""

    success: bool
    errors: list[str]
    violations: list[FlowViolation] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""

    def raise_for_errors(self) -> None:
        if not self.success:
            raise FlowValidationError(self.violations)


def parse_flow(raw: list[Any]) -> list[FlowNode]:
    """
    Turn a list of node dicts into FlowNodes.

    Raises FlowValidationError listing every malformed node; nodes that are
    already FlowNode instances pass through.
    """
    if not isinstance(raw, list):
        raise FlowValidationError([FlowViolation(None, "Flow definition must be a list of nodes")])

    nodes: list[FlowNode] = []
    violations: list[FlowViolation] = []
    for index, item in enumerate(raw):
        if isinstance(item, FlowNode):
            nodes.append(item)
            continue
        node_id = item.get("id") if isinstance(item, dict) else None
        try:
            nodes.append(FlowNode.model_validate(item))
        except ValidationError as e:
            for err in e.errors():
                location = ".".join(str(part) for part in err["loc"]) or "node"
                violations.append(
                    FlowViolation(
                        node_id if isinstance(node_id, str) else None,
                        f"node #{index} field '{location}': {err['msg']}",
                    )
                )

    if violations:
        raise FlowValidationError(violations)
    return nodes


class FlowValidator:
    """
    Checks a flow for the structural problems that would break traversal.

    Example:
        result = FlowValidator().validate(app.flow_definition)
        if not result.success:
            print(result.error)
    """

    def validate(self, flow: list[FlowNode]) -> ValidationResult:
        violations: list[FlowViolation] = []

        if not flow:
            violations.append(FlowViolation(None, "Flow must contain at least one node"))
            return self._result(violations)

        # Start node
        if not any(node.is_start for node in flow):
            violations.append(
                FlowViolation(
                    None,
                    "Flow must have a start node (type 'start' or no inputs)",
                )
            )

        # Unique ids
        seen: set[str] = set()
        reported: set[str] = set()
        for node in flow:
            if node.id in seen and node.id not in reported:
                violations.append(FlowViolation(node.id, "duplicate node id"))
                reported.add(node.id)
            seen.add(node.id)

        # References
        for node in flow:
            for target in node.outputs:
                if target not in seen:
                    violations.append(
                        FlowViolation(node.id, f"output references unknown node '{target}'")
                    )
            for source in node.inputs:
                if source not in seen:
                    violations.append(
                        FlowViolation(node.id, f"input references unknown node '{source}'")
                    )
            for condition in node.conditions:
                if condition.next_node and condition.next_node not in seen:
                    violations.append(
                        FlowViolation(
                            node.id,
                            f"condition on '{condition.field}' routes to unknown node "
                            f"'{condition.next_node}'",
                        )
                    )

        violations.extend(self._find_cycles(flow, seen))
        return self._result(violations)

    def _result(self, violations: list[FlowViolation]) -> ValidationResult:
        if violations:
            logger.debug(f"Flow validation found {len(violations)} violation(s)")
        return ValidationResult(
            success=not violations,
            errors=[str(v) for v in violations],
            violations=violations,
        )

    def _find_cycles(self, flow: list[FlowNode], known: set[str]) -> list[FlowViolation]:
        """Iterative three-colour DFS over outputs and condition targets."""
        adjacency: dict[str, list[str]] = {}
        for node in flow:
            if node.id in adjacency:
                continue
            adjacency[node.id] = [t for t in node.successor_ids if t in known]

        WHITE, GREY, BLACK = 0, 1, 2
        colour = dict.fromkeys(adjacency, WHITE)
        violations: list[FlowViolation] = []
        reported: set[tuple[str, str]] = set()

        for root in adjacency:
            if colour[root] != WHITE:
                continue
            colour[root] = GREY
            stack: list[tuple[str, int]] = [(root, 0)]
            while stack:
                node_id, index = stack[-1]
                children = adjacency[node_id]
                if index >= len(children):
                    colour[node_id] = BLACK
                    stack.pop()
                    continue
                stack[-1] = (node_id, index + 1)
                child = children[index]
                if colour[child] == GREY:
                    if (node_id, child) not in reported:
                        reported.add((node_id, child))
                        violations.append(
                            FlowViolation(node_id, f"edge to '{child}' creates a cycle")
                        )
                elif colour[child] == WHITE:
                    colour[child] = GREY
                    stack.append((child, 0))

        return violations


def validate_flow(flow: list[FlowNode] | list[dict[str, Any]]) -> list[FlowNode]:
    """Parse (if needed) and validate a flow, raising FlowValidationError on any problem."""
    nodes = parse_flow(list(flow))
    FlowValidator().validate(nodes).raise_for_errors()
    return nodes
