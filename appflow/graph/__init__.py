"""Flow graph: validation, context resolution, node handlers and traversal."""

from appflow.graph.conditions import evaluate_condition, loose_equals
from appflow.graph.context import UNDEFINED, ContextResolver, ExecutionContext
from appflow.graph.executor import FlowExecutor
from appflow.graph.node import (
    AgentHandler,
    ConditionHandler,
    ConnectorHandler,
    MemoryHandler,
    MergeHandler,
    NodeHandler,
    NodeResult,
    ParallelHandler,
    StartHandler,
    TransformHandler,
    build_handler_registry,
)
from appflow.graph.validator import (
    FlowValidator,
    FlowViolation,
    ValidationResult,
    parse_flow,
    validate_flow,
)

__all__ = [
    # Context
    "UNDEFINED",
    "ContextResolver",
    "ExecutionContext",
    # Validation
    "FlowValidator",
    "FlowViolation",
    "ValidationResult",
    "parse_flow",
    "validate_flow",
    # Conditions
    "evaluate_condition",
    "loose_equals",
    # Nodes
    "NodeHandler",
    "NodeResult",
    "StartHandler",
    "AgentHandler",
    "ConnectorHandler",
    "ConditionHandler",
    "ParallelHandler",
    "MergeHandler",
    "MemoryHandler",
    "TransformHandler",
    "build_handler_registry",
    # Traversal
    "FlowExecutor",
]
