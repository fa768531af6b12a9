"""
appflow - Flow orchestration engine for agent apps.

An app is a directed graph of typed nodes (agent calls, connector calls,
conditions, parallel fan-out, merges, memory and transforms). The engine
validates the graph, enforces guardrails, traverses it against an input and
records every execution with running statistics.
"""

from appflow.config import EngineConfig
from appflow.errors import (
    AppFlowError,
    AppNotFoundError,
    EngineFault,
    ExecutionNotFoundError,
    FlowCycleError,
    FlowValidationError,
    GuardrailViolation,
    InvalidTransitionError,
    NodeExecutionError,
)
from appflow.graph import (
    UNDEFINED,
    ContextResolver,
    ExecutionContext,
    FlowExecutor,
    FlowValidator,
    NodeResult,
    ValidationResult,
)
from appflow.runtime import AppRuntime, EventBus, EventType, FlowEvent, GuardrailEnforcer
from appflow.schemas import (
    AgentApp,
    AgentAppExecution,
    Condition,
    ConditionOperator,
    ExecutionStatus,
    FlowNode,
    Guardrail,
    GuardrailType,
    NodeType,
)
from appflow.storage import EntityStore, FileEntityStore, InMemoryEntityStore

__version__ = "0.1.0"

__all__ = [
    # Schemas
    "AgentApp",
    "AgentAppExecution",
    "Condition",
    "ConditionOperator",
    "ExecutionStatus",
    "FlowNode",
    "Guardrail",
    "GuardrailType",
    "NodeType",
    # Engine
    "UNDEFINED",
    "ContextResolver",
    "ExecutionContext",
    "FlowExecutor",
    "FlowValidator",
    "NodeResult",
    "ValidationResult",
    # Runtime
    "AppRuntime",
    "EventBus",
    "EventType",
    "FlowEvent",
    "GuardrailEnforcer",
    "EngineConfig",
    # Storage
    "EntityStore",
    "FileEntityStore",
    "InMemoryEntityStore",
    # Errors
    "AppFlowError",
    "AppNotFoundError",
    "EngineFault",
    "ExecutionNotFoundError",
    "FlowCycleError",
    "FlowValidationError",
    "GuardrailViolation",
    "InvalidTransitionError",
    "NodeExecutionError",
]
