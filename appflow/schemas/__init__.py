"""Persisted records: apps, flow nodes, guardrails and executions."""

from appflow.schemas.app import (
    AgentApp,
    Condition,
    ConditionOperator,
    FlowNode,
    Guardrail,
    GuardrailType,
    NodeType,
)
from appflow.schemas.execution import AgentAppExecution, ExecutionStatus

__all__ = [
    "AgentApp",
    "AgentAppExecution",
    "Condition",
    "ConditionOperator",
    "ExecutionStatus",
    "FlowNode",
    "Guardrail",
    "GuardrailType",
    "NodeType",
]
