"""
App Schema - A named flow graph plus its guardrails and running statistics.

An AgentApp owns a flow definition (a list of typed FlowNodes linked by
their ``inputs``/``outputs`` ids) and the guardrails checked before every
execution. Only ``execution_count`` and ``avg_execution_time`` change while
executions run.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeType(StrEnum):
    """Kinds of steps a flow can contain."""

    START = "start"
    AGENT = "agent"  # LLM agent call
    CONNECTOR = "connector"  # External integration call
    CONDITION = "condition"  # Multi-branch routing
    PARALLEL = "parallel"  # Concurrent fan-out with join
    MERGE = "merge"  # Combine earlier node outputs
    MEMORY = "memory"  # Memory store read/write
    TRANSFORM = "transform"  # Format/filter/aggregate data


class ConditionOperator(StrEnum):
    """Operators a Condition may use."""

    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    CONTAINS = "contains"
    EXISTS = "exists"


class Condition(BaseModel):
    """
    A routing rule evaluated by a condition node.

    Example:
        Condition(field="input.score", operator=">", value=3, next_node="agentA")
    """

    field: str = Field(description="Context path, e.g. 'input.score' or 'node.fetch.total'")
    operator: ConditionOperator
    value: Any = None
    next_node: str | None = Field(default=None, description="Node taken when this is true")

    model_config = {"extra": "allow"}


class FlowNode(BaseModel):
    """One typed step in a flow."""

    id: str
    type: NodeType
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)

    # Resilience for I/O nodes; None falls back to EngineConfig
    timeout_seconds: float | None = None
    max_retries: int | None = None

    model_config = {"extra": "allow"}

    @property
    def is_start(self) -> bool:
        return self.type == NodeType.START or not self.inputs

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def successor_ids(self) -> list[str]:
        """Every id this node can hand control to: outputs, then condition targets."""
        targets = list(self.outputs)
        for condition in self.conditions:
            if condition.next_node and condition.next_node not in targets:
                targets.append(condition.next_node)
        return targets


class GuardrailType(StrEnum):
    """Pre-flight checks an app can declare."""

    INPUT_VALIDATION = "input_validation"
    RATE_LIMIT = "rate_limit"
    CONTENT_SAFETY = "content_safety"
    DATA_PRIVACY = "data_privacy"


class Guardrail(BaseModel):
    """A pre-flight policy check."""

    type: GuardrailType
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    model_config = {"extra": "allow"}


def generate_app_id() -> str:
    return f"app_{uuid.uuid4().hex[:12]}"


class AgentApp(BaseModel):
    """
    A reusable app: flow graph, guardrails and execution statistics.

    ``avg_execution_time`` is in milliseconds.
    """

    id: str = Field(default_factory=generate_app_id)
    name: str
    description: str = ""
    flow_definition: list[FlowNode] = Field(default_factory=list)
    guardrails: list[Guardrail] = Field(default_factory=list)

    is_public: bool = False
    is_active: bool = True

    # Running statistics
    execution_count: int = 0
    avg_execution_time: int = 0

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    model_config = {"extra": "allow"}
