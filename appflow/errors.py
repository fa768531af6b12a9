"""
Error taxonomy for the flow engine.

- FlowValidationError: bad flow definition, every violation reported at once
- GuardrailViolation: pre-flight rejection before any node runs
- NodeExecutionError: a single node handler failed (captured, never escapes traversal)
- EngineFault: unexpected failure of the traversal itself
"""

from typing import Any


class AppFlowError(Exception):
    """Base class for all engine errors."""

    pass


class FlowValidationError(AppFlowError):
    """Raised when a flow definition fails structural validation."""

    def __init__(self, violations: list[Any]):
        self.violations = list(violations)
        details = "; ".join(str(v) for v in self.violations)
        super().__init__(f"Invalid flow definition: {details}")

    @property
    def errors(self) -> list[str]:
        return [str(v) for v in self.violations]


class GuardrailViolation(AppFlowError):
    """Raised when an enabled guardrail rejects an execution request."""

    def __init__(self, guardrail_type: str, message: str):
        self.guardrail_type = guardrail_type
        self.message = message
        super().__init__(f"Guardrail '{guardrail_type}' violated: {message}")


class NodeExecutionError(AppFlowError):
    """Raised inside a node handler; converted into a failed NodeResult."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class EngineFault(AppFlowError):
    """Unexpected failure escaping the traversal engine."""

    pass


class FlowCycleError(EngineFault):
    """Raised when traversal reaches a node that is still being expanded."""

    def __init__(self, node_id: str, path: list[str]):
        self.node_id = node_id
        self.path = list(path)
        cycle = " -> ".join([*self.path, node_id])
        super().__init__(f"Cycle detected at node '{node_id}': {cycle}")


class AppNotFoundError(AppFlowError):
    """Raised when an app id does not exist in the entity store."""

    def __init__(self, app_id: str):
        self.app_id = app_id
        super().__init__(f"App not found: {app_id}")


class ExecutionNotFoundError(AppFlowError):
    """Raised when an execution id does not exist in the entity store."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidTransitionError(AppFlowError):
    """Raised when an execution record is moved backwards or out of a terminal state."""

    pass
