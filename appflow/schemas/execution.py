"""
Execution Schema - The persisted record of one app execution.

Lifecycle is forward-only:

    pending -> running -> completed
                       -> failed
    pending -> failed            (guardrail / validation rejection, cancellation)

``completed_at`` and ``duration`` are written exactly once, on the terminal
transition.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from appflow.errors import InvalidTransitionError


class ExecutionStatus(StrEnum):
    """Status of an app execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


_ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


class AgentAppExecution(BaseModel):
    """
    One execution of an AgentApp.

    ``duration`` is in milliseconds. ``node_errors`` maps the ids of nodes
    that failed (and halted their branch) to their error messages.
    """

    id: str = Field(default_factory=generate_execution_id)
    app_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING

    input: Any = None
    context: dict[str, Any] = Field(default_factory=dict)

    output: Any = None
    error_message: str | None = None

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None
    duration: int | None = None

    execution_path: list[str] = Field(default_factory=list)
    node_errors: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def _transition(self, new_status: ExecutionStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Execution {self.id}: cannot move from '{self.status}' to '{new_status}'"
            )
        self.status = new_status

    def _finish(self, new_status: ExecutionStatus) -> None:
        self._transition(new_status)
        self.completed_at = datetime.now()
        delta = self.completed_at - self.started_at
        self.duration = max(0, int(delta.total_seconds() * 1000))

    def mark_running(self) -> None:
        self._transition(ExecutionStatus.RUNNING)

    def mark_completed(
        self,
        output: Any,
        execution_path: list[str] | None = None,
        node_errors: dict[str, str] | None = None,
    ) -> None:
        self.output = output
        if execution_path is not None:
            self.execution_path = list(execution_path)
        if node_errors is not None:
            self.node_errors = dict(node_errors)
        self._finish(ExecutionStatus.COMPLETED)

    def mark_failed(
        self,
        error_message: str,
        execution_path: list[str] | None = None,
        node_errors: dict[str, str] | None = None,
    ) -> None:
        self.error_message = error_message
        if execution_path is not None:
            self.execution_path = list(execution_path)
        if node_errors is not None:
            self.node_errors = dict(node_errors)
        self._finish(ExecutionStatus.FAILED)
