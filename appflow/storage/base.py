"""Entity store interface."""

from typing import Protocol, runtime_checkable

from appflow.schemas.app import AgentApp
from appflow.schemas.execution import AgentAppExecution


@runtime_checkable
class EntityStore(Protocol):
    """
    Async CRUD for apps and executions.

    Implementations hand out copies: mutating a returned record never
    changes what is stored until it is saved again.
    """

    async def save_app(self, app: AgentApp) -> None: ...

    async def get_app(self, app_id: str) -> AgentApp | None: ...

    async def list_apps(self) -> list[AgentApp]: ...

    async def delete_app(self, app_id: str) -> bool: ...

    async def save_execution(self, execution: AgentAppExecution) -> None: ...

    async def get_execution(self, execution_id: str) -> AgentAppExecution | None: ...

    async def list_executions(
        self,
        app_id: str | None = None,
        limit: int | None = None,
    ) -> list[AgentAppExecution]:
        """Executions newest first, optionally for one app."""
        ...
