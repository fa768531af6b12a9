"""In-memory entity store."""

from appflow.schemas.app import AgentApp
from appflow.schemas.execution import AgentAppExecution


class InMemoryEntityStore:
    """Dict-backed store. Records are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._apps: dict[str, AgentApp] = {}
        self._executions: dict[str, AgentAppExecution] = {}

    async def save_app(self, app: AgentApp) -> None:
        self._apps[app.id] = app.model_copy(deep=True)

    async def get_app(self, app_id: str) -> AgentApp | None:
        app = self._apps.get(app_id)
        return app.model_copy(deep=True) if app else None

    async def list_apps(self) -> list[AgentApp]:
        return [app.model_copy(deep=True) for app in self._apps.values()]

    async def delete_app(self, app_id: str) -> bool:
        return self._apps.pop(app_id, None) is not None

    async def save_execution(self, execution: AgentAppExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> AgentAppExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        app_id: str | None = None,
        limit: int | None = None,
    ) -> list[AgentAppExecution]:
        executions = [
            e for e in self._executions.values() if app_id is None or e.app_id == app_id
        ]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        if limit is not None:
            executions = executions[:limit]
        return [e.model_copy(deep=True) for e in executions]
