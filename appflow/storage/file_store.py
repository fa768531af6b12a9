"""
File Entity Store - JSON files on disk.

Layout:
  {base_path}/
    ├── apps/{app_id}.json
    └── executions/{execution_id}.json

Writes go through a temp file + rename so a crash never leaves a
half-written record. Blocking file I/O runs in a worker thread.
"""

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from appflow.schemas.app import AgentApp
from appflow.schemas.execution import AgentAppExecution
from appflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileEntityStore:
    """Stores each app and execution as its own JSON file."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.apps_dir = self.base_path / "apps"
        self.executions_dir = self.base_path / "executions"

    def _app_path(self, app_id: str) -> Path:
        return self.apps_dir / f"{app_id}.json"

    def _execution_path(self, execution_id: str) -> Path:
        return self.executions_dir / f"{execution_id}.json"

    # === APPS ===

    async def save_app(self, app: AgentApp) -> None:
        def _write():
            with atomic_write(self._app_path(app.id)) as f:
                f.write(app.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Saved app {app.id}")

    async def get_app(self, app_id: str) -> AgentApp | None:
        def _read():
            path = self._app_path(app_id)
            if not path.exists():
                return None
            return AgentApp.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_apps(self) -> list[AgentApp]:
        def _scan():
            apps = []
            if not self.apps_dir.exists():
                return apps
            for path in sorted(self.apps_dir.glob("*.json")):
                try:
                    apps.append(AgentApp.model_validate_json(path.read_text(encoding="utf-8")))
                except (ValidationError, OSError) as e:
                    logger.warning(f"Skipping unreadable app file {path.name}: {e}")
            return apps

        return await asyncio.to_thread(_scan)

    async def delete_app(self, app_id: str) -> bool:
        def _delete():
            path = self._app_path(app_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(_delete)

    # === EXECUTIONS ===

    async def save_execution(self, execution: AgentAppExecution) -> None:
        def _write():
            with atomic_write(self._execution_path(execution.id)) as f:
                f.write(execution.model_dump_json(indent=2))

        await asyncio.to_thread(_write)

    async def get_execution(self, execution_id: str) -> AgentAppExecution | None:
        def _read():
            path = self._execution_path(execution_id)
            if not path.exists():
                return None
            return AgentAppExecution.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_executions(
        self,
        app_id: str | None = None,
        limit: int | None = None,
    ) -> list[AgentAppExecution]:
        def _scan():
            executions = []
            if not self.executions_dir.exists():
                return executions
            for path in self.executions_dir.glob("*.json"):
                try:
                    execution = AgentAppExecution.model_validate_json(
                        path.read_text(encoding="utf-8")
                    )
                except (ValidationError, OSError) as e:
                    logger.warning(f"Skipping unreadable execution file {path.name}: {e}")
                    continue
                if app_id is None or execution.app_id == app_id:
                    executions.append(execution)
            executions.sort(key=lambda e: e.started_at, reverse=True)
            return executions[:limit] if limit is not None else executions

        return await asyncio.to_thread(_scan)
