"""
App Runtime - Manages apps and their concurrent executions.

The runtime is the engine's inbound surface:

    runtime = AppRuntime(store=InMemoryEntityStore(), agent_executor=agents)
    await runtime.start()

    app = await runtime.create_app(name="Triage", flow_definition=nodes)
    execution = await runtime.execute_app(app.id, {"score": 5})   # returns at once
    execution = await runtime.wait_for_completion(execution.id)

Each execution runs in its own asyncio task. The record it returns starts
``pending``; the task moves it to ``running`` and then to ``completed`` or
``failed``, after which the app's statistics are updated.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from appflow.config import EngineConfig
from appflow.errors import (
    AppFlowError,
    AppNotFoundError,
    ExecutionNotFoundError,
    GuardrailViolation,
)
from appflow.graph.context import ExecutionContext
from appflow.graph.executor import FlowExecutor
from appflow.graph.validator import FlowValidator, validate_flow
from appflow.observability import set_trace_context
from appflow.runtime.event_bus import EventBus
from appflow.runtime.guardrails import GuardrailEnforcer
from appflow.runtime.statistics import StatisticsAggregator
from appflow.schemas.app import AgentApp, FlowNode, Guardrail
from appflow.schemas.execution import AgentAppExecution, ExecutionStatus
from appflow.services.collaborators import AgentExecutor, ConnectorExecutor, MemoryStore
from appflow.storage.base import EntityStore
from appflow.storage.memory_store import InMemoryEntityStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution cancelled"

# Fields update_app may change
UPDATABLE_FIELDS = frozenset(
    {"name", "description", "flow_definition", "guardrails", "is_public", "is_active"}
)


def _parse_guardrails(raw: list[Any] | None) -> list[Guardrail]:
    guardrails = []
    for index, item in enumerate(raw or []):
        if isinstance(item, Guardrail):
            guardrails.append(item)
            continue
        try:
            guardrails.append(Guardrail.model_validate(item))
        except ValidationError as e:
            raise AppFlowError(f"Invalid guardrail #{index}: {e.errors()[0]['msg']}") from e
    return guardrails


class AppRuntime:
    """
    Creates, stores and executes apps.

    Concurrency:
    - One task per execution, tracked by execution id
    - At most ``max_concurrent_executions`` traversals in flight
    - Statistics updates serialized per app
    """

    def __init__(
        self,
        store: EntityStore | None = None,
        agent_executor: AgentExecutor | None = None,
        connector_executor: ConnectorExecutor | None = None,
        memory_store: MemoryStore | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        guardrail_enforcer: GuardrailEnforcer | None = None,
    ):
        self.config = config or EngineConfig()
        self._store: EntityStore = store if store is not None else InMemoryEntityStore()
        self._event_bus = event_bus
        self._validator = FlowValidator()
        self._guardrails = guardrail_enforcer or GuardrailEnforcer()
        self._statistics = StatisticsAggregator(self._store, event_bus=event_bus)
        self._executor = FlowExecutor(
            agent_executor=agent_executor,
            connector_executor=connector_executor,
            memory_store=memory_store,
            config=self.config,
            event_bus=event_bus,
        )

        # Execution tracking
        self._execution_tasks: dict[str, asyncio.Task] = {}
        self._execution_apps: dict[str, str] = {}
        self._completion_events: dict[str, asyncio.Event] = {}
        self._executions: dict[str, AgentAppExecution] = {}

        # Concurrency control
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_executions))
        self._lock = asyncio.Lock()

        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def event_bus(self) -> EventBus | None:
        return self._event_bus

    async def start(self) -> None:
        """Start accepting executions."""
        if self._running:
            return
        self._running = True
        logger.info("AppRuntime started")

    async def stop(self) -> None:
        """Stop the runtime and cancel active executions."""
        if not self._running:
            return
        self._running = False

        for execution_id, task in list(self._execution_tasks.items()):
            if not task.done():
                await self._cancel_task(execution_id, task)

        self._execution_tasks.clear()
        self._execution_apps.clear()
        self._executions.clear()
        logger.info("AppRuntime stopped")

    # === APP MANAGEMENT ===

    async def create_app(
        self,
        name: str,
        flow_definition: list[FlowNode] | list[dict[str, Any]],
        description: str = "",
        guardrails: list[Guardrail] | list[dict[str, Any]] | None = None,
        is_public: bool = False,
        is_active: bool = True,
    ) -> AgentApp:
        """
        Validate and store a new app.

        Raises:
            FlowValidationError: listing every problem in the flow definition
        """
        nodes = validate_flow(flow_definition)
        app = AgentApp(
            name=name,
            description=description,
            flow_definition=nodes,
            guardrails=_parse_guardrails(guardrails),
            is_public=is_public,
            is_active=is_active,
        )
        await self._store.save_app(app)
        logger.info(f"Created app {app.id} ('{app.name}', {len(nodes)} nodes)")
        return app

    async def update_app(self, app_id: str, **updates: Any) -> AgentApp:
        """
        Change an app's definition or settings.

        The flow is re-validated only when ``flow_definition`` is given.
        Statistics and identity fields cannot be changed here.
        """
        rejected = set(updates) - UPDATABLE_FIELDS
        if rejected:
            raise AppFlowError(f"Fields cannot be updated: {', '.join(sorted(rejected))}")

        if "flow_definition" in updates:
            updates["flow_definition"] = validate_flow(updates["flow_definition"])
        if "guardrails" in updates:
            updates["guardrails"] = _parse_guardrails(updates["guardrails"])

        async with self._statistics.lock(app_id):
            app = await self._store.get_app(app_id)
            if app is None:
                raise AppNotFoundError(app_id)
            for key, value in updates.items():
                setattr(app, key, value)
            app.updated_at = datetime.now()
            await self._store.save_app(app)

        logger.info(f"Updated app {app_id}: {', '.join(sorted(updates)) or 'no changes'}")
        return app

    async def get_app(self, app_id: str) -> AgentApp:
        app = await self._store.get_app(app_id)
        if app is None:
            raise AppNotFoundError(app_id)
        return app

    async def list_apps(self, public_only: bool = False) -> list[AgentApp]:
        """Active apps, newest first."""
        apps = [
            app
            for app in await self._store.list_apps()
            if app.is_active and (app.is_public or not public_only)
        ]
        apps.sort(key=lambda a: a.created_at, reverse=True)
        return apps

    async def delete_app(self, app_id: str) -> None:
        """Cancel the app's running executions, then delete it."""
        if await self._store.get_app(app_id) is None:
            raise AppNotFoundError(app_id)

        running = [
            exec_id for exec_id, owner in list(self._execution_apps.items()) if owner == app_id
        ]
        for exec_id in running:
            await self.cancel_execution(exec_id)

        await self._store.delete_app(app_id)
        self._statistics.forget(app_id)
        logger.info(f"Deleted app {app_id} (cancelled {len(running)} running executions)")

    # === EXECUTION ===

    async def execute_app(
        self,
        app_id: str,
        input_data: Any,
        context: dict[str, Any] | None = None,
        caller_id: str | None = None,
    ) -> AgentAppExecution:
        """
        Start an execution and return its record immediately.

        ``context`` may carry ``variables``, ``geo_context`` and
        ``user_profile``. A guardrail rejection or an invalid stored flow
        returns a record that is already ``failed``; nothing runs.
        """
        if not self._running:
            raise RuntimeError("AppRuntime is not running")

        app = await self.get_app(app_id)
        if not app.is_active:
            raise AppFlowError(f"App {app_id} is not active")

        context = dict(context or {})
        execution = AgentAppExecution(app_id=app.id, input=input_data, context=context)

        validation = self._validator.validate(app.flow_definition)
        if not validation.success:
            message = f"Invalid flow definition: {validation.error}"
            logger.error(f"App {app_id} has an invalid stored flow: {validation.error}")
            return await self._reject(execution, message)

        try:
            self._guardrails.apply(
                app.guardrails,
                input_data,
                geo_context=context.get("geo_context"),
                user_profile=context.get("user_profile"),
                app_id=app.id,
                caller_id=caller_id,
            )
        except GuardrailViolation as e:
            logger.warning(f"Execution {execution.id} rejected: {e}")
            if self._event_bus:
                await self._event_bus.emit_guardrail_violation(
                    app_id=app.id,
                    execution_id=execution.id,
                    guardrail_type=str(e.guardrail_type),
                    message=e.message,
                )
            return await self._reject(execution, str(e))

        exec_ctx = ExecutionContext(
            input=input_data,
            variables=dict(context.get("variables") or {}),
            geo_context=context.get("geo_context"),
            user_profile=context.get("user_profile"),
        )

        await self._store.save_execution(execution)
        async with self._lock:
            self._completion_events[execution.id] = asyncio.Event()
            self._execution_apps[execution.id] = app.id
            self._executions[execution.id] = execution

        task = asyncio.create_task(self._run_execution(execution, exec_ctx, app))
        self._execution_tasks[execution.id] = task

        logger.debug(f"Queued execution {execution.id} for app {app.id}")
        return execution.model_copy(deep=True)

    async def _reject(self, execution: AgentAppExecution, message: str) -> AgentAppExecution:
        execution.mark_failed(message)
        await self._store.save_execution(execution)
        if self._event_bus:
            await self._event_bus.emit_execution_failed(
                app_id=execution.app_id,
                execution_id=execution.id,
                error=message,
            )
        return execution

    async def _run_execution(
        self,
        execution: AgentAppExecution,
        ctx: ExecutionContext,
        app: AgentApp,
    ) -> None:
        """Run one execution to a terminal state."""
        set_trace_context(execution_id=execution.id, app_id=app.id)
        traversed = False

        try:
            async with self._semaphore:
                execution.mark_running()
                traversed = True
                await self._store.save_execution(execution)
                if self._event_bus:
                    await self._event_bus.emit_execution_started(
                        app_id=app.id,
                        execution_id=execution.id,
                        input_data=execution.input,
                    )

                output = await self._executor.run_flow(app.flow_definition, ctx)
                execution.mark_completed(output, ctx.execution_path, ctx.node_errors)

        except asyncio.CancelledError:
            logger.info(f"Execution {execution.id} cancelled")
            if not execution.status.is_terminal:
                execution.mark_failed(CANCELLED_MESSAGE, ctx.execution_path, ctx.node_errors)
            await self._finish_uninterrupted(execution, traversed)
            raise

        except Exception as e:
            logger.error(f"Execution {execution.id} failed: {e}", exc_info=True)
            if not execution.status.is_terminal:
                execution.mark_failed(
                    str(e) or type(e).__name__, ctx.execution_path, ctx.node_errors
                )
            await self._finish_uninterrupted(execution, traversed)

        else:
            await self._finish_uninterrupted(execution, traversed)

        finally:
            self._release(execution.id)

    async def _finish_uninterrupted(self, execution: AgentAppExecution, traversed: bool) -> None:
        """
        Run _finish to the end even if this task is cancelled meanwhile.

        A cancellation that arrives while the terminal record is being written
        is re-raised once the write and the statistics update are done.
        """
        finishing = asyncio.ensure_future(self._finish(execution, traversed))
        cancelled = False
        while not finishing.done():
            try:
                await asyncio.shield(finishing)
            except asyncio.CancelledError:
                if finishing.done():
                    raise
                cancelled = True
        finishing.result()
        if cancelled:
            raise asyncio.CancelledError

    def _release(self, execution_id: str) -> None:
        event = self._completion_events.pop(execution_id, None)
        if event is not None:
            event.set()
        self._execution_tasks.pop(execution_id, None)
        self._execution_apps.pop(execution_id, None)
        self._executions.pop(execution_id, None)

    async def _finish(self, execution: AgentAppExecution, traversed: bool) -> None:
        """Persist a terminal record, announce it and fold it into the statistics."""
        await self._store.save_execution(execution)

        if execution.status == ExecutionStatus.COMPLETED:
            logger.info(
                f"Execution {execution.id} completed in {execution.duration}ms",
                extra={"event": "execution_completed", "duration_ms": execution.duration},
            )
            if self._event_bus:
                await self._event_bus.emit_execution_completed(
                    app_id=execution.app_id,
                    execution_id=execution.id,
                    output=execution.output,
                    duration_ms=execution.duration,
                )
        elif self._event_bus:
            await self._event_bus.emit_execution_failed(
                app_id=execution.app_id,
                execution_id=execution.id,
                error=execution.error_message or "Unknown error",
            )

        if traversed:
            await self._statistics.record(execution.app_id, execution.duration or 0)

    async def wait_for_completion(
        self,
        execution_id: str,
        timeout: float | None = None,
    ) -> AgentAppExecution | None:
        """
        Wait for an execution to reach a terminal state.

        Returns:
            The final record, or None on timeout
        """
        event = self._completion_events.get(execution_id)
        if event is not None:
            try:
                if timeout:
                    await asyncio.wait_for(event.wait(), timeout=timeout)
                else:
                    await event.wait()
            except TimeoutError:
                return None

        return await self.get_execution(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a pending or running execution.

        Returns:
            True if cancelled, False if not found or already finished
        """
        task = self._execution_tasks.get(execution_id)
        execution = self._executions.get(execution_id)
        if task is None or task.done():
            return False
        if execution is not None and execution.status.is_terminal:
            return False
        await self._cancel_task(execution_id, task)
        return True

    async def _cancel_task(self, execution_id: str, task: asyncio.Task) -> None:
        execution = self._executions.get(execution_id)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        # A task cancelled before its first step never ran its own cleanup
        if execution is not None and not execution.status.is_terminal:
            logger.info(f"Execution {execution_id} cancelled before it started")
            await self._reject(execution, CANCELLED_MESSAGE)
            self._release(execution_id)

    async def get_execution(self, execution_id: str) -> AgentAppExecution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        app_id: str | None = None,
        limit: int | None = None,
    ) -> list[AgentAppExecution]:
        """Most recent executions first."""
        if limit is None:
            limit = self.config.execution_history_limit
        return await self._store.list_executions(app_id=app_id, limit=limit)

    # === STATS AND MONITORING ===

    def get_active_count(self, app_id: str | None = None) -> int:
        return len(
            [
                exec_id
                for exec_id, owner in self._execution_apps.items()
                if app_id is None or owner == app_id
            ]
        )

    async def get_stats(self, app_id: str) -> dict[str, Any]:
        """Execution statistics for one app."""
        app = await self.get_app(app_id)
        return {
            "app_id": app.id,
            "execution_count": app.execution_count,
            "avg_execution_time": app.avg_execution_time,
            "active_executions": self.get_active_count(app.id),
        }
