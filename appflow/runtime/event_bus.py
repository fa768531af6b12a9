"""
Event Bus - Pub/sub for execution and node lifecycle events.

Lets callers:
- Observe executions as they start, finish or fail
- Follow individual nodes, including retries
- Wait for a specific event (tests, CLIs, websocket bridges)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRY = "node_retry"

    # Pre-flight
    GUARDRAIL_VIOLATION = "guardrail_violation"

    # Statistics
    STATS_UPDATED = "stats_updated"


@dataclass
class FlowEvent:
    """An event emitted while apps execute."""

    type: EventType
    app_id: str
    execution_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "app_id": self.app_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_app: str | None = None
    filter_node: str | None = None
    filter_execution: str | None = None


class EventBus:
    """
    Async pub/sub event bus.

    Handler exceptions are logged and swallowed so a bad subscriber can never
    break an execution.

    Example:
        bus = EventBus()

        async def on_done(event: FlowEvent):
            print(f"Execution {event.execution_id} completed")

        bus.subscribe(event_types=[EventType.EXECUTION_COMPLETED], handler=on_done)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_app: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_app: Only receive events from this app
            filter_node: Only receive events from this node
            filter_execution: Only receive events from this execution

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_app=filter_app,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Record an event and deliver it to every matching subscriber."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in list(self._subscriptions.values()) if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_app and subscription.filter_app != event.app_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        return True

    async def _execute_handlers(self, event: FlowEvent, handlers: list[EventHandler]) -> None:
        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_execution_started(
        self,
        app_id: str,
        execution_id: str,
        input_data: Any = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_STARTED,
                app_id=app_id,
                execution_id=execution_id,
                data={"input": input_data},
            )
        )

    async def emit_execution_completed(
        self,
        app_id: str,
        execution_id: str,
        output: Any = None,
        duration_ms: int | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_COMPLETED,
                app_id=app_id,
                execution_id=execution_id,
                data={"output": output, "duration_ms": duration_ms},
            )
        )

    async def emit_execution_failed(
        self,
        app_id: str,
        execution_id: str,
        error: str,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EXECUTION_FAILED,
                app_id=app_id,
                execution_id=execution_id,
                data={"error": error},
            )
        )

    async def emit_node_started(
        self,
        app_id: str,
        execution_id: str | None,
        node_id: str,
        node_type: str,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_STARTED,
                app_id=app_id,
                execution_id=execution_id,
                node_id=node_id,
                data={"node_type": node_type},
            )
        )

    async def emit_node_completed(
        self,
        app_id: str,
        execution_id: str | None,
        node_id: str,
        duration_ms: int,
        next_nodes: list[str] | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_COMPLETED,
                app_id=app_id,
                execution_id=execution_id,
                node_id=node_id,
                data={"duration_ms": duration_ms, "next_nodes": next_nodes or []},
            )
        )

    async def emit_node_failed(
        self,
        app_id: str,
        execution_id: str | None,
        node_id: str,
        error: str,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_FAILED,
                app_id=app_id,
                execution_id=execution_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    async def emit_node_retry(
        self,
        app_id: str,
        execution_id: str | None,
        node_id: str,
        retry_count: int,
        max_retries: int,
        error: str = "",
    ) -> None:
        """Emit node retry event."""
        await self.publish(
            FlowEvent(
                type=EventType.NODE_RETRY,
                app_id=app_id,
                execution_id=execution_id,
                node_id=node_id,
                data={
                    "retry_count": retry_count,
                    "max_retries": max_retries,
                    "error": error,
                },
            )
        )

    async def emit_guardrail_violation(
        self,
        app_id: str,
        execution_id: str,
        guardrail_type: str,
        message: str,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.GUARDRAIL_VIOLATION,
                app_id=app_id,
                execution_id=execution_id,
                data={"guardrail_type": guardrail_type, "message": message},
            )
        )

    async def emit_stats_updated(
        self,
        app_id: str,
        execution_count: int,
        avg_execution_time: int,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.STATS_UPDATED,
                app_id=app_id,
                data={
                    "execution_count": execution_count,
                    "avg_execution_time": avg_execution_time,
                },
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        app_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if app_id:
            events = [e for e in events if e.app_id == app_id]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        app_id: str | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_app=app_id,
            filter_node=node_id,
            filter_execution=execution_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
