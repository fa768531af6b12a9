"""
Outbound collaborator interfaces.

The engine never talks to an LLM backend, an HTTP integration or a vector
store directly; it calls these narrow async interfaces, and whatever owns
those systems supplies the implementation.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AgentExecutor(Protocol):
    """Turns a resolved prompt into an agent response."""

    async def invoke(self, agent_id: str, prompt: str) -> dict[str, Any]:
        """Return ``{"response": ..., "timestamp": ...}``."""
        ...


@runtime_checkable
class ConnectorExecutor(Protocol):
    """Calls an external integration endpoint."""

    async def execute(
        self,
        connector_id: str,
        endpoint: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        """Return ``{"success": bool, "data": ..., "error": str | None, "duration": ms}``."""
        ...


@runtime_checkable
class MemoryStore(Protocol):
    """Similarity-searchable agent memory."""

    async def store(
        self,
        agent_id: str,
        content: str,
        memory_type: str = "general",
        importance: float = 0.5,
        tags: list[str] | None = None,
    ) -> Any: ...

    async def search(
        self,
        agent_id: str,
        query: str,
        threshold: float = 0.7,
        limit: int = 5,
    ) -> list[Any]: ...
