"""Shared fakes for the engine's external collaborators."""

import asyncio
from typing import Any

import pytest

from appflow.config import EngineConfig
from appflow.observability import clear_trace_context


class FakeAgentExecutor:
    """Echoes the prompt back; optional per-agent failures and delays."""

    def __init__(self, fail_agents: set[str] | None = None, delay: float = 0.0):
        self.calls: list[tuple[str, str]] = []
        self.fail_agents = fail_agents or set()
        self.delay = delay

    async def invoke(self, agent_id: str, prompt: str) -> dict[str, Any]:
        self.calls.append((agent_id, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if agent_id in self.fail_agents:
            raise RuntimeError(f"agent {agent_id} unavailable")
        return {"response": f"{agent_id}: {prompt}", "timestamp": "2026-01-01T00:00:00"}


class FakeConnectorExecutor:
    """Returns canned responses per connector id."""

    def __init__(self, responses: dict[str, dict[str, Any]] | None = None):
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.responses = responses or {}

    async def execute(
        self,
        connector_id: str,
        endpoint: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        self.calls.append((connector_id, endpoint, params))
        if connector_id in self.responses:
            return self.responses[connector_id]
        return {"success": True, "data": {"echo": params}, "error": None, "duration": 1}


class FakeMemoryStore:
    """Keeps stored memories in a list; search returns those containing the query."""

    def __init__(self):
        self.stored: list[dict[str, Any]] = []
        self.searches: list[dict[str, Any]] = []

    async def store(
        self,
        agent_id: str,
        content: str,
        memory_type: str = "general",
        importance: float = 0.5,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        record = {
            "agent_id": agent_id,
            "content": content,
            "memory_type": memory_type,
            "importance": importance,
            "tags": tags or [],
        }
        self.stored.append(record)
        return {"id": f"mem_{len(self.stored)}", "stored": True}

    async def search(
        self,
        agent_id: str,
        query: str,
        threshold: float = 0.7,
        limit: int = 5,
    ) -> list[Any]:
        self.searches.append(
            {"agent_id": agent_id, "query": query, "threshold": threshold, "limit": limit}
        )
        matches = [
            m["content"]
            for m in self.stored
            if m["agent_id"] == agent_id and query.lower() in m["content"].lower()
        ]
        return matches[:limit]


@pytest.fixture
def agents() -> FakeAgentExecutor:
    return FakeAgentExecutor()


@pytest.fixture
def connectors() -> FakeConnectorExecutor:
    return FakeConnectorExecutor()


@pytest.fixture
def memory() -> FakeMemoryStore:
    return FakeMemoryStore()


@pytest.fixture
def fast_config() -> EngineConfig:
    """Config with no backoff delay and a short node timeout."""
    return EngineConfig(node_timeout_seconds=5.0, retry_backoff_seconds=0.0)


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()
