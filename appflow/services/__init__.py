"""Interfaces to the services the engine calls out to."""

from appflow.services.collaborators import AgentExecutor, ConnectorExecutor, MemoryStore

__all__ = ["AgentExecutor", "ConnectorExecutor", "MemoryStore"]
