"""Entity storage for apps and execution records."""

from appflow.storage.base import EntityStore
from appflow.storage.file_store import FileEntityStore
from appflow.storage.memory_store import InMemoryEntityStore

__all__ = ["EntityStore", "FileEntityStore", "InMemoryEntityStore"]
