from __future__ import annotations

from tasksync.store.base import DocumentStore
from tasksync.store.memory import MemoryDocumentStore

__all__ = ["DocumentStore", "MemoryDocumentStore"]
