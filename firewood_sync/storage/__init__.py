"""
Storage layer for firewood sync.

Provides the client-side entity stores (in-memory and JSONL-backed) and
the server-side SQLite store, behind the EntityStore and ServerStore
interfaces.
"""

from .base import EntityStore, ServerStore
from .local import LocalFileEntityStore
from .memory import InMemoryEntityStore
from .sqlite import SQLiteConfig, SQLiteServerStore

__all__ = [
    # Interfaces
    "EntityStore",
    "ServerStore",
    # Client stores
    "InMemoryEntityStore",
    "LocalFileEntityStore",
    # Server store
    "SQLiteConfig",
    "SQLiteServerStore",
]
