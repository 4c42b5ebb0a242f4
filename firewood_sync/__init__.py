"""
Firewood Sync

Offline-first synchronization for firewood racks and consumption entries.

Provides:
- A durable, coalescing change queue for local mutations
- A sync client that reconciles the local replica in one round trip
- A sync server with last-writer-wins conflict resolution
- JSONL client storage and SQLite server storage

Usage:

    >>> from firewood_sync import SyncClient, SyncSettings, ChangeAction
    >>> client = await SyncClient.from_settings(SyncSettings.load())
    >>> await client.record_change(rack, ChangeAction.CREATE)
    >>> result = await client.sync_now()

Server:

    $ firewood-sync-server --db firewood.db --port 8080
"""

from .config import ServerConfig, SyncSettings

# Exceptions
from .exceptions import (
    AuthenticationError,
    FirewoodSyncError,
    StorageIOError,
    SyncError,
    TransportError,
    ValidationError,
)

# Protocol types
from .protocol import (
    ChangeAction,
    ConflictRecord,
    ConsumptionEntry,
    Entity,
    EntityChanges,
    EntityType,
    Rack,
    RecordStatus,
    SyncItem,
    SyncRequest,
    SyncResponse,
    SyncStatus,
    Winner,
)

# Storage
from .storage import (
    EntityStore,
    InMemoryEntityStore,
    LocalFileEntityStore,
    ServerStore,
    SQLiteConfig,
    SQLiteServerStore,
)

# Sync
from .sync import (
    ChangeQueue,
    ConflictResolver,
    HttpTransport,
    LocalTransport,
    SyncClient,
    SyncCursor,
    SyncResult,
    SyncServer,
    Transport,
)

__all__ = [
    # Protocol
    "EntityType",
    "ChangeAction",
    "RecordStatus",
    "Winner",
    "Rack",
    "ConsumptionEntry",
    "Entity",
    "SyncItem",
    "SyncRequest",
    "SyncResponse",
    "EntityChanges",
    "ConflictRecord",
    "SyncStatus",
    # Storage
    "EntityStore",
    "ServerStore",
    "InMemoryEntityStore",
    "LocalFileEntityStore",
    "SQLiteConfig",
    "SQLiteServerStore",
    # Sync
    "ChangeQueue",
    "SyncCursor",
    "SyncClient",
    "SyncResult",
    "SyncServer",
    "ConflictResolver",
    "Transport",
    "HttpTransport",
    "LocalTransport",
    # Config
    "SyncSettings",
    "ServerConfig",
    # Exceptions
    "FirewoodSyncError",
    "StorageIOError",
    "SyncError",
    "TransportError",
    "AuthenticationError",
    "ValidationError",
]

__version__ = "0.1.0"
