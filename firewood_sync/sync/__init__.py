"""
Offline-first sync module.

Client side: a durable change queue, a sync cursor and the SyncClient
that runs request/response rounds. Server side: SyncServer reconciliation
and its aiohttp endpoint.
"""

from .client import SyncClient, SyncResult, SyncState
from .conflict import ConflictDecision, ConflictResolver, resolve
from .cursor import SyncCursor
from .http import create_app
from .queue import ChangeQueue, ChangeQueueItem
from .server import SyncServer
from .transport import HttpTransport, LocalTransport, Transport

__all__ = [
    # Client
    "SyncClient",
    "SyncResult",
    "SyncState",
    "ChangeQueue",
    "ChangeQueueItem",
    "SyncCursor",
    # Transports
    "Transport",
    "HttpTransport",
    "LocalTransport",
    # Server
    "SyncServer",
    "create_app",
    # Conflict resolution
    "ConflictResolver",
    "ConflictDecision",
    "resolve",
]
