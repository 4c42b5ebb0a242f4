"""
Abstract storage interfaces.

Defines the contracts the sync components depend on:

- EntityStore: the client's local replica (get/put/delete/filter)
- ServerStore: the server's authoritative, per-user rows

The sync client and server only ever talk to these interfaces, so any
key-value or relational backing store can be substituted.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime

from ..protocol import Entity, EntityType


class EntityStore(ABC):
    """Local replica of racks and consumption entries.

    Implementations should make transaction() atomic: every put/delete
    inside the block becomes visible together or not at all.
    """

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Get a record by id, tombstoned or not."""
        ...

    @abstractmethod
    async def put(self, entity: Entity) -> None:
        """Insert or replace a record."""
        ...

    @abstractmethod
    async def delete(self, entity_type: EntityType, entity_id: str) -> bool:
        """Hard-remove a record.

        Returns:
            True if the record existed
        """
        ...

    @abstractmethod
    async def filter(
        self,
        entity_type: EntityType,
        predicate: Callable[[Entity], bool] | None = None,
    ) -> list[Entity]:
        """List records of a kind, optionally filtered by predicate."""
        ...

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group writes into one unit. The default groups nothing."""
        yield

    async def close(self) -> None:
        """Release resources."""
        return None


class ServerStore(ABC):
    """Authoritative server-side rows, always scoped by user_id."""

    @abstractmethod
    async def get_row(
        self, entity_type: EntityType, user_id: str, entity_id: str
    ) -> Entity | None:
        """Fetch one row owned by user_id."""
        ...

    @abstractmethod
    async def insert_row(self, user_id: str, entity: Entity) -> None:
        """Insert a row verbatim, including its timestamps."""
        ...

    @abstractmethod
    async def update_row(self, user_id: str, entity: Entity, updated_at: datetime) -> None:
        """Overwrite the entity's mutable fields and stamp updated_at."""
        ...

    @abstractmethod
    async def tombstone_row(
        self, entity_type: EntityType, user_id: str, entity_id: str, at: datetime
    ) -> None:
        """Set deleted_at and updated_at to ``at``."""
        ...

    @abstractmethod
    async def rows_changed_since(
        self, entity_type: EntityType, user_id: str, since: datetime
    ) -> list[Entity]:
        """All rows of the user with updated_at strictly after since."""
        ...

    @abstractmethod
    async def get_last_sync(self, user_id: str) -> datetime | None:
        """Server-side bookkeeping of the user's last sync time."""
        ...

    @abstractmethod
    async def set_last_sync(self, user_id: str, at: datetime) -> None:
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Async context manager wrapping one read-compare-write."""
        ...

    async def close(self) -> None:
        """Release resources."""
        return None
