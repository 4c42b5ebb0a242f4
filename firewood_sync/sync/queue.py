"""
Durable change queue for synchronization.

Tracks local mutations that still have to reach the server. There is at
most one pending item per (entity_type, entity_id): later mutations of
the same entity are coalesced into the existing item, so each sync round
ships one net operation per entity carrying its latest local value.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from ..protocol import (
    ChangeAction,
    Entity,
    EntityType,
    SyncItem,
    entity_from_dict,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from ..storage.file_ops import read_jsonl, write_jsonl_atomic

logger = logging.getLogger(__name__)

QueueKey = tuple[EntityType, str]


@dataclass
class ChangeQueueItem:
    """A pending local mutation.

    Attributes:
        entity_type: Kind of entity changed
        entity_id: ID of the entity
        action: Net operation to ship
        data: Snapshot of the entity at enqueue time
        enqueued_at: When the item was created or last coalesced
        attempts: Number of sync rounds that have shipped this item
    """

    entity_type: EntityType
    entity_id: str
    action: ChangeAction
    data: Entity
    enqueued_at: datetime = field(default_factory=utc_now)
    attempts: int = 0

    @property
    def key(self) -> QueueKey:
        return (self.entity_type, self.entity_id)

    def same_change(self, other: "ChangeQueueItem") -> bool:
        """True if other carries the same operation and snapshot."""
        return (
            self.action == other.action
            and self.data == other.data
            and self.enqueued_at == other.enqueued_at
        )

    def to_sync_item(self) -> SyncItem:
        """Wire form, tagged with the snapshot's updatedAt."""
        return SyncItem(data=self.data, action=self.action, local_updated_at=self.data.updated_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "action": self.action.value,
            "data": self.data.to_dict(include_local=True),
            "enqueued_at": format_timestamp(self.enqueued_at),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeQueueItem":
        """Create from dictionary."""
        entity_type = EntityType(data["entity_type"])
        return cls(
            entity_type=entity_type,
            entity_id=data["entity_id"],
            action=ChangeAction(data["action"]),
            data=entity_from_dict(entity_type, data["data"]),
            enqueued_at=parse_timestamp(data["enqueued_at"], "enqueued_at"),
            attempts=data.get("attempts", 0),
        )


class ChangeQueue:
    """Persistent, coalescing queue of local changes.

    Items are written to a JSONL file for durability across restarts.
    Without a queue_path the queue lives in memory only.

    Example:
        >>> queue = ChangeQueue(Path("~/.firewood/sync/queue.jsonl").expanduser())
        >>> await queue.enqueue(EntityType.RACK, rack.id, ChangeAction.CREATE, rack)
        >>> items = await queue.drain()
        >>> # ... upload items ...
        >>> await queue.acknowledge(items)
    """

    def __init__(self, queue_path: Path | None = None):
        """Initialize the change queue.

        Args:
            queue_path: Path to the queue file, None for a volatile queue
        """
        self.queue_path = queue_path
        self._items: dict[QueueKey, ChangeQueueItem] = {}
        self._loaded = False

    async def _ensure_loaded(self) -> None:
        """Load items from disk if not already loaded."""
        if self._loaded:
            return

        if self.queue_path is not None:
            for row in await read_jsonl(self.queue_path):
                item = ChangeQueueItem.from_dict(row)
                self._items[item.key] = item

        self._loaded = True

    async def _persist(self) -> None:
        """Persist items to disk."""
        if self.queue_path is None:
            return
        await write_jsonl_atomic(self.queue_path, [i.to_dict() for i in self._items.values()])

    async def enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        action: ChangeAction,
        snapshot: Entity,
    ) -> ChangeQueueItem | None:
        """Record a local mutation, coalescing with any pending item.

        Args:
            entity_type: Kind of entity changed
            entity_id: ID of the entity
            action: Mutation performed locally
            snapshot: Entity value after the mutation

        Returns:
            The pending item, or None if the mutation cancelled it out
        """
        await self._ensure_loaded()

        key = (entity_type, entity_id)
        existing = self._items.get(key)

        if existing is None:
            item = ChangeQueueItem(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                data=snapshot,
            )
        elif existing.action == ChangeAction.CREATE and action == ChangeAction.DELETE:
            if existing.attempts == 0:
                # The server never saw the create
                del self._items[key]
                await self._persist()
                logger.debug(f"Dropped never-synced {entity_type.value} {entity_id}")
                return None
            item = replace(
                existing, action=ChangeAction.DELETE, data=snapshot, enqueued_at=utc_now()
            )
        elif existing.action == ChangeAction.CREATE:
            item = replace(existing, data=snapshot, enqueued_at=utc_now())
        else:
            item = replace(existing, action=action, data=snapshot, enqueued_at=utc_now())

        self._items[key] = item
        await self._persist()
        return item

    async def drain(self) -> list[ChangeQueueItem]:
        """Snapshot every pending item for upload, oldest first.

        Items stay queued until acknowledged; each drained item's attempt
        counter is incremented and persisted right away, before the round
        reaches the server. A round that then fails in transport therefore
        still leaves ``attempts`` raised: the create may have landed, so a
        later delete of that entity is shipped instead of cancelling the
        create out.
        """
        await self._ensure_loaded()

        if not self._items:
            return []

        for key, item in self._items.items():
            self._items[key] = replace(item, attempts=item.attempts + 1)
        await self._persist()

        return sorted(
            (replace(item) for item in self._items.values()),
            key=lambda item: item.enqueued_at,
        )

    async def acknowledge(self, items: list[ChangeQueueItem]) -> int:
        """Remove items that a successful round delivered.

        An item coalesced after it was drained is kept for the next round.
        If the delivered version was a create, the kept item is downgraded
        to an update, since the server now holds the row.

        Returns:
            Number of items removed
        """
        await self._ensure_loaded()

        removed = 0
        changed = False
        for delivered in items:
            current = self._items.get(delivered.key)
            if current is None:
                continue
            if current.same_change(delivered):
                del self._items[delivered.key]
                removed += 1
                changed = True
            elif delivered.action == ChangeAction.CREATE and current.action == ChangeAction.CREATE:
                self._items[delivered.key] = replace(current, action=ChangeAction.UPDATE)
                changed = True

        if changed:
            await self._persist()
        return removed

    async def get(self, entity_type: EntityType, entity_id: str) -> ChangeQueueItem | None:
        """Get the pending item for an entity, if any."""
        await self._ensure_loaded()
        return self._items.get((entity_type, entity_id))

    async def pending_count(self) -> int:
        """Number of entities with a pending change."""
        await self._ensure_loaded()
        return len(self._items)

    async def clear(self) -> int:
        """Drop every pending item.

        Returns:
            Number of items removed
        """
        await self._ensure_loaded()

        count = len(self._items)
        self._items = {}
        await self._persist()
        return count
