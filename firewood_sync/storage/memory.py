"""
In-memory entity store.

Holds the local replica in dictionaries. Useful on its own for tests and
ephemeral clients, and as the cache underneath the file-backed store.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from ..protocol import Entity, EntityType
from .base import EntityStore


class InMemoryEntityStore(EntityStore):
    """Entity store backed by per-kind dictionaries.

    transaction() snapshots both collections on entry and restores the
    snapshot if the block raises, so a failed apply leaves no trace.
    """

    def __init__(self) -> None:
        self._records: dict[EntityType, dict[str, Entity]] = {t: {} for t in EntityType}
        self._txn_depth = 0

    async def get(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        return self._records[entity_type].get(entity_id)

    async def put(self, entity: Entity) -> None:
        self._records[entity.entity_type][entity.id] = entity
        await self._changed(entity.entity_type)

    async def delete(self, entity_type: EntityType, entity_id: str) -> bool:
        existed = self._records[entity_type].pop(entity_id, None) is not None
        if existed:
            await self._changed(entity_type)
        return existed

    async def filter(
        self,
        entity_type: EntityType,
        predicate: Callable[[Entity], bool] | None = None,
    ) -> list[Entity]:
        records = list(self._records[entity_type].values())
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._txn_depth > 0:
            # Nested blocks join the outer transaction
            self._txn_depth += 1
            try:
                yield
            finally:
                self._txn_depth -= 1
            return

        snapshot = {t: dict(records) for t, records in self._records.items()}
        self._txn_depth = 1
        try:
            yield
        except BaseException:
            self._records = snapshot
            self._txn_depth = 0
            await self._rolled_back()
            raise
        self._txn_depth = 0
        await self._committed()

    @property
    def in_transaction(self) -> bool:
        return self._txn_depth > 0

    async def _changed(self, entity_type: EntityType) -> None:
        """Hook called after every successful mutation."""
        return None

    async def _committed(self) -> None:
        """Hook called when the outermost transaction commits."""
        return None

    async def _rolled_back(self) -> None:
        """Hook called when the outermost transaction rolls back."""
        return None
