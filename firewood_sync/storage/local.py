"""
File-backed local entity store.

Each entity kind lives in its own JSONL file under the client's data
directory:

    {base_path}/
        racks.jsonl
        consumptions.jsonl

Records are kept in memory and the affected file is rewritten atomically
after each mutation. Inside a transaction the writes are deferred until
commit, and a rollback discards them without touching disk.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..protocol import EntityType, entity_from_dict
from .file_ops import read_jsonl, write_jsonl_atomic
from .memory import InMemoryEntityStore

logger = logging.getLogger(__name__)

COLLECTION_FILES = {
    EntityType.RACK: "racks.jsonl",
    EntityType.CONSUMPTION: "consumptions.jsonl",
}


class LocalFileEntityStore(InMemoryEntityStore):
    """Durable local replica persisted as JSONL files.

    Example:
        >>> store = await LocalFileEntityStore.open(Path("~/.firewood/data").expanduser())
        >>> await store.put(rack)
        >>> async with store.transaction():
        ...     await store.put(other_rack)
        ...     await store.delete(EntityType.RACK, "old-rack")
    """

    def __init__(self, base_path: Path):
        super().__init__()
        self.base_path = base_path
        self._dirty: set[EntityType] = set()
        self._loaded = False

    @classmethod
    async def open(cls, base_path: Path) -> LocalFileEntityStore:
        """Create a store and load existing records from disk."""
        store = cls(base_path)
        await store.load()
        return store

    def _path_for(self, entity_type: EntityType) -> Path:
        return self.base_path / COLLECTION_FILES[entity_type]

    async def load(self) -> None:
        """Load both collections from disk (idempotent)."""
        if self._loaded:
            return

        for entity_type in EntityType:
            rows = await read_jsonl(self._path_for(entity_type))
            self._records[entity_type] = {
                row["id"]: entity_from_dict(entity_type, row) for row in rows
            }
            logger.debug(f"Loaded {len(rows)} {entity_type.value} records")

        self._loaded = True

    async def _persist(self, entity_type: EntityType) -> None:
        rows = [e.to_dict(include_local=True) for e in self._records[entity_type].values()]
        await write_jsonl_atomic(self._path_for(entity_type), rows)

    async def _changed(self, entity_type: EntityType) -> None:
        if self.in_transaction:
            self._dirty.add(entity_type)
            return
        await self._persist(entity_type)

    async def _committed(self) -> None:
        dirty, self._dirty = self._dirty, set()
        for entity_type in sorted(dirty, key=lambda t: t.value):
            await self._persist(entity_type)

    async def _rolled_back(self) -> None:
        self._dirty.clear()
