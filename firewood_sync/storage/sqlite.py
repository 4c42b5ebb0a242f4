"""
SQLite server store.

Authoritative server-side rows for racks and consumption entries, scoped
by user_id, plus per-user sync bookkeeping. Timestamps are stored as
fixed-width ISO-8601 UTC strings so they compare correctly as text.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StorageIOError
from ..protocol import (
    Entity,
    EntityType,
    entity_from_dict,
    format_timestamp,
    parse_optional_timestamp,
)
from .base import ServerStore

logger = logging.getLogger(__name__)


# =============================================================================
# Column Definitions - (column, wire key) per entity kind
# =============================================================================

RACK_COLUMNS = (
    ("id", "id"),
    ("name", "name"),
    ("height", "height"),
    ("width", "width"),
    ("depth", "depth"),
    ("log_size", "logSize"),
    ("volume_m3", "volumeM3"),
    ("volume_steres", "volumeSteres"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("deleted_at", "deletedAt"),
)

CONSUMPTION_COLUMNS = (
    ("id", "id"),
    ("rack_id", "rackId"),
    ("type", "type"),
    ("percentage", "percentage"),
    ("date", "date"),
    ("week_number", "weekNumber"),
    ("year", "year"),
    ("notes", "notes"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("deleted_at", "deletedAt"),
)

TABLES = {
    EntityType.RACK: ("racks", RACK_COLUMNS),
    EntityType.CONSUMPTION: ("consumptions", CONSUMPTION_COLUMNS),
}

# Columns overwritten when an incoming update wins arbitration
_MUTABLE_COLUMNS = {
    EntityType.RACK: (
        "name",
        "height",
        "width",
        "depth",
        "log_size",
        "volume_m3",
        "volume_steres",
    ),
    EntityType.CONSUMPTION: ("type", "percentage", "date", "week_number", "year", "notes"),
}

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS racks (
    id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    height REAL NOT NULL,
    width REAL NOT NULL,
    depth REAL NOT NULL,
    log_size INTEGER NOT NULL,
    volume_m3 REAL NOT NULL,
    volume_steres REAL NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS consumptions (
    id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    rack_id TEXT NOT NULL,
    type TEXT NOT NULL,
    percentage REAL NOT NULL,
    date TEXT NOT NULL,
    week_number INTEGER NOT NULL,
    year INTEGER NOT NULL,
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    PRIMARY KEY (user_id, id)
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    user_id TEXT NOT NULL PRIMARY KEY,
    last_sync_timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_racks_user_updated ON racks(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_consumptions_user_updated ON consumptions(user_id, updated_at);
"""


@dataclass
class SQLiteConfig:
    """Configuration for the SQLite server store."""

    db_path: str | Path = ":memory:"

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        return cls(db_path=os.environ.get("FIREWOOD_SERVER_DB", ":memory:"))


class SQLiteServerStore(ServerStore):
    """
    Server store on a single aiosqlite connection.

    All writes must happen inside transaction(); the transaction lock
    keeps concurrent requests from interleaving statements on the
    shared connection.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteServerStore:
        """Create and initialize the store."""
        store = cls(config or SQLiteConfig.from_env())
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(str(self.config.db_path))
            self.conn.row_factory = aiosqlite.Row
            await self.conn.executescript(_SCHEMA_SQL)
            await self.conn.commit()
        except Exception as e:
            raise StorageIOError("initialize", str(self.config.db_path), e) from e

        self._initialized = True
        logger.info(f"SQLite server store initialized: {self.config.db_path}")

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    def _connection(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(
                "query", str(self.config.db_path), RuntimeError("store not initialized")
            )
        return self.conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        conn = self._connection()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_entity(entity_type: EntityType, row: aiosqlite.Row) -> Entity:
        _, columns = TABLES[entity_type]
        data = {wire_key: row[column] for column, wire_key in columns}
        return entity_from_dict(entity_type, data)

    @staticmethod
    def _entity_to_params(entity: Entity) -> dict[str, Any]:
        _, columns = TABLES[entity.entity_type]
        wire = entity.to_dict()
        return {column: wire[wire_key] for column, wire_key in columns}

    # =========================================================================
    # ServerStore
    # =========================================================================

    async def get_row(
        self, entity_type: EntityType, user_id: str, entity_id: str
    ) -> Entity | None:
        table, _ = TABLES[entity_type]
        async with self._connection().execute(
            f"SELECT * FROM {table} WHERE id = ? AND user_id = ?",
            (entity_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_entity(entity_type, row) if row else None

    async def insert_row(self, user_id: str, entity: Entity) -> None:
        table, columns = TABLES[entity.entity_type]
        params = self._entity_to_params(entity)
        names = ["user_id", *(column for column, _ in columns)]
        placeholders = ", ".join("?" for _ in names)
        await self._connection().execute(
            f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            (user_id, *(params[column] for column, _ in columns)),
        )

    async def update_row(self, user_id: str, entity: Entity, updated_at: datetime) -> None:
        table, _ = TABLES[entity.entity_type]
        mutable = _MUTABLE_COLUMNS[entity.entity_type]
        params = self._entity_to_params(entity)
        assignments = ", ".join(f"{column} = ?" for column in mutable)
        await self._connection().execute(
            f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
            (
                *(params[column] for column in mutable),
                format_timestamp(updated_at),
                entity.id,
                user_id,
            ),
        )

    async def tombstone_row(
        self, entity_type: EntityType, user_id: str, entity_id: str, at: datetime
    ) -> None:
        table, _ = TABLES[entity_type]
        stamp = format_timestamp(at)
        await self._connection().execute(
            f"UPDATE {table} SET deleted_at = ?, updated_at = ? WHERE id = ? AND user_id = ?",
            (stamp, stamp, entity_id, user_id),
        )

    async def rows_changed_since(
        self, entity_type: EntityType, user_id: str, since: datetime
    ) -> list[Entity]:
        table, _ = TABLES[entity_type]
        async with self._connection().execute(
            f"SELECT * FROM {table} WHERE user_id = ? AND updated_at > ? ORDER BY updated_at",
            (user_id, format_timestamp(since)),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_entity(entity_type, row) for row in rows]

    async def get_last_sync(self, user_id: str) -> datetime | None:
        async with self._connection().execute(
            "SELECT last_sync_timestamp FROM sync_metadata WHERE user_id = ?",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return parse_optional_timestamp(row[0], "last_sync_timestamp") if row else None

    async def set_last_sync(self, user_id: str, at: datetime) -> None:
        stamp = format_timestamp(at)
        await self._connection().execute(
            """
            INSERT INTO sync_metadata (user_id, last_sync_timestamp) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET last_sync_timestamp = excluded.last_sync_timestamp
            """,
            (user_id, stamp),
        )
