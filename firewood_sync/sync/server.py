"""
Sync server reconciliation.

Applies a client's uploaded changes against the authoritative per-user
rows, arbitrates stale writes with the conflict resolver, and answers with
everything the client needs to catch up since its cursor.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..exceptions import AuthenticationError
from ..logging_utils import SyncLoggerAdapter
from ..protocol import (
    EPOCH,
    ChangeAction,
    ConflictRecord,
    Entity,
    EntityChanges,
    EntityType,
    SyncItem,
    SyncRequest,
    SyncResponse,
    format_timestamp,
    utc_now,
)
from ..storage.base import ServerStore
from .conflict import ConflictResolver

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"


class _ChangeSet:
    """Response entries of one entity kind, at most one per id.

    Tombstones always land in ``deleted``. Otherwise the first category
    recorded for an id is kept while its value is refreshed, so a delta
    row read after reconciliation replaces the reconciliation result.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, Entity]] = {}

    def add(self, category: str, entity: Entity) -> None:
        existing = self._entries.get(entity.id)
        if entity.is_deleted or (existing is not None and existing[0] == DELETED):
            category = DELETED
        elif existing is not None:
            category = existing[0]
        self._entries[entity.id] = (category, entity)

    def to_changes(self) -> EntityChanges:
        changes = EntityChanges()
        for entity_id, (category, entity) in self._entries.items():
            if category == CREATED:
                changes.created.append(entity)
            elif category == UPDATED:
                changes.updated.append(entity)
            else:
                changes.deleted.append(entity_id)
        return changes


class SyncServer:
    """Server side of the sync protocol.

    Example:
        >>> store = await SQLiteServerStore.create(SQLiteConfig("firewood.db"))
        >>> server = SyncServer(store)
        >>> response = await server.reconcile("user-1", request)
    """

    def __init__(
        self,
        store: ServerStore,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
        auth_validator: Callable[[str], str | None] | None = None,
    ) -> None:
        """Initialize the sync server.

        Args:
            store: Authoritative row storage
            resolver: Last-writer-wins arbiter
            clock: Source of server time
            auth_validator: Maps a bearer token to a user id, None if invalid.
                Without one, the token itself is taken as the user id.
        """
        self.store = store
        self.resolver = resolver or ConflictResolver()
        self.clock = clock
        self.auth_validator = auth_validator
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def validate_auth(self, auth_header: str | None) -> str | None:
        """Validate an Authorization header.

        Args:
            auth_header: Authorization header value

        Returns:
            User ID if valid, None otherwise
        """
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        token = auth_header[7:].strip()
        if not token:
            return None

        if not self.auth_validator:
            # Development mode: the token is the user id
            return token

        return self.auth_validator(token)

    def authenticate(self, auth_header: str | None) -> str:
        """Like validate_auth, but raise AuthenticationError on failure."""
        user_id = self.validate_auth(auth_header)
        if user_id is None:
            reason = "missing bearer token" if not auth_header else "invalid token"
            raise AuthenticationError(reason)
        return user_id

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def handle_sync(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Reconcile a wire-format request and return a wire-format response.

        Raises:
            ValidationError: If the payload is not a well-formed SyncRequest
        """
        request = SyncRequest.from_dict(payload)
        response = await self.reconcile(user_id, request)
        return response.to_dict()

    async def reconcile(self, user_id: str, request: SyncRequest) -> SyncResponse:
        """Run one sync round for user_id.

        Args:
            user_id: Authenticated caller
            request: Uploaded changes and the client's cursor

        Returns:
            Applied results merged with the deltas since the cursor,
            plus a conflict record for every write the server rejected
        """
        log = SyncLoggerAdapter(logger, {"user_id": user_id})

        async with self._lock_for(user_id):
            now = self.clock()
            since = request.last_sync_timestamp or EPOCH
            conflicts: list[ConflictRecord] = []
            change_sets = {entity_type: _ChangeSet() for entity_type in EntityType}

            for entity_type in EntityType:
                for item in request.items_for(entity_type):
                    await self._apply_item(
                        user_id, entity_type, item, now, change_sets[entity_type], conflicts
                    )

            for entity_type in EntityType:
                for row in await self.store.rows_changed_since(entity_type, user_id, since):
                    category = CREATED if row.created_at > since else UPDATED
                    change_sets[entity_type].add(category, row)

            async with self.store.transaction():
                await self.store.set_last_sync(user_id, now)

        response = SyncResponse(
            server_timestamp=now,
            racks=change_sets[EntityType.RACK].to_changes(),
            consumptions=change_sets[EntityType.CONSUMPTION].to_changes(),
            conflicts=conflicts,
        )

        log.info(
            f"Reconciled {len(request.racks)} rack and {len(request.consumptions)} "
            f"consumption changes, {len(conflicts)} conflicts",
            extra={"server_timestamp": format_timestamp(now)},
        )
        return response

    async def _apply_item(
        self,
        user_id: str,
        entity_type: EntityType,
        item: SyncItem,
        now: datetime,
        changes: _ChangeSet,
        conflicts: list[ConflictRecord],
    ) -> None:
        """Read-compare-write one incoming item inside a store transaction."""
        entity_id = item.data.id

        async with self.store.transaction():
            row = await self.store.get_row(entity_type, user_id, entity_id)

            if item.action == ChangeAction.CREATE:
                if row is not None:
                    return
                created = item.data.with_changes(updated_at=item.local_updated_at)
                await self.store.insert_row(user_id, created)
                changes.add(CREATED, created)
                return

            if row is None:
                logger.debug(
                    f"Ignoring {item.action.value} of unknown {entity_type.value} {entity_id}"
                )
                return

            if row.is_deleted:
                if item.action == ChangeAction.DELETE:
                    changes.add(DELETED, row)
                else:
                    conflicts.append(self.resolver.server_wins(row))
                return

            decision = self.resolver.decide(item.local_updated_at, row)
            if not decision.local_wins:
                if decision.conflict is not None:
                    conflicts.append(decision.conflict)
                return

            if item.action == ChangeAction.DELETE:
                tombstone = row.tombstoned(now)
                stamp = tombstone.updated_at
                await self.store.tombstone_row(entity_type, user_id, entity_id, stamp)
                changes.add(DELETED, tombstone)
            else:
                stamp = max(now, row.updated_at)
                updated = row.with_changes(
                    **{name: getattr(item.data, name) for name in row.MUTABLE_FIELDS},
                    updated_at=stamp,
                )
                await self.store.update_row(user_id, updated, stamp)
                changes.add(UPDATED, updated)

    async def status(self, user_id: str) -> dict[str, Any]:
        """Server-side sync bookkeeping for user_id."""
        last_sync = await self.store.get_last_sync(user_id)
        return {
            "userId": user_id,
            "serverTime": format_timestamp(self.clock()),
            "lastSyncTimestamp": format_timestamp(last_sync) if last_sync else None,
        }
