"""
Sync client for the offline-first replica.

Drives one sync round at a time:
- Push: the whole change queue goes up in one SyncRequest
- Pull: server deltas and conflicts are applied to the entity store
- Commit: delivered queue items are acknowledged and the cursor advances

A round never raises; every outcome is reported as a SyncResult.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from ..config import SyncSettings
from ..exceptions import FirewoodSyncError, SyncError, TransportError
from ..protocol import (
    ChangeAction,
    Entity,
    EntityType,
    RecordStatus,
    SyncRequest,
    SyncResponse,
    SyncStatus,
    utc_now,
)
from ..storage.base import EntityStore
from ..storage.local import LocalFileEntityStore
from .cursor import SyncCursor
from .queue import ChangeQueue, ChangeQueueItem, QueueKey
from .transport import HttpTransport, Transport

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Current state of the sync client."""

    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncResult:
    """Result of a sync round."""

    success: bool
    skipped: bool = False
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    error: str | None = None
    duration_ms: int = 0
    server_timestamp: datetime | None = None


class SyncClient:
    """Client side of the sync protocol.

    Example:
        >>> client = SyncClient(store, ChangeQueue(queue_path), SyncCursor(cursor_path), transport)
        >>> await client.record_change(rack, ChangeAction.CREATE)
        >>> result = await client.sync_now()
    """

    def __init__(
        self,
        store: EntityStore,
        queue: ChangeQueue,
        cursor: SyncCursor,
        transport: Transport,
        enabled: bool = True,
        online: bool = True,
        auto_sync: bool = True,
    ):
        """Initialize the sync client.

        Args:
            store: Local replica
            queue: Pending local changes
            cursor: Last successful server timestamp
            transport: Channel to the sync server
            enabled: Whether sync is switched on
            online: Initial connectivity
            auto_sync: Start a background round after local changes
                and when connectivity comes back
        """
        self.store = store
        self.queue = queue
        self.cursor = cursor
        self.transport = transport
        self.enabled = enabled
        self.auto_sync = auto_sync

        self._state = SyncState.IDLE
        self._is_online = online
        self._last_error: str | None = None
        self._sync_task: asyncio.Task[SyncResult] | None = None

    @classmethod
    async def from_settings(cls, settings: SyncSettings) -> SyncClient:
        """Build a client on the file-backed store and the HTTP transport."""
        store = await LocalFileEntityStore.open(settings.data_dir)
        transport = HttpTransport(
            settings.api_url, settings.api_token, timeout=settings.request_timeout
        )
        return cls(
            store=store,
            queue=ChangeQueue(settings.queue_path),
            cursor=SyncCursor(settings.cursor_path),
            transport=transport,
            enabled=settings.enabled and settings.is_configured,
        )

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def is_syncing(self) -> bool:
        return self._state == SyncState.SYNCING

    # =========================================================================
    # Local changes
    # =========================================================================

    async def record_change(self, entity: Entity, action: ChangeAction) -> Entity:
        """Apply a local mutation to the store and queue it for upload.

        The entity's updated_at is stamped with the current time; a delete
        tombstones the record instead of removing it.

        Returns:
            The record as stored locally
        """
        now = utc_now()
        if action == ChangeAction.DELETE:
            record = entity.tombstoned(now)
        else:
            record = entity.with_changes(updated_at=max(now, entity.created_at))
        record = record.with_changes(sync_status=RecordStatus.PENDING)

        await self.store.put(record)
        await self.queue_change(record, action)
        return record

    async def queue_change(self, entity: Entity, action: ChangeAction) -> ChangeQueueItem | None:
        """Enqueue a snapshot and, when online, kick off a background round."""
        item = await self.queue.enqueue(entity.entity_type, entity.id, action, entity)
        if self._is_online:
            self._auto_sync()
        return item

    # =========================================================================
    # Connectivity and switches
    # =========================================================================

    async def set_online(self, online: bool) -> None:
        """Record a connectivity change; coming back online triggers a round."""
        was_online = self._is_online
        self._is_online = online
        if online and not was_online:
            logger.info("Connectivity restored, triggering sync")
            self._auto_sync()

    async def check_connectivity(self) -> bool:
        """Ask the transport whether the server is reachable.

        Returns:
            True if online, False otherwise
        """
        online = await self.transport.check_health()
        await self.set_online(online)
        return online

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    async def logout(self) -> None:
        """Forget pending changes and the cursor, and switch sync off."""
        if self._sync_task is not None and not self._sync_task.done():
            await self._sync_task
        dropped = await self.queue.clear()
        await self.cursor.reset()
        self.disable()
        self._last_error = None
        await self.transport.close()
        logger.info(f"Logged out, dropped {dropped} pending changes")

    async def get_status(self) -> SyncStatus:
        """Get current sync status."""
        return SyncStatus(
            is_online=self._is_online,
            is_syncing=self.is_syncing,
            pending_changes=await self.queue.pending_count(),
            last_sync=await self.cursor.get(),
            last_error=self._last_error,
            enabled=self.enabled,
        )

    # =========================================================================
    # Sync rounds
    # =========================================================================

    def trigger_sync(self) -> asyncio.Task[SyncResult] | None:
        """Start a round in the background unless one is already running.

        Returns:
            The running task, or None when sync is disabled
        """
        if not self.enabled:
            return None
        if self._sync_task is not None and not self._sync_task.done():
            return self._sync_task
        self._sync_task = asyncio.create_task(self.sync_now())
        return self._sync_task

    def _auto_sync(self) -> None:
        if self.auto_sync:
            self.trigger_sync()

    async def wait_for_sync(self) -> SyncResult | None:
        """Wait for the background round started by trigger_sync, if any."""
        if self._sync_task is None:
            return None
        return await self._sync_task

    async def sync_now(self) -> SyncResult:
        """Run one sync round immediately.

        Returns:
            Result of the round; a round already in flight yields a
            skipped result instead of a second concurrent round
        """
        if not self.enabled:
            return SyncResult(success=False, skipped=True, error="Sync disabled")

        if not self._is_online:
            return SyncResult(success=False, skipped=True, error="Offline")

        if self._state == SyncState.SYNCING:
            return SyncResult(success=False, skipped=True, error="Sync already in progress")

        self._state = SyncState.SYNCING
        start_time = datetime.now(UTC)

        try:
            result = await self._run_round()
        except TransportError as e:
            logger.warning(f"Sync round failed: {e}")
            result = SyncResult(success=False, error=str(e))
        except FirewoodSyncError as e:
            logger.error(f"Sync round failed: {e}")
            result = SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Sync round failed")
            result = SyncResult(success=False, error=str(e))
        finally:
            self._state = SyncState.IDLE

        result.duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)
        self._last_error = result.error
        return result

    async def _run_round(self) -> SyncResult:
        drained = await self.queue.drain()
        request = SyncRequest(last_sync_timestamp=await self.cursor.get())
        for item in drained:
            request.items_for(item.entity_type).append(item.to_sync_item())

        response = await self.transport.send(request)

        try:
            pulled = await self.apply_server_changes(response, drained)
        except FirewoodSyncError as e:
            raise SyncError("Failed to apply server changes", cause=e) from e
        await self.queue.acknowledge(drained)
        await self.cursor.advance(response.server_timestamp)

        logger.info(
            f"Sync complete: pushed {len(drained)}, pulled {pulled}, "
            f"conflicts {len(response.conflicts)}"
        )
        return SyncResult(
            success=True,
            pushed=len(drained),
            pulled=pulled,
            conflicts=len(response.conflicts),
            server_timestamp=response.server_timestamp,
        )

    async def _edited_during_round(self, delivered: list[ChangeQueueItem]) -> set[QueueKey]:
        """Keys whose queued change is newer than what this round delivered."""
        by_key = {item.key: item for item in delivered}
        edited: set[QueueKey] = set()
        for entity_type in EntityType:
            for record in await self.store.filter(
                entity_type, lambda r: r.sync_status == RecordStatus.PENDING
            ):
                key = (entity_type, record.id)
                pending = await self.queue.get(entity_type, record.id)
                if pending is None:
                    continue
                sent = by_key.get(key)
                if sent is None or not pending.same_change(sent):
                    edited.add(key)
        return edited

    async def apply_server_changes(
        self,
        response: SyncResponse,
        delivered: list[ChangeQueueItem] | None = None,
    ) -> int:
        """Merge a server response into the entity store as one transaction.

        Created records are inserted only if absent, updated records
        overwrite, deleted ids are hard-removed, and conflict winners
        replace the local row. Records with a local edit newer than the
        delivered queue item keep their local value; the edit goes up in
        the next round.

        Args:
            response: Server answer for this round
            delivered: Queue items shipped in this round

        Returns:
            Number of delta records in the response
        """
        delivered = delivered or []
        synced_at = response.server_timestamp
        edited = await self._edited_during_round(delivered)
        pulled = 0

        def synced(entity: Entity) -> Entity:
            return entity.with_changes(
                sync_status=RecordStatus.SYNCED, last_synced_at=synced_at
            )

        async with self.store.transaction():
            for entity_type in EntityType:
                changes = response.changes_for(entity_type)
                pulled += len(changes.created) + len(changes.updated) + len(changes.deleted)

                for entity in changes.created:
                    if (entity_type, entity.id) in edited:
                        continue
                    if await self.store.get(entity_type, entity.id) is None:
                        await self.store.put(synced(entity))

                for entity in changes.updated:
                    if (entity_type, entity.id) not in edited:
                        await self.store.put(synced(entity))

                for entity_id in changes.deleted:
                    await self.store.delete(entity_type, entity_id)

            for conflict in response.conflicts:
                key = (conflict.entity_type, conflict.entity_id)
                if conflict.resolved_data.is_deleted:
                    await self.store.delete(conflict.entity_type, conflict.entity_id)
                elif key not in edited:
                    await self.store.put(synced(conflict.resolved_data))
                logger.info(
                    f"Conflict on {conflict.entity_type.value} {conflict.entity_id}: "
                    f"{conflict.winner.value} wins"
                )

            for item in delivered:
                if item.key in edited:
                    continue
                record = await self.store.get(item.entity_type, item.entity_id)
                if record is None:
                    continue
                if record.is_deleted:
                    # Delete confirmed, the local tombstone is no longer needed
                    await self.store.delete(item.entity_type, item.entity_id)
                elif record.sync_status != RecordStatus.SYNCED:
                    await self.store.put(synced(record))

        return pulled
