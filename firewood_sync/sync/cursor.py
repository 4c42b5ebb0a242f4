"""
Sync cursor persistence.

The cursor is the server-time watermark below which the local replica is
known to reflect the server. It only moves after a fully successful round.
"""

import logging
from datetime import datetime
from pathlib import Path

from ..protocol import format_timestamp, parse_optional_timestamp
from ..storage.file_ops import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class SyncCursor:
    """Single lastSyncTimestamp per client, stored as a small JSON document.

    Without a state_path the cursor lives in memory only.
    """

    def __init__(self, state_path: Path | None = None):
        self.state_path = state_path
        self._value: datetime | None = None
        self._loaded = False

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        if self.state_path is not None:
            data = await read_json(self.state_path) or {}
            self._value = parse_optional_timestamp(
                data.get("last_sync_timestamp"), "last_sync_timestamp"
            )

        self._loaded = True

    async def get(self) -> datetime | None:
        """Current watermark, None if this client never synced."""
        await self._ensure_loaded()
        return self._value

    async def advance(self, value: datetime) -> None:
        """Move the watermark to value and persist it."""
        await self._ensure_loaded()
        await self._write(value)
        logger.debug(f"Sync cursor advanced to {format_timestamp(value)}")

    async def reset(self) -> None:
        """Forget the watermark; the next round pulls everything."""
        await self._ensure_loaded()
        await self._write(None)

    async def _write(self, value: datetime | None) -> None:
        if self.state_path is not None:
            await write_json_atomic(
                self.state_path,
                {"last_sync_timestamp": format_timestamp(value) if value else None},
            )
        self._value = value
