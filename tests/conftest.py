"""
Shared test configuration and fixtures.

Server-side tests run against a real in-memory SQLite store. Client-side
tests talk to that server through LocalTransport, so every round goes
through the same JSON wire format as over HTTP.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from firewood_sync.protocol import ConsumptionEntry, Rack, utc_now
from firewood_sync.storage.memory import InMemoryEntityStore
from firewood_sync.storage.sqlite import SQLiteConfig, SQLiteServerStore
from firewood_sync.sync.client import SyncClient
from firewood_sync.sync.cursor import SyncCursor
from firewood_sync.sync.queue import ChangeQueue
from firewood_sync.sync.server import SyncServer
from firewood_sync.sync.transport import LocalTransport


class FakeClock:
    """Server clock that only moves when a test says so.

    With a non-zero step, every reading first moves the clock forward.
    """

    def __init__(self, start: datetime | None = None, step: float = 0.0):
        self.now = start or utc_now()
        self.step = step

    def __call__(self) -> datetime:
        if self.step:
            self.advance(self.step)
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_rack():
    """Factory for racks; timestamps default to one day ago."""

    def factory(rack_id: str | None = None, **overrides) -> Rack:
        stamp = overrides.pop("stamp", utc_now() - timedelta(days=1))
        fields = {
            "id": rack_id or str(uuid.uuid4()),
            "name": "Woodshed",
            "height": 100.0,
            "width": 200.0,
            "depth": 33.0,
            "log_size": 33,
            "volume_m3": 0.66,
            "volume_steres": 2.0,
            "created_at": stamp,
            "updated_at": stamp,
        }
        fields.update(overrides)
        return Rack(**fields)

    return factory


@pytest.fixture
def make_consumption():
    """Factory for consumption entries; timestamps default to one day ago."""

    def factory(entry_id: str | None = None, rack_id: str = "r1", **overrides) -> ConsumptionEntry:
        stamp = overrides.pop("stamp", utc_now() - timedelta(days=1))
        fields = {
            "id": entry_id or str(uuid.uuid4()),
            "rack_id": rack_id,
            "type": "consumption",
            "percentage": 25.0,
            "date": stamp,
            "week_number": 3,
            "year": 2024,
            "created_at": stamp,
            "updated_at": stamp,
        }
        fields.update(overrides)
        return ConsumptionEntry(**fields)

    return factory


@pytest.fixture
async def server_store():
    """Initialized in-memory SQLite server store."""
    store = await SQLiteServerStore.create(SQLiteConfig(db_path=":memory:"))
    yield store
    await store.close()


@pytest.fixture
def server(server_store, clock) -> SyncServer:
    return SyncServer(server_store, clock=clock)


@pytest.fixture
def seed_server(server_store):
    """Insert rows directly into the server store."""

    async def seed(*entities, user_id: str = "user-1") -> None:
        async with server_store.transaction():
            for entity in entities:
                await server_store.insert_row(user_id, entity)

    return seed


@pytest.fixture
def make_client(server):
    """Factory for clients wired to the in-process server."""

    def factory(
        user_id: str = "user-1",
        store=None,
        transport=None,
        online: bool = True,
        auto_sync: bool = False,
    ) -> SyncClient:
        return SyncClient(
            store=store if store is not None else InMemoryEntityStore(),
            queue=ChangeQueue(),
            cursor=SyncCursor(),
            transport=transport or LocalTransport(server, user_id),
            online=online,
            auto_sync=auto_sync,
        )

    return factory


@pytest.fixture
def client(make_client) -> SyncClient:
    return make_client()
