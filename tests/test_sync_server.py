"""
Tests for server-side reconciliation.

Every test runs against a real in-memory SQLite store with a fixed clock.
"""

import asyncio
from datetime import timedelta

import pytest

from firewood_sync.exceptions import AuthenticationError, ValidationError
from firewood_sync.protocol import (
    ChangeAction,
    EntityType,
    SyncItem,
    SyncRequest,
    Winner,
    format_timestamp,
)
from firewood_sync.sync.server import SyncServer


def item(entity, action, local_updated_at=None):
    return SyncItem(
        data=entity,
        action=action,
        local_updated_at=local_updated_at or entity.updated_at,
    )


class TestCreate:
    """Tests for incoming creates."""

    @pytest.mark.asyncio
    async def test_create_inserts_verbatim(self, server, server_store, make_rack):
        rack = make_rack("r1")

        response = await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(rack, ChangeAction.CREATE)])
        )

        assert response.racks.created == [rack]
        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.created_at == rack.created_at
        assert row.updated_at == rack.updated_at

    @pytest.mark.asyncio
    async def test_create_of_existing_row_is_noop(
        self, server, server_store, seed_server, make_rack
    ):
        await seed_server(make_rack("r1", name="Server"))
        incoming = make_rack("r1", name="Client")

        response = await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(incoming, ChangeAction.CREATE)])
        )

        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.name == "Server"
        assert response.conflicts == []

    @pytest.mark.asyncio
    async def test_create_uses_local_updated_at(self, server, server_store, make_rack, clock):
        rack = make_rack("r1")
        local = rack.updated_at + timedelta(seconds=3)

        await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(rack, ChangeAction.CREATE, local)])
        )

        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.updated_at == local


class TestUpdateAndDelete:
    """Tests for incoming updates and deletes."""

    @pytest.mark.asyncio
    async def test_newer_update_wins_and_is_stamped(
        self, server, server_store, seed_server, make_rack, clock
    ):
        original = make_rack("r1")
        await seed_server(original)
        edited = original.with_changes(name="Barn", updated_at=original.updated_at + timedelta(1))

        response = await server.reconcile(
            "user-1",
            SyncRequest(clock.now, racks=[item(edited, ChangeAction.UPDATE)]),
        )

        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.name == "Barn"
        assert row.updated_at == max(clock.now, original.updated_at)
        assert row.created_at == original.created_at
        assert [r.id for r in response.racks.updated] == ["r1"]
        assert response.racks.updated[0].name == "Barn"
        assert response.conflicts == []

    @pytest.mark.asyncio
    async def test_tie_favors_incoming_write(self, server, server_store, seed_server, make_rack):
        original = make_rack("r1")
        await seed_server(original)
        edited = original.with_changes(name="Barn")

        response = await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(edited, ChangeAction.UPDATE)])
        )

        assert response.conflicts == []
        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.name == "Barn"

    @pytest.mark.asyncio
    async def test_stale_update_loses(self, server, server_store, seed_server, make_rack, clock):
        current = make_rack("r1", name="Server", stamp=clock.now)
        await seed_server(current)
        stale = current.with_changes(
            name="Client", updated_at=clock.now - timedelta(minutes=5)
        )

        response = await server.reconcile(
            "user-1", SyncRequest(clock.now, racks=[item(stale, ChangeAction.UPDATE)])
        )

        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.name == "Server"
        assert len(response.conflicts) == 1
        conflict = response.conflicts[0]
        assert conflict.winner == Winner.SERVER
        assert conflict.entity_id == "r1"
        assert conflict.resolved_data == row

    @pytest.mark.asyncio
    async def test_update_never_changes_rack_id(
        self, server, server_store, seed_server, make_consumption
    ):
        entry = make_consumption("e1", rack_id="r1")
        await seed_server(entry)
        moved = entry.with_changes(
            rack_id="r2", percentage=60.0, updated_at=entry.updated_at + timedelta(1)
        )

        await server.reconcile(
            "user-1", SyncRequest(None, consumptions=[item(moved, ChangeAction.UPDATE)])
        )

        row = await server_store.get_row(EntityType.CONSUMPTION, "user-1", "e1")
        assert row.percentage == 60.0
        assert row.rack_id == "r1"

    @pytest.mark.asyncio
    async def test_update_or_delete_of_missing_row_is_noop(self, server, server_store, make_rack):
        ghost = make_rack("ghost")

        response = await server.reconcile(
            "user-1",
            SyncRequest(
                None,
                racks=[item(ghost, ChangeAction.UPDATE)],
            ),
        )
        tombstone = ghost.tombstoned(ghost.updated_at)
        response_delete = await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(tombstone, ChangeAction.DELETE)])
        )

        for result in (response, response_delete):
            assert result.racks.is_empty()
            assert result.conflicts == []
        assert await server_store.get_row(EntityType.RACK, "user-1", "ghost") is None

    @pytest.mark.asyncio
    async def test_delete_tombstones_row(
        self, server, server_store, seed_server, make_consumption, clock
    ):
        entry = make_consumption("e1")
        await seed_server(entry)
        tombstone = entry.tombstoned(clock.now)

        response = await server.reconcile(
            "user-1", SyncRequest(clock.now, consumptions=[item(tombstone, ChangeAction.DELETE)])
        )

        row = await server_store.get_row(EntityType.CONSUMPTION, "user-1", "e1")
        assert row.deleted_at is not None
        assert row.deleted_at >= row.created_at
        assert row.updated_at == row.deleted_at
        assert response.consumptions.deleted == ["e1"]
        assert response.consumptions.created == []
        assert response.consumptions.updated == []

    @pytest.mark.asyncio
    async def test_update_of_tombstoned_row_is_refused(
        self, server, server_store, seed_server, make_rack, clock
    ):
        rack = make_rack("r1")
        await seed_server(rack.tombstoned(rack.updated_at))
        late_edit = rack.with_changes(name="Revived", updated_at=clock.now + timedelta(hours=1))

        response = await server.reconcile(
            "user-1", SyncRequest(clock.now, racks=[item(late_edit, ChangeAction.UPDATE)])
        )

        row = await server_store.get_row(EntityType.RACK, "user-1", "r1")
        assert row.is_deleted
        assert row.name == "Woodshed"
        assert response.conflicts[0].resolved_data.is_deleted


class TestIdempotentReplay:
    """Replaying a request must converge to the same server state."""

    async def _snapshot(self, server_store, entity_ids):
        return {
            entity_id: await server_store.get_row(EntityType.RACK, "user-1", entity_id)
            for entity_id in entity_ids
        }

    @pytest.mark.asyncio
    async def test_replay_after_lost_response(
        self, server, server_store, seed_server, make_rack, clock
    ):
        existing = make_rack("r-upd")
        doomed = make_rack("r-del")
        await seed_server(existing, doomed)

        # Client edits happen before the round reaches the server
        edited_at = clock.now - timedelta(seconds=1)
        request = SyncRequest(
            None,
            racks=[
                item(make_rack("r-new"), ChangeAction.CREATE),
                item(
                    existing.with_changes(name="Edited", updated_at=edited_at),
                    ChangeAction.UPDATE,
                ),
                item(doomed.tombstoned(edited_at), ChangeAction.DELETE),
            ],
        )
        ids = ["r-new", "r-upd", "r-del"]

        await server.reconcile("user-1", request)
        after_first = await self._snapshot(server_store, ids)

        clock.advance(30)
        replay = await server.reconcile("user-1", request)
        after_second = await self._snapshot(server_store, ids)

        assert after_second == after_first
        # No double tombstoning
        assert after_second["r-del"].deleted_at == after_first["r-del"].deleted_at
        assert "r-del" in replay.racks.deleted
        rows = await server_store.rows_changed_since(
            EntityType.RACK, "user-1", existing.created_at - timedelta(1)
        )
        assert sorted(row.id for row in rows) == sorted(ids)


class TestDeltas:
    """Tests for delta computation and classification."""

    @pytest.mark.asyncio
    async def test_null_cursor_returns_everything_as_created(
        self, server, seed_server, make_rack, make_consumption
    ):
        await seed_server(make_rack("r1", volume_steres=2.0), make_consumption("e1"))

        response = await server.reconcile("user-1", SyncRequest(None))

        assert [r.id for r in response.racks.created] == ["r1"]
        assert response.racks.created[0].volume_steres == 2.0
        assert [e.id for e in response.consumptions.created] == ["e1"]

    @pytest.mark.asyncio
    async def test_created_vs_updated_by_cursor(self, server, seed_server, make_rack, clock):
        t0 = clock.now - timedelta(hours=2)
        t1 = clock.now - timedelta(hours=1)
        await seed_server(make_rack("r1", created_at=t0, updated_at=t0))

        before_create = await server.reconcile(
            "user-1", SyncRequest(t0 - timedelta(milliseconds=1))
        )
        assert [r.id for r in before_create.racks.created] == ["r1"]

        # Edit the rack at t1, then ask from a cursor between t0 and t1
        edit = make_rack("r1", name="Edited", created_at=t0, updated_at=t1)
        await server.reconcile("user-1", SyncRequest(None, racks=[item(edit, ChangeAction.UPDATE)]))
        between = t0 + timedelta(minutes=30)

        after_edit = await server.reconcile("user-1", SyncRequest(between))

        assert after_edit.racks.created == []
        assert [r.id for r in after_edit.racks.updated] == ["r1"]
        assert after_edit.racks.updated[0].name == "Edited"

    @pytest.mark.asyncio
    async def test_rows_older_than_cursor_are_not_sent(self, server, seed_server, make_rack, clock):
        await seed_server(make_rack("r1", stamp=clock.now - timedelta(hours=1)))

        response = await server.reconcile("user-1", SyncRequest(clock.now))

        assert response.racks.is_empty()

    @pytest.mark.asyncio
    async def test_tombstones_are_reported_as_deleted(self, server, seed_server, make_rack, clock):
        rack = make_rack("r1", stamp=clock.now - timedelta(hours=2))
        await seed_server(rack.tombstoned(clock.now - timedelta(hours=1)))

        response = await server.reconcile(
            "user-1", SyncRequest(clock.now - timedelta(hours=3))
        )

        assert response.racks.deleted == ["r1"]
        assert response.racks.created == []

    @pytest.mark.asyncio
    async def test_own_write_is_reported_once(self, server, make_rack):
        rack = make_rack("r1")

        response = await server.reconcile(
            "user-1", SyncRequest(None, racks=[item(rack, ChangeAction.CREATE)])
        )

        assert [r.id for r in response.racks.created] == ["r1"]
        assert response.racks.updated == []

    @pytest.mark.asyncio
    async def test_users_do_not_see_each_other(self, server, seed_server, make_rack):
        await seed_server(make_rack("mine"), user_id="user-1")
        await seed_server(make_rack("theirs"), user_id="user-2")

        response = await server.reconcile("user-1", SyncRequest(None))

        assert [r.id for r in response.racks.created] == ["mine"]

    @pytest.mark.asyncio
    async def test_server_timestamp_and_bookkeeping(self, server, server_store, clock):
        response = await server.reconcile("user-1", SyncRequest(None))

        assert response.server_timestamp == clock.now
        assert await server_store.get_last_sync("user-1") == clock.now

        status = await server.status("user-1")
        assert status["userId"] == "user-1"
        assert status["lastSyncTimestamp"] == format_timestamp(clock.now)


class TestUserLocks:
    """Tests for per-user serialization of rounds."""

    @pytest.mark.asyncio
    async def test_rounds_for_one_user_share_a_lock(self, server):
        first = server._lock_for("user-1")

        assert server._lock_for("user-1") is first
        assert server._lock_for("user-2") is not first

    @pytest.mark.asyncio
    async def test_locks_are_dropped_after_rounds(self, server, make_rack):
        for n in range(5):
            request = SyncRequest(None, racks=[item(make_rack(f"r{n}"), ChangeAction.CREATE)])
            await server.reconcile(f"user-{n}", request)

        assert len(server._user_locks) == 0

    @pytest.mark.asyncio
    async def test_concurrent_rounds_for_one_user_are_serialized(self, server, make_rack):
        rounds = [
            server.reconcile("user-1", SyncRequest(None, racks=[item(make_rack("r1"), action)]))
            for action in (ChangeAction.CREATE, ChangeAction.CREATE)
        ]

        first, second = await asyncio.gather(*rounds)

        assert [r.id for r in first.racks.created] == ["r1"]
        assert [r.id for r in second.racks.created] == ["r1"]
        assert len(server._user_locks) == 0


class TestWireHandling:
    """Tests for the dict-level entry point."""

    @pytest.mark.asyncio
    async def test_handle_sync_round_trip(self, server, make_rack):
        rack = make_rack("r1")
        payload = SyncRequest(None, racks=[item(rack, ChangeAction.CREATE)]).to_dict()

        result = await server.handle_sync("user-1", payload)

        assert result["racks"]["created"][0]["id"] == "r1"
        assert result["serverTimestamp"].endswith("Z")
        assert result["conflicts"] == []

    @pytest.mark.asyncio
    async def test_handle_sync_rejects_malformed_items(self, server):
        with pytest.raises(ValidationError):
            await server.handle_sync(
                "user-1", {"racks": [{"action": "create", "data": {"name": "no id"}}]}
            )


class TestAuthentication:
    """Tests for bearer token validation."""

    def test_token_is_user_id_without_validator(self, server_store):
        server = SyncServer(server_store)
        assert server.validate_auth("Bearer user-42") == "user-42"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "user-42"])
    def test_rejects_malformed_headers(self, server_store, header):
        assert SyncServer(server_store).validate_auth(header) is None

    def test_custom_validator(self, server_store):
        tokens = {"secret": "user-1"}
        server = SyncServer(server_store, auth_validator=tokens.get)

        assert server.validate_auth("Bearer secret") == "user-1"
        assert server.validate_auth("Bearer wrong") is None

    def test_authenticate_raises(self, server_store):
        server = SyncServer(server_store, auth_validator=lambda token: None)
        with pytest.raises(AuthenticationError):
            server.authenticate("Bearer anything")
