"""Tests for the request handoff store."""

from __future__ import annotations

import time

import pytest

from wallet_broker.storage.database import Database
from wallet_broker.storage.handoff import HandoffStore

ORIGIN = "https://dapp.example"


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "broker.db")
    await database.connect()
    yield database
    await database.close()


class TestHandoffStore:
    async def test_store_and_get(self):
        store = HandoffStore()
        record = await store.store("compose", ORIGIN, {"type": "send"})
        assert record.id.startswith("compose-")
        assert (await store.get(record.id)).payload == {"type": "send"}

    async def test_database_backup_survives_memory_loss(self, db):
        store = HandoffStore(db)
        record = await store.store("sign-message", ORIGIN, {"message": "hi"}, request_id="sign-message-1")
        fresh = HandoffStore(db)
        restored = await fresh.get("sign-message-1")
        assert restored is not None
        assert restored.payload == {"message": "hi"}
        assert restored.origin == ORIGIN
        assert restored.id == record.id

    async def test_remove(self, db):
        store = HandoffStore(db)
        record = await store.store("compose", ORIGIN, {})
        assert await store.remove(record.id)
        assert await store.get(record.id) is None
        assert not await store.remove(record.id)

    async def test_discard_is_memory_only(self, db):
        store = HandoffStore(db)
        record = await store.store("compose", ORIGIN, {"a": 1})
        assert store.discard(record.id)
        assert len(store) == 0
        # Still recoverable from the database until removed or pruned
        assert (await store.get(record.id)).payload == {"a": 1}

    async def test_prune_by_age(self, db):
        store = HandoffStore(db, max_age_seconds=600)
        old = await store.store("compose", ORIGIN, {})
        new = await store.store("compose", ORIGIN, {})
        store._records[old.id].created_at = time.time() - 1200
        await db.execute(
            "UPDATE request_handoff SET created_at = ? WHERE id = ?",
            (time.time() - 1200, old.id),
        )
        assert await store.prune() == 1
        assert await store.get(old.id) is None
        assert await store.get(new.id) is not None

    async def test_clear(self, db):
        store = HandoffStore(db)
        await store.store("compose", ORIGIN, {})
        await store.clear()
        assert len(store) == 0
        assert await db.fetch_all("SELECT * FROM request_handoff") == []
