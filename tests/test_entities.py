"""Tests for entity records."""

import pytest

from quillsync.entities import EntityStore
from quillsync.models import ChangeAction
from quillsync.storage import MemoryStore
from quillsync.sync import ChangeLedger


@pytest.fixture
def ledger(clock):
    return ChangeLedger(MemoryStore("changes"), clock)


@pytest.fixture
def notes(ledger, store):
    return EntityStore("note", store, ledger)


class TestEntityStore:
    """Tests for EntityStore."""

    @pytest.mark.asyncio
    async def test_put_queues_change(self, notes, ledger, store):
        """Test saving an entity stores it and queues a change."""
        assert await notes.put("N0_1", {"text": "hello"}) is True

        assert notes.get("N0_1") == {"text": "hello"}
        assert await store.get("N0_1") == {"text": "hello"}
        assert ledger.get_change("note", "N0_1").action == ChangeAction.SAVE

    @pytest.mark.asyncio
    async def test_unchanged_put_is_ignored(self, notes, ledger):
        """Test saving equal data queues nothing new."""
        await notes.put("N0_1", {"text": "hello"})
        first = ledger.get_change("note", "N0_1").last_change

        assert await notes.put("N0_1", {"text": "hello"}) is False
        assert ledger.get_change("note", "N0_1").last_change == first

    @pytest.mark.asyncio
    async def test_reserved_key_is_rejected(self, notes, ledger, store):
        """Test the key of the key index cannot hold an entity."""
        await notes.put("N0_1", {"text": "hello"})

        assert await notes.put("keys", {"text": "clash"}) is False

        assert notes.get("keys") is None
        assert ledger.get_change("note", "keys") is None
        restored = EntityStore("note", store, ledger)
        await restored.load_from_storage()
        assert restored.keys() == ["N0_1"]

    @pytest.mark.asyncio
    async def test_backend_reserved_key_is_skipped(self, notes):
        """Test backend records under the index key are not stored."""
        await notes.load_from_backend({"keys": {"text": "clash"}, "N0_1": {"text": "ok"}})

        assert notes.keys() == ["N0_1"]

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, notes):
        """Test callers cannot change stored data in place."""
        await notes.put("N0_1", {"tags": ["a"]})

        notes.get("N0_1")["tags"].append("b")

        assert notes.get("N0_1") == {"tags": ["a"]}

    @pytest.mark.asyncio
    async def test_delete(self, notes, ledger, store):
        """Test deleting queues a delete change."""
        await notes.put("N0_1", {"text": "hello"})

        assert await notes.delete("N0_1") is True
        assert await notes.delete("N0_1") is False

        assert notes.keys() == []
        assert await store.get("N0_1") is None
        assert ledger.get_change("note", "N0_1").action == ChangeAction.DELETE

    @pytest.mark.asyncio
    async def test_rename_key(self, notes, store):
        """Test moving an entity to a backend assigned key."""
        await notes.put("tmp-1", {"text": "hello"})
        await notes.put("tmp-2", {"text": "world"})

        await notes.rename_key("tmp-1", "N5_1")

        assert notes.keys() == ["N5_1", "tmp-2"]
        assert await store.get("tmp-1") is None
        assert await store.get("N5_1") == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_load_from_storage(self, notes, ledger, store):
        """Test records survive a restart."""
        await notes.put("N0_1", {"text": "hello"})

        restored = EntityStore("note", store, ledger)
        await restored.load_from_storage()

        assert restored.get("N0_1") == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_load_from_backend(self, notes, ledger):
        """Test backend records replace local ones without queueing."""
        await notes.load_from_backend({"N3_1": {"text": "from backend"}})

        assert notes.keys() == ["N3_1"]
        assert ledger.count() == 0
