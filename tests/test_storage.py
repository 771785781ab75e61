"""Tests for the key-value storage."""

import pytest

from quillsync.storage import MemoryStorage, MemoryStore, SQLiteStorage, StorageError


@pytest.fixture
def sqlite_storage():
    storage = SQLiteStorage(":memory:")
    storage.connect()
    yield storage
    storage.close()


class TestSQLiteBucket:
    """Tests for buckets of the SQLite storage."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, sqlite_storage):
        """Test storing JSON values."""
        bucket = sqlite_storage.bucket("changes")
        await bucket.set("note", ["N0_1", "N1_1"])
        await bucket.set("note_N0_1", {"key": "N0_1", "last_change": 5})

        assert await bucket.get("note") == ["N0_1", "N1_1"]
        assert await bucket.get("note_N0_1") == {"key": "N0_1", "last_change": 5}

    @pytest.mark.asyncio
    async def test_get_default(self, sqlite_storage):
        """Test missing keys return the default."""
        bucket = sqlite_storage.bucket("changes")

        assert await bucket.get("missing") is None
        assert await bucket.get("missing", []) == []

    @pytest.mark.asyncio
    async def test_overwrite(self, sqlite_storage):
        """Test a key is overwritten in place."""
        bucket = sqlite_storage.bucket("changes")
        await bucket.set("last_save", 1)
        await bucket.set("last_save", 2)

        assert await bucket.get("last_save") == 2
        assert await bucket.keys() == ["last_save"]

    @pytest.mark.asyncio
    async def test_buckets_are_isolated(self, sqlite_storage):
        """Test clearing one bucket keeps the others."""
        steps = sqlite_storage.bucket("steps")
        notes = sqlite_storage.bucket("note")
        await steps.set("keys", ["S0_1"])
        await notes.set("keys", ["N0_1"])

        await steps.clear()

        assert await steps.get("keys") is None
        assert await notes.get("keys") == ["N0_1"]

    @pytest.mark.asyncio
    async def test_remove(self, sqlite_storage):
        """Test removing a key, ignoring missing keys."""
        bucket = sqlite_storage.bucket("changes")
        await bucket.set("a", 1)

        await bucket.remove("a")
        await bucket.remove("never-stored")

        assert await bucket.keys() == []

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path):
        """Test values survive a reconnect to the same file."""
        db_path = tmp_path / "nested" / "state.db"
        storage = SQLiteStorage(db_path)
        storage.connect()
        await storage.bucket("api").set("time_offset", 1500)
        storage.close()

        reopened = SQLiteStorage(db_path)
        reopened.connect()
        try:
            assert await reopened.bucket("api").get("time_offset") == 1500
        finally:
            reopened.close()

    @pytest.mark.asyncio
    async def test_database_error_is_wrapped(self, sqlite_storage):
        """Test sqlite errors surface as StorageError."""
        sqlite_storage.execute("DROP TABLE kv_store")

        with pytest.raises(StorageError):
            await sqlite_storage.bucket("changes").get("note")


class TestMemoryStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        """Test stored values are not shared with the caller."""
        store = MemoryStore()
        data = {"keys": ["a"]}
        await store.set("x", data)
        data["keys"].append("b")

        assert await store.get("x") == {"keys": ["a"]}

    @pytest.mark.asyncio
    async def test_memory_storage_reuses_buckets(self):
        """Test the same bucket is returned for a name."""
        storage = MemoryStorage()
        await storage.bucket("steps").set("keys", [])

        assert storage.bucket("steps") is storage.bucket("steps")
        assert await storage.bucket("steps").get("keys") == []
