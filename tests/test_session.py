"""End-to-end tests for the writer session."""

import json

import httpx
import pytest

from quillsync.clock import ServerClock
from quillsync.config import BackendConfig, Config, SyncConfig
from quillsync.history import CheckOutcome
from quillsync.session import WriterSession
from quillsync.storage import MemoryStorage

TEXT = (
    "The essay starts with a long introduction that explains the question, "
    "the sources that were used and the structure of the following chapters. "
)


class FakeBackend:
    """Acknowledges every change it receives."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.batches = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(403, text="Forbidden")
        batch = json.loads(request.content)
        self.batches.append(batch)
        return httpx.Response(
            200,
            json={
                entity_type: [
                    {"key": item["key"], "action": item["action"], "done": True}
                    for item in items
                ]
                for entity_type, items in batch.items()
            },
        )


@pytest.fixture
def config():
    return Config(
        backend=BackendConfig(url="http://backend.test", user_id="1", data_token="t"),
        sync=SyncConfig(flush_wait_attempts=1, flush_wait_delay_seconds=0),
    )


@pytest.fixture
def storage():
    return MemoryStorage()


def make_session(config, storage, fake_time, backend):
    return WriterSession(
        config,
        storage=storage,
        clock=ServerClock(time_source=fake_time),
        http_transport=httpx.MockTransport(backend),
    )


class TestWriterSession:
    """Tests for WriterSession."""

    @pytest.mark.asyncio
    async def test_edit_save_and_flush(self, config, storage, fake_time):
        """Test edits become steps that are delivered and retired."""
        backend = FakeBackend()
        session = make_session(config, storage, fake_time, backend)
        await session.open()

        session.document(1).update_content(TEXT)
        assert await session.trigger_check(1) == CheckOutcome.FULL_SAVE
        fake_time.advance(6)
        session.document(1).update_content(TEXT + "A second sentence follows.")
        assert await session.trigger_check(1) == CheckOutcome.DELTA_SAVE
        await session.entities["note"].put("N0_1", {"text": "remember sources"})

        result = await session.flush()

        assert result.success is True
        assert result.sent == 3
        assert [item["key"] for item in backend.batches[0]["step"]] == ["S0_1", "S1_1"]
        assert backend.batches[0]["step"][1]["payload"]["is_delta"] is True
        assert session.ledger.count() == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_changes(self, config, storage, fake_time):
        """Test changes stay pending when the backend rejects the request."""
        session = make_session(config, storage, fake_time, FakeBackend(fail=True))
        await session.open()
        session.document(1).update_content(TEXT)
        await session.trigger_check(1)

        result = await session.flush()

        assert result.success is False
        assert session.ledger.count() == 1
        assert session.status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_restart_restores_pending_changes(self, config, storage, fake_time):
        """Test unsent steps survive a restart and are sent later."""
        session = make_session(config, storage, fake_time, FakeBackend(fail=True))
        await session.open()
        session.document(1).update_content(TEXT)
        await session.trigger_check(1)
        await session.flush()
        await session.close()

        backend = FakeBackend()
        restarted = make_session(config, storage, fake_time, backend)
        await restarted.open()

        assert restarted.ledger.count() == 1
        assert restarted.document(1).state.stored_content == TEXT
        assert restarted.steps.replay(1) == TEXT

        result = await restarted.flush()

        assert result.success is True
        assert backend.batches[0]["step"][0]["payload"]["content"] == TEXT
        assert restarted.ledger.count() == 0

    @pytest.mark.asyncio
    async def test_load_from_backend(self, config, storage, fake_time):
        """Test backend data replaces local state without queueing changes."""
        session = make_session(config, storage, fake_time, FakeBackend())
        await session.open()

        await session.load_from_backend({
            "documents": [{"task_id": 1, "content": TEXT, "hash": "h0"}],
            "steps": [{"task_id": 1, "index": 0, "is_delta": False, "content": TEXT,
                       "hash_after": "h0"}],
            "note": {"N0_1": {"text": "existing"}},
        })

        assert session.ledger.count() == 0
        assert session.entities["note"].get("N0_1") == {"text": "existing"}
        assert await session.trigger_check(1) == CheckOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_unsent_changes_keep_local_state(self, config, storage, fake_time):
        """Test backend data does not replace unsent local changes."""
        session = make_session(config, storage, fake_time, FakeBackend())
        await session.open()
        await session.entities["note"].put("N0_1", {"text": "local"})

        loaded = await session.load_from_backend({"note": {"N0_1": {"text": "remote"}}})

        assert loaded is False
        assert session.entities["note"].get("N0_1") == {"text": "local"}

    @pytest.mark.asyncio
    async def test_clear(self, config, storage, fake_time):
        """Test clearing drops all local state."""
        session = make_session(config, storage, fake_time, FakeBackend())
        await session.open()
        session.document(1).update_content(TEXT)
        await session.trigger_check(1)

        await session.clear()

        assert session.ledger.count() == 0
        assert session.steps.count() == 0
        assert session.status()["documents"] == {}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config, storage, fake_time):
        """Test the periodic tasks are started and stopped."""
        session = make_session(config, storage, fake_time, FakeBackend())
        await session.open()

        session.start()
        assert [t.name for t in session._tasks] == ["history.check", "sync.changes"]
        assert all(t.running for t in session._tasks)

        await session.stop()
        assert session._tasks == []
