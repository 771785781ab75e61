"""Writer session wiring history, ledger and sync together."""

import logging
from typing import Any

import httpx

from .clock import ServerClock
from .config import Config
from .entities import EntityStore
from .history import CheckOutcome, DocumentHistory, StepStore
from .models import TYPE_STEPS, SendingResult
from .scheduler import PeriodicTask
from .storage import MemoryStorage, SQLiteStorage, StorageError
from .sync import ChangeLedger, SyncCoordinator, Transport

logger = logging.getLogger(__name__)


class WriterSession:
    """Offline-first writing session of one user.

    Edits are saved locally as steps and entity records, queued in the
    change ledger and delivered to the backend by periodic sync rounds.
    """

    def __init__(
        self,
        config: Config,
        storage: SQLiteStorage | MemoryStorage | None = None,
        clock: ServerClock | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.storage = storage or SQLiteStorage(config.storage.db_path)
        self.clock = clock or ServerClock()

        self.ledger = ChangeLedger(
            self.storage.bucket("changes"), self.clock, config.sync.entity_types
        )
        self.steps = StepStore(self.storage.bucket("steps"), self.ledger)
        self.transport = Transport(config.backend, http_transport)
        self.coordinator = SyncCoordinator(
            self.ledger,
            self.transport,
            self.clock,
            meta_store=self.storage.bucket("api"),
            config=config.sync,
        )
        self.coordinator.register_source(TYPE_STEPS, self.steps)

        self.entities: dict[str, EntityStore] = {}
        for entity_type in config.sync.entity_types:
            if entity_type == TYPE_STEPS:
                continue
            entities = EntityStore(entity_type, self.storage.bucket(entity_type), self.ledger)
            self.entities[entity_type] = entities
            self.coordinator.register_source(entity_type, entities)

        self._documents_store = self.storage.bucket("documents")
        self.documents: dict[int, DocumentHistory] = {}
        self._tasks: list[PeriodicTask] = []

    def document(self, task_id: int) -> DocumentHistory:
        """Get the history of a document, creating it if needed."""
        if task_id not in self.documents:
            self.documents[task_id] = DocumentHistory(
                task_id,
                self.steps,
                self._documents_store,
                self.clock,
                self.config.history,
            )
        return self.documents[task_id]

    async def open(self) -> None:
        """Connect the storage and restore the state of a previous run."""
        self.storage.connect()
        await self.ledger.load_from_storage()
        await self.steps.load_from_storage()
        for entities in self.entities.values():
            await entities.load_from_storage()
        await self.coordinator.load_from_storage()

        try:
            keys = await self._documents_store.keys()
        except StorageError as e:
            logger.warning(f"Could not list stored documents: {e}")
            keys = []
        for key in keys:
            if key.startswith("doc_") and key[4:].isdigit():
                await self.document(int(key[4:])).load_from_storage()

    async def load_from_backend(self, data: dict[str, Any]) -> bool:
        """Replace the local state with data loaded from the backend.

        Local state with unsent changes is kept, since replacing it would
        lose those changes.

        Args:
            data: ``{"documents": [{"task_id", "content", "hash"}],
                "steps": [...], "<entity type>": {key: record}}``

        Returns:
            False if the local state was kept.
        """
        if await self.ledger.has_changes_in_storage():
            logger.warning(
                f"Keeping local state: {self.ledger.count()} changes are not sent yet"
            )
            return False

        await self.steps.load_from_backend(data.get("steps", []))
        for entity_type, entities in self.entities.items():
            await entities.load_from_backend(data.get(entity_type, {}))
        for document_data in data.get("documents", []):
            document = self.document(int(document_data["task_id"]))
            await document.load_from_backend(
                document_data.get("content", ""), document_data.get("hash", "")
            )
        return True

    async def trigger_check(self, document_id: int, forced: bool = False) -> CheckOutcome:
        """Check a document for a needed save (on edit or by timer)."""
        return await self.document(document_id).check(forced)

    async def check_all(self) -> None:
        for document in list(self.documents.values()):
            await document.check()

    async def flush(self, wait: bool = True) -> SendingResult:
        """Send all pending changes (manual save, task finalization)."""
        return await self.coordinator.flush(wait)

    async def _sync(self) -> None:
        await self.coordinator.run_round()

    def start(self) -> None:
        """Start the periodic check and sync tasks."""
        if self._tasks:
            return
        self._tasks.append(
            PeriodicTask(
                "history.check",
                self.check_all,
                self.config.history.check_interval_ms / 1000,
            )
        )
        if self.config.sync.enabled:
            self._tasks.append(
                PeriodicTask("sync.changes", self._sync, self.config.sync.interval_seconds)
            )
        for task in self._tasks:
            task.start()

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []

    async def close(self) -> None:
        await self.stop()
        self.storage.close()

    async def clear(self) -> None:
        """Drop all local state."""
        await self.ledger.clear_storage()
        await self.steps.clear_storage()
        for entities in self.entities.values():
            await entities.clear_storage()
        try:
            await self._documents_store.clear()
        except StorageError as e:
            logger.warning(f"Could not clear documents: {e}")
        self.documents = {}

    def status(self) -> dict[str, Any]:
        status = self.coordinator.status()
        status["documents"] = {
            task_id: {
                "steps": self.steps.count(task_id),
                "sum_of_distances": doc.state.sum_of_distances,
            }
            for task_id, doc in self.documents.items()
        }
        return status
