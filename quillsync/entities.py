"""Durable records of simple entities (notes, preferences, annotations).

Each store keeps the data of one entity type, queues a change in the ledger
for every real modification and provides the data when the change is sent.
"""

import copy
import logging
from typing import Any

from .models import ChangeAction
from .storage import KeyValueStore, StorageError
from .sync.ledger import ChangeLedger

logger = logging.getLogger(__name__)

# bucket key of the ordered key list; not usable as an entity key
INDEX_KEY = "keys"


class EntityStore:
    """Keyed entity records of one type."""

    def __init__(self, entity_type: str, store: KeyValueStore, ledger: ChangeLedger):
        self.entity_type = entity_type
        self.store = store
        self.ledger = ledger
        self._items: dict[str, dict[str, Any]] = {}
        self._keys: list[str] = []

    def get(self, key: str) -> dict[str, Any] | None:
        item = self._items.get(key)
        return copy.deepcopy(item) if item is not None else None

    def keys(self) -> list[str]:
        return list(self._keys)

    async def _persist(self, key: str | None = None) -> None:
        try:
            if key is not None:
                if key in self._items:
                    await self.store.set(key, self._items[key])
                else:
                    await self.store.remove(key)
            await self.store.set(INDEX_KEY, list(self._keys))
        except StorageError as e:
            logger.warning(f"Could not persist {self.entity_type} '{key}': {e}")

    async def put(self, key: str, data: dict[str, Any]) -> bool:
        """Save an entity and queue the change.

        Returns:
            False if nothing was queued: the data equals the stored data or
            the key is reserved.
        """
        if key == INDEX_KEY:
            logger.warning(f"Rejecting {self.entity_type} with reserved key '{key}'")
            return False

        snapshot = copy.deepcopy(data)
        if self._items.get(key) == snapshot:
            return False

        if key not in self._items:
            self._keys.append(key)
        self._items[key] = snapshot
        await self._persist(key)
        await self.ledger.set_change(
            self.ledger.new_change(self.entity_type, key, ChangeAction.SAVE)
        )
        return True

    async def delete(self, key: str) -> bool:
        """Delete an entity and queue the deletion."""
        if key not in self._items:
            return False

        del self._items[key]
        self._keys.remove(key)
        await self._persist(key)
        await self.ledger.set_change(
            self.ledger.new_change(self.entity_type, key, ChangeAction.DELETE)
        )
        return True

    async def get_payload(self, key: str) -> dict[str, Any] | None:
        return self.get(key)

    async def rename_key(self, old_key: str, new_key: str) -> None:
        """Move an entity to the key assigned by the backend."""
        if old_key not in self._items or new_key in self._items:
            return

        self._items[new_key] = self._items.pop(old_key)
        self._keys[self._keys.index(old_key)] = new_key
        await self._persist(old_key)
        await self._persist(new_key)
        logger.debug(f"Renamed {self.entity_type} '{old_key}' to '{new_key}'")

    async def load_from_storage(self) -> None:
        self._items = {}
        self._keys = []
        try:
            for key in await self.store.get(INDEX_KEY, []) or []:
                data = await self.store.get(key)
                if isinstance(data, dict):
                    self._items[key] = data
                    self._keys.append(key)
        except StorageError as e:
            logger.warning(f"Could not load {self.entity_type} records: {e}")

    async def load_from_backend(self, items: dict[str, dict[str, Any]]) -> None:
        """Replace all records with the backend state, queueing nothing."""
        if INDEX_KEY in items:
            logger.warning(f"Skipping {self.entity_type} with reserved key '{INDEX_KEY}'")
            items = {key: data for key, data in items.items() if key != INDEX_KEY}
        self._items = {key: copy.deepcopy(data) for key, data in items.items()}
        self._keys = list(items)
        try:
            await self.store.clear()
            for key in self._keys:
                await self.store.set(key, self._items[key])
            await self.store.set(INDEX_KEY, list(self._keys))
        except StorageError as e:
            logger.warning(f"Could not persist {self.entity_type} records: {e}")

    async def clear_storage(self) -> None:
        self._items = {}
        self._keys = []
        try:
            await self.store.clear()
        except StorageError as e:
            logger.warning(f"Could not clear {self.entity_type} records: {e}")
