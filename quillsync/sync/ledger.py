"""Ledger of pending changes that still have to be sent to the backend.

The ledger stores one change record per (entity type, key). A newer change
of the same entity replaces the older one, so only the latest state of an
entity is ever sent. The actual data is added as payload when a change is
sent; the ledger only knows type, key, action and time of the change.

Every mutation is applied in memory first and then written through to the
store. Storage failures are logged and the ledger keeps working in memory.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from ..clock import ServerClock
from ..models import (
    DEFAULT_TYPES,
    ChangeAction,
    ChangeRecord,
    ChangeResponse,
    build_change_key,
)
from ..storage import KeyValueStore, StorageError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """What a reconciliation did with the records of one type."""

    retired: list[str] = field(default_factory=list)
    migrated: list[str] = field(default_factory=list)
    rekeyed: dict[str, str] = field(default_factory=dict)  # old key -> new key
    kept: list[str] = field(default_factory=list)


class ChangeLedger:
    """Pending change records indexed by entity type and key."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: ServerClock,
        types: Iterable[str] = DEFAULT_TYPES,
    ):
        """Initialize the ledger.

        Args:
            store: Durable store for the change records.
            clock: Clock issuing the change timestamps.
            types: Recognized entity types.
        """
        self.store = store
        self.clock = clock
        self.types = tuple(types)
        self.last_save = 0
        self.last_sending_success = 0
        self._reset()

    def _reset(self) -> None:
        self._changes: dict[str, dict[str, ChangeRecord]] = {t: {} for t in self.types}
        # explicit key order per type, independent of dict iteration
        self._keys: dict[str, list[str]] = {t: [] for t in self.types}
        self.last_save = 0
        self.last_sending_success = 0

    async def _persist(self, key: str, value: Any) -> None:
        try:
            await self.store.set(key, value)
        except StorageError as e:
            logger.warning(f"Could not persist '{key}': {e}")

    async def _unpersist(self, key: str) -> None:
        try:
            await self.store.remove(key)
        except StorageError as e:
            logger.warning(f"Could not remove '{key}': {e}")

    async def _persist_index(self, entity_type: str) -> None:
        self.last_save = self.clock.now()
        await self._persist(entity_type, list(self._keys[entity_type]))
        await self._persist("last_save", self.last_save)

    def _put(self, record: ChangeRecord) -> None:
        if record.key not in self._changes[record.entity_type]:
            self._keys[record.entity_type].append(record.key)
        self._changes[record.entity_type][record.key] = record

    def _drop(self, entity_type: str, key: str) -> ChangeRecord | None:
        record = self._changes[entity_type].pop(key, None)
        if record is not None:
            self._keys[entity_type].remove(key)
        return record

    def new_change(
        self,
        entity_type: str,
        key: str,
        action: ChangeAction = ChangeAction.SAVE,
        payload: dict[str, Any] | None = None,
    ) -> ChangeRecord:
        """Create a change record stamped with the current server time."""
        return ChangeRecord(
            entity_type=entity_type,
            key=key,
            action=action,
            last_change=self.clock.now(),
            payload=payload,
        )

    async def set_change(self, record: ChangeRecord) -> bool:
        """Queue a change, replacing any change of the same entity.

        Returns:
            False if the record is invalid and has been dropped.
        """
        if not record.is_valid(self.types):
            logger.warning(
                f"Dropping invalid change: type={record.entity_type!r}, "
                f"key={record.key!r}, action={record.action!r}"
            )
            return False

        self._put(record)
        await self._persist(record.storage_key, record.to_dict())
        await self._persist_index(record.entity_type)
        return True

    async def unset_change(self, record: ChangeRecord) -> bool:
        """Remove the change of an entity."""
        if not record.is_valid(self.types):
            return False

        self._drop(record.entity_type, record.key)
        await self._unpersist(record.storage_key)
        await self._persist_index(record.entity_type)
        return True

    def get_change(self, entity_type: str, key: str) -> ChangeRecord | None:
        return self._changes.get(entity_type, {}).get(key)

    def get_changes_for(self, entity_type: str, max_time: int = 0) -> list[ChangeRecord]:
        """Get the changes of a type that are not newer than max_time.

        Args:
            entity_type: One of the recognized types.
            max_time: Maximum last change, or 0 to get all changes.

        Returns:
            Change records in the order they were first queued.
        """
        if entity_type not in self._changes:
            return []

        changes = []
        for key in self._keys[entity_type]:
            record = self._changes[entity_type][key]
            if max_time == 0 or record.last_change <= max_time:
                changes.append(record)
        return changes

    async def reconcile(
        self,
        entity_type: str,
        responses: Iterable[ChangeResponse | dict[str, Any]],
        cut_time: int,
    ) -> ReconcileResult:
        """Apply the backend responses for changes sent with a cut time.

        A done change that is not newer than the cut time is retired. A done
        change that was updated after the cut stays pending; if the backend
        assigned a new key it is moved to that key, so that it is sent again
        for the right entity. Everything else is left untouched.
        """
        result = ReconcileResult()
        if entity_type not in self._changes:
            return result

        index_changed = False
        for item in responses:
            response = (
                item
                if isinstance(item, ChangeResponse)
                else ChangeResponse.from_dict(item, entity_type)
            )
            if not response.done:
                continue

            old_key = response.key
            record = self._changes[entity_type].get(old_key)
            if record is None:
                continue

            new_key = response.new_key
            if new_key is not None and new_key != old_key:
                result.rekeyed[old_key] = new_key

            if record.last_change <= cut_time:
                self._drop(entity_type, old_key)
                await self._unpersist(record.storage_key)
                result.retired.append(old_key)
                index_changed = True

            elif new_key is not None and new_key != old_key:
                self._drop(entity_type, old_key)
                await self._unpersist(record.storage_key)

                existing = self._changes[entity_type].get(new_key)
                if existing is None or existing.last_change <= record.last_change:
                    migrated = replace(record, key=new_key)
                    self._put(migrated)
                    await self._persist(migrated.storage_key, migrated.to_dict())
                result.migrated.append(new_key)
                index_changed = True

            else:
                result.kept.append(old_key)

        # write the key index once for all responses
        if index_changed:
            await self._persist_index(entity_type)

        self.last_sending_success = self.clock.now()
        await self._persist("last_sending_success", self.last_sending_success)

        if result.retired or result.migrated:
            logger.debug(
                f"Reconciled {entity_type}: retired={len(result.retired)}, "
                f"migrated={len(result.migrated)}, kept={len(result.kept)}"
            )
        return result

    def count(self) -> int:
        return self.count_for(self.types)

    def count_for(self, types: Iterable[str]) -> int:
        """Count the pending changes of some types."""
        return sum(len(self._changes.get(t, {})) for t in types)

    def has_changes(self, types: Iterable[str] | None = None) -> bool:
        return self.count_for(types if types is not None else self.types) > 0

    def counts_by_type(self) -> dict[str, int]:
        return {t: len(self._changes[t]) for t in self.types}

    async def load_from_storage(self) -> None:
        """Rebuild the ledger from the store, dropping the in-memory state."""
        self._reset()
        try:
            for entity_type in self.types:
                for key in await self.store.get(entity_type, []) or []:
                    data = await self.store.get(build_change_key(entity_type, key))
                    if not isinstance(data, dict):
                        continue
                    record = ChangeRecord.from_dict(data)
                    if record.is_valid(self.types) and record.entity_type == entity_type:
                        self._put(record)
            self.last_save = int(await self.store.get("last_save", 0) or 0)
            self.last_sending_success = int(
                await self.store.get("last_sending_success", 0) or 0
            )
        except StorageError as e:
            logger.warning(f"Could not load changes from storage: {e}")

        # cuts of this run must not fall behind the loaded changes
        latest = max(
            [r.last_change for changes in self._changes.values() for r in changes.values()]
            + [self.last_save, self.last_sending_success]
        )
        self.clock.advance_to(latest)

        logger.info(f"Loaded {self.count()} pending changes from storage")

    async def has_changes_in_storage(self) -> bool:
        """Check if the store holds pending changes of any type."""
        try:
            for entity_type in self.types:
                if await self.store.get(entity_type, []):
                    return True
        except StorageError as e:
            logger.warning(f"Could not check stored changes: {e}")
        return False

    async def clear_storage(self) -> None:
        """Drop all changes in memory and in the store."""
        self._reset()
        try:
            await self.store.clear()
        except StorageError as e:
            logger.warning(f"Could not clear change storage: {e}")
