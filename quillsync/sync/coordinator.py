"""Sync rounds between the change ledger and the backend.

A round fixes a cut timestamp, sends every pending change that is not
newer than the cut and reconciles the acknowledgements with the same cut.
Changes made while a round is in flight are newer than its cut and stay
pending until a later round acknowledges them.
"""

import logging
from dataclasses import replace
from typing import Any, Protocol

from ..clock import ServerClock
from ..config import SyncConfig
from ..models import (
    TYPE_STEPS,
    ChangeAction,
    ChangeRecord,
    ChangeResponse,
    SaveStep,
    SendingResult,
)
from ..scheduler import RoundGuard
from ..storage import KeyValueStore, StorageError
from .ledger import ChangeLedger
from .transport import Transport, TransportResult

logger = logging.getLogger(__name__)


class PayloadSource(Protocol):
    """Provides the data of changed entities of one type."""

    async def get_payload(self, key: str) -> dict[str, Any] | None: ...


def cumulative_step_responses(
    responses: list[ChangeResponse],
    pending: list[ChangeRecord],
) -> list[ChangeResponse]:
    """Restrict step acknowledgements to a contiguous prefix per task.

    A pending step is only treated as done if every pending step with a
    lower index of the same task is done as well.
    """
    indexes: dict[int, list[int]] = {}
    pending_keys = set()
    for record in pending:
        parsed = SaveStep.parse_key(record.key)
        if parsed:
            task_id, index = parsed
            indexes.setdefault(task_id, []).append(index)
            pending_keys.add(record.key)

    done = {r.key for r in responses if r.done}
    acknowledged = set()
    for task_id, task_indexes in indexes.items():
        for index in sorted(task_indexes):
            key = SaveStep.build_key(index, task_id)
            if key not in done:
                break
            acknowledged.add(key)

    filtered = []
    for response in responses:
        if response.done and response.key in pending_keys and response.key not in acknowledged:
            response = replace(response, done=False)
        filtered.append(response)
    return filtered


class SyncCoordinator:
    """Sends pending changes and reconciles the backend responses."""

    def __init__(
        self,
        ledger: ChangeLedger,
        transport: Transport,
        clock: ServerClock,
        meta_store: KeyValueStore | None = None,
        config: SyncConfig | None = None,
    ):
        """Initialize the coordinator.

        Args:
            ledger: Ledger of pending changes.
            transport: Transport to the backend.
            clock: Clock recalibrated from every successful round.
            meta_store: Store for the clock offset and rotated tokens.
            config: Sync settings.
        """
        self.ledger = ledger
        self.transport = transport
        self.clock = clock
        self.meta_store = meta_store
        self.config = config or SyncConfig()
        self.guard = RoundGuard("changes")
        self._sources: dict[str, PayloadSource] = {}
        self.last_result: SendingResult | None = None
        self.consecutive_failures = 0

    def register_source(self, entity_type: str, source: PayloadSource) -> None:
        """Register the payload source of an entity type."""
        self._sources[entity_type] = source

    async def _change_data(self, record: ChangeRecord) -> dict[str, Any]:
        payload = record.payload
        source = self._sources.get(record.entity_type)
        if record.action != ChangeAction.DELETE and source is not None:
            payload = await source.get_payload(record.key)

        return {
            "type": record.entity_type,
            "key": record.key,
            "action": record.action.value,
            "last_change": record.last_change,
            "payload": payload,
            "server_time": self.clock.server_seconds(record.last_change),
        }

    async def build_batch(self, cut_time: int) -> dict[str, list[dict[str, Any]]]:
        """Collect the changes up to a cut time, omitting empty types."""
        batch = {}
        for entity_type in self.ledger.types:
            changes = self.ledger.get_changes_for(entity_type, cut_time)
            if changes:
                batch[entity_type] = [await self._change_data(c) for c in changes]
        return batch

    async def run_round(self) -> SendingResult | None:
        """Run one sync round.

        Returns:
            None if another round is in flight, else the sending result.
        """
        if not self.guard.try_acquire():
            logger.debug("Sync round already in flight, skipping")
            return None

        try:
            result = await self._round()
        finally:
            self.guard.release()

        self.last_result = result
        if result.success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
        return result

    async def flush(self, wait: bool = True) -> SendingResult:
        """Send all pending changes now.

        Args:
            wait: Poll a few times for a running round to finish instead of
                giving up at once.
        """
        if wait:
            await self.guard.wait_idle(
                self.config.flush_wait_attempts,
                self.config.flush_wait_delay_seconds,
            )

        result = await self.run_round()
        if result is None:
            return SendingResult(
                success=False,
                message="Timeout waiting for a running sending" if wait else "Sending in progress",
            )
        return result

    async def _round(self) -> SendingResult:
        cut_time = self.clock.now()
        batch = await self.build_batch(cut_time)
        if not batch:
            return SendingResult(success=True, message="Nothing to send")

        sent = sum(len(items) for items in batch.values())
        response = await self.transport.send(batch)
        await self._capture_tokens(response)

        if not response.ok:
            logger.warning(f"Sending {sent} changes failed: {response.error}")
            return SendingResult(
                success=False,
                message=response.error or "Sending failed",
                details=response.failure.value if response.failure else None,
                sent=sent,
            )

        retired = {}
        for entity_type, items in response.data.items():
            if entity_type not in self.ledger.types or not isinstance(items, list):
                continue
            responses = [
                ChangeResponse.from_dict(item, entity_type)
                for item in items
                if isinstance(item, dict)
            ]
            if entity_type == TYPE_STEPS:
                responses = cumulative_step_responses(
                    responses, self.ledger.get_changes_for(TYPE_STEPS)
                )

            reconciled = await self.ledger.reconcile(entity_type, responses, cut_time)
            retired[entity_type] = len(reconciled.retired)
            await self._rename_keys(entity_type, reconciled.rekeyed)

        await self._calibrate(response)

        logger.info(f"Sent {sent} changes, retired {sum(retired.values())}")
        return SendingResult(
            success=True,
            message="OK",
            details=response.data,
            sent=sent,
            retired=retired,
        )

    async def _rename_keys(self, entity_type: str, rekeyed: dict[str, str]) -> None:
        source = self._sources.get(entity_type)
        rename = getattr(source, "rename_key", None)
        if rename is None:
            return
        for old_key, new_key in rekeyed.items():
            await rename(old_key, new_key)

    async def _save_meta(self, key: str, value: Any) -> None:
        if self.meta_store is None:
            return
        try:
            await self.meta_store.set(key, value)
        except StorageError as e:
            logger.warning(f"Could not persist '{key}': {e}")

    async def _capture_tokens(self, response: TransportResult) -> None:
        if not response.tokens:
            return
        self.transport.apply_tokens(response.tokens)
        await self._save_meta("data_token", self.transport.data_token)
        await self._save_meta("file_token", self.transport.file_token)

    async def _calibrate(self, response: TransportResult) -> None:
        if response.server_time is None:
            return
        self.clock.calibrate(response.server_time)
        await self._save_meta("time_offset", self.clock.offset_ms)

    async def load_from_storage(self) -> None:
        """Restore the clock offset and rotated tokens of a previous run."""
        if self.meta_store is None:
            return
        try:
            offset = await self.meta_store.get("time_offset")
            data_token = await self.meta_store.get("data_token")
            file_token = await self.meta_store.get("file_token")
        except StorageError as e:
            logger.warning(f"Could not load sync state: {e}")
            return

        if offset is not None:
            self.clock.offset_ms = int(offset)
        self.transport.apply_tokens({"data": data_token or "", "file": file_token or ""})

    def status(self) -> dict[str, Any]:
        """Get current sync status."""
        return {
            "state": self.guard.state.value,
            "pending": self.ledger.counts_by_type(),
            "pending_total": self.ledger.count(),
            "last_save": self.ledger.last_save,
            "last_sending_success": self.ledger.last_sending_success,
            "consecutive_failures": self.consecutive_failures,
            "last_result": (
                {"success": self.last_result.success, "message": self.last_result.message}
                if self.last_result
                else None
            ),
        }
