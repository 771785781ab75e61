"""Append-only log of the save steps of all documents."""

import logging
from dataclasses import replace
from typing import Any

from ..models import TYPE_STEPS, ChangeAction, SaveStep
from ..storage import KeyValueStore, StorageError
from ..sync.ledger import ChangeLedger
from .differ import apply_patch

logger = logging.getLogger(__name__)


class StepStore:
    """Save steps indexed by key, with a monotonic step index per task.

    Appended steps are persisted and queued in the change ledger; they are
    never modified or removed afterwards.
    """

    def __init__(self, store: KeyValueStore, ledger: ChangeLedger):
        self.store = store
        self.ledger = ledger
        self._steps: dict[str, SaveStep] = {}
        self._keys: list[str] = []
        self._counts: dict[int, int] = {}

    def _reset(self) -> None:
        self._steps = {}
        self._keys = []
        self._counts = {}

    def _add(self, step: SaveStep) -> SaveStep:
        step = replace(step, index=self._counts.get(step.task_id, 0))
        self._counts[step.task_id] = step.index + 1
        self._steps[step.key] = step
        self._keys.append(step.key)
        return step

    def next_index(self, task_id: int) -> int:
        return self._counts.get(task_id, 0)

    def count(self, task_id: int | None = None) -> int:
        if task_id is None:
            return len(self._keys)
        return self._counts.get(task_id, 0)

    def get(self, key: str) -> SaveStep | None:
        return self._steps.get(key)

    def steps_for(self, task_id: int) -> list[SaveStep]:
        """Get the steps of a task ordered by index."""
        steps = [s for s in self._steps.values() if s.task_id == task_id]
        return sorted(steps, key=lambda s: s.index)

    async def append(self, step: SaveStep) -> SaveStep:
        """Append a step and queue it for sending.

        The index of the given step is replaced by the next index of its task.

        Returns:
            The stored step with its final index.
        """
        step = self._add(step)

        try:
            await self.store.set(step.key, step.to_dict())
            await self.store.set("keys", list(self._keys))
        except StorageError as e:
            logger.warning(f"Could not persist step {step.key}: {e}")

        await self.ledger.set_change(
            self.ledger.new_change(TYPE_STEPS, step.key, ChangeAction.SAVE)
        )
        return step

    async def get_payload(self, key: str) -> dict[str, Any] | None:
        """Step data to be sent with a change."""
        step = self._steps.get(key)
        if step is None:
            try:
                data = await self.store.get(key)
            except StorageError as e:
                logger.warning(f"Could not read step {key}: {e}")
                return None
            return data if isinstance(data, dict) else None
        return step.to_dict()

    def replay(self, task_id: int, until_index: int | None = None) -> str:
        """Rebuild the content of a document from its steps.

        Args:
            task_id: Task of the document.
            until_index: Last step index to apply (default: all steps).

        Raises:
            ValueError: If the history does not start with a full step or a
                patch does not apply.
        """
        content = None
        for step in self.steps_for(task_id):
            if until_index is not None and step.index > until_index:
                break
            if not step.is_delta:
                content = step.content
            elif content is None:
                raise ValueError(f"Step {step.key} is a delta without a full step before")
            else:
                content = apply_patch(content, step.content)
        return content or ""

    async def load_from_storage(self) -> None:
        """Load all steps from the store."""
        self._reset()
        try:
            for key in await self.store.get("keys", []) or []:
                data = await self.store.get(key)
                if isinstance(data, dict):
                    self._add(SaveStep.from_dict(data))
        except StorageError as e:
            logger.warning(f"Could not load steps from storage: {e}")

    async def load_from_backend(self, data: list[dict[str, Any]]) -> None:
        """Replace all steps with the steps known by the backend.

        These steps are already sent, so no changes are queued.
        """
        self._reset()
        for step_data in data:
            self._add(SaveStep.from_dict(step_data))

        try:
            await self.store.clear()
            for key in self._keys:
                await self.store.set(key, self._steps[key].to_dict())
            await self.store.set("keys", list(self._keys))
        except StorageError as e:
            logger.warning(f"Could not persist steps from backend: {e}")

    async def clear_storage(self) -> None:
        self._reset()
        try:
            await self.store.clear()
        except StorageError as e:
            logger.warning(f"Could not clear step storage: {e}")
