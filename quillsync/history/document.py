"""Save decision for the text of one document.

The editor only writes ``current_content``. On every check the history
decides whether the change is saved as a full snapshot, as a delta patch
to the previously stored content, or deferred to a later check.
"""

import hashlib
import logging
from dataclasses import asdict, dataclass
from enum import Enum

from ..clock import ServerClock
from ..config import HistoryConfig
from ..models import SaveStep
from ..scheduler import RoundGuard
from ..storage import KeyValueStore, StorageError
from .differ import compute_patch
from .steps import StepStore

logger = logging.getLogger(__name__)


class CheckOutcome(Enum):
    """Result of a content check."""

    SKIPPED = "skipped"  # throttled or another check is running
    CLOSED = "closed"  # writing deadline reached
    UNCHANGED = "unchanged"
    FULL_SAVE = "full_save"
    DELTA_SAVE = "delta_save"
    DEFERRED = "deferred"  # changed, but below the save thresholds


def make_hash(content: str, timestamp: int) -> str:
    """Sign a saved content with its server timestamp."""
    return hashlib.md5(f"{content}{timestamp}".encode("utf-8")).hexdigest()


@dataclass
class DocumentState:
    """Content state of a document."""

    current_content: str = ""  # live content, written by the editor
    stored_content: str = ""  # content of the last saved step
    stored_hash: str = ""
    sum_of_distances: int = 0  # delta distances since the last full save
    last_save: int = 0  # ms, server-comparable
    last_check: int = 0  # ms, server-comparable; not persisted

    def persisted(self) -> dict:
        data = asdict(self)
        del data["current_content"]
        del data["last_check"]
        return data


class DocumentHistory:
    """Decides and records the save steps of one document."""

    def __init__(
        self,
        task_id: int,
        steps: StepStore,
        store: KeyValueStore,
        clock: ServerClock,
        config: HistoryConfig | None = None,
        deadline: int | None = None,
    ):
        """Initialize the history.

        Args:
            task_id: Task the document belongs to.
            steps: Step log shared by all documents.
            store: Durable store for the document state.
            clock: Clock for server-comparable timestamps.
            config: Save thresholds.
            deadline: Writing end in server seconds, or None.
        """
        self.task_id = task_id
        self.steps = steps
        self.store = store
        self.clock = clock
        self.config = config or HistoryConfig()
        self.deadline = deadline
        self.state = DocumentState()
        self._guard = RoundGuard(f"document-{task_id}")

    @property
    def storage_key(self) -> str:
        return f"doc_{self.task_id}"

    @property
    def current_content(self) -> str:
        return self.state.current_content

    def update_content(self, content: str) -> None:
        """Set the live content from the editor."""
        self.state.current_content = content

    def writing_end_reached(self, now: int | None = None) -> bool:
        if self.deadline is None:
            return False
        return self.clock.server_seconds(now) >= self.deadline

    async def check(self, forced: bool = False) -> CheckOutcome:
        """Check the live content and save it if needed.

        Args:
            forced: Save a full snapshot regardless of thresholds.
        """
        now = self.clock.now()
        if not forced and now - self.state.last_check < self.config.check_interval_ms:
            return CheckOutcome.SKIPPED

        if not self._guard.try_acquire():
            return CheckOutcome.SKIPPED

        try:
            if self.writing_end_reached(now):
                return CheckOutcome.CLOSED

            # snapshot before the first suspension point
            current = self.state.current_content

            if current == self.state.stored_content and not forced:
                outcome = CheckOutcome.UNCHANGED
            else:
                outcome = await self._save(current, now, forced)

            self.state.last_check = now
            return outcome
        finally:
            self._guard.release()

    async def _save(self, current: str, now: int, forced: bool) -> CheckOutcome:
        state = self.state
        cfg = self.config
        timestamp = self.clock.server_seconds(now)
        current_hash = make_hash(current, timestamp)
        patch = compute_patch(state.stored_content, current)

        if (
            self.steps.count(self.task_id) == 0
            or forced
            or len(patch.patch) >= len(current)
            or state.sum_of_distances + patch.distance > cfg.max_distance
            or not patch.verified
        ):
            is_delta = False
            content = current
        elif patch.distance >= cfg.save_distance or now - state.last_save > cfg.save_interval_ms:
            is_delta = True
            content = patch.patch
        else:
            return CheckOutcome.DEFERRED

        step = await self.steps.append(
            SaveStep(
                task_id=self.task_id,
                index=self.steps.next_index(self.task_id),
                is_delta=is_delta,
                timestamp=timestamp,
                content=content,
                hash_before=state.stored_hash,
                hash_after=current_hash,
                distance=patch.distance,
            )
        )

        state.stored_content = current
        state.stored_hash = current_hash
        state.last_save = now
        if is_delta:
            state.sum_of_distances += patch.distance
        else:
            state.sum_of_distances = 0
        await self._persist()

        logger.debug(
            f"Saved step {step.key}: delta={is_delta}, distance={patch.distance}, "
            f"sum={state.sum_of_distances}, forced={forced}"
        )
        return CheckOutcome.DELTA_SAVE if is_delta else CheckOutcome.FULL_SAVE

    async def _persist(self) -> None:
        try:
            await self.store.set(self.storage_key, self.state.persisted())
        except StorageError as e:
            logger.warning(f"Could not persist document {self.task_id}: {e}")

    async def load_from_backend(self, content: str = "", content_hash: str = "") -> None:
        """Start from the content saved on the backend."""
        self.state = DocumentState(
            current_content=content,
            stored_content=content,
            stored_hash=content_hash,
        )
        await self._persist()

    async def load_from_storage(self) -> None:
        """Restore the stored state after a restart.

        Unsaved live content of the previous run is lost; the editor
        continues from the last stored content.
        """
        try:
            data = await self.store.get(self.storage_key) or {}
        except StorageError as e:
            logger.warning(f"Could not load document {self.task_id}: {e}")
            data = {}

        stored = str(data.get("stored_content") or "")
        self.state = DocumentState(
            current_content=stored,
            stored_content=stored,
            stored_hash=str(data.get("stored_hash") or ""),
            sum_of_distances=int(data.get("sum_of_distances") or 0),
            last_save=int(data.get("last_save") or 0),
        )
        self.clock.advance_to(self.state.last_save)
