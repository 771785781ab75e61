"""Shared record types for change tracking and save history."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Entity types tracked by the change ledger
TYPE_ANNOTATIONS = "anno"
TYPE_NOTES = "note"
TYPE_PREFERENCES = "pref"
TYPE_STEPS = "step"

DEFAULT_TYPES = (TYPE_ANNOTATIONS, TYPE_NOTES, TYPE_PREFERENCES, TYPE_STEPS)


class ChangeAction(str, Enum):
    """Action requested for a changed entity."""

    SAVE = "save"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "ChangeAction | None":
        """Parse an action value, returning None for unknown actions."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


def build_change_key(entity_type: str, key: str) -> str:
    """Build the storage key of a change record."""
    return f"{entity_type}_{key}"


@dataclass
class ChangeRecord:
    """Pending change marker for one entity, coalesced to its latest edit."""

    entity_type: str
    key: str
    action: ChangeAction | None
    last_change: int
    payload: dict[str, Any] | None = None

    @property
    def storage_key(self) -> str:
        return build_change_key(self.entity_type, self.key)

    def is_valid(self, allowed_types: tuple[str, ...] = DEFAULT_TYPES) -> bool:
        """Check type, action and key of the record."""
        return (
            self.entity_type in allowed_types
            and isinstance(self.action, ChangeAction)
            and self.key != ""
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "type": self.entity_type,
            "key": self.key,
            "action": self.action.value if self.action else None,
            "last_change": self.last_change,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeRecord":
        """Create from a stored dictionary."""
        return cls(
            entity_type=str(data.get("type") or ""),
            key=str(data["key"]) if data.get("key") is not None else "",
            action=ChangeAction.parse(data.get("action")),
            last_change=int(data.get("last_change") or 0),
            payload=data.get("payload"),
        )


@dataclass
class ChangeResponse:
    """Backend result for one sent change."""

    entity_type: str
    key: str
    action: ChangeAction | None = None
    done: bool = False
    result: dict[str, Any] | None = None

    @property
    def new_key(self) -> str | None:
        """Authoritative key of the entity after processing.

        Deleted entities have no key any more. Saved entities keep their key
        unless the backend assigned a new one in the result.
        """
        if self.action == ChangeAction.DELETE:
            return None
        if self.result and self.result.get("new_key") is not None:
            return str(self.result["new_key"])
        return self.key

    @classmethod
    def from_dict(cls, data: dict[str, Any], entity_type: str = "") -> "ChangeResponse":
        """Create from a response item of the backend."""
        result = data.get("result")
        return cls(
            entity_type=str(data.get("type") or entity_type),
            key=str(data["key"]) if data.get("key") is not None else "",
            action=ChangeAction.parse(data.get("action")),
            done=bool(data.get("done")),
            result=result if isinstance(result, dict) else None,
        )


_STEP_KEY = re.compile(r"^S(\d+)_(\d+)$")


@dataclass(frozen=True)
class SaveStep:
    """One saving of a document: full content or a patch to the previous one."""

    task_id: int
    index: int
    is_delta: bool
    timestamp: int  # server time (seconds)
    content: str
    hash_before: str
    hash_after: str
    distance: int = 0

    @staticmethod
    def build_key(index: int, task_id: int) -> str:
        return f"S{index}_{task_id}"

    @staticmethod
    def parse_key(key: str) -> tuple[int, int] | None:
        """Split a step key into (task_id, index)."""
        match = _STEP_KEY.match(key)
        if not match:
            return None
        return int(match.group(2)), int(match.group(1))

    @property
    def key(self) -> str:
        return self.build_key(self.index, self.task_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "index": self.index,
            "is_delta": self.is_delta,
            "timestamp": self.timestamp,
            "content": self.content,
            "hash_before": self.hash_before,
            "hash_after": self.hash_after,
            "distance": self.distance,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SaveStep":
        return cls(
            task_id=int(data.get("task_id") or 0),
            index=int(data.get("index") or 0),
            is_delta=bool(data.get("is_delta", True)),
            timestamp=int(data.get("timestamp") or 0),
            content=str(data.get("content") or ""),
            hash_before=str(data.get("hash_before") or ""),
            hash_after=str(data.get("hash_after") or ""),
            distance=int(data.get("distance") or 0),
        )


@dataclass
class SendingResult:
    """Outcome of sending changes to the backend."""

    success: bool
    message: str = ""
    details: Any = None
    sent: int = 0
    retired: dict[str, int] = field(default_factory=dict)
