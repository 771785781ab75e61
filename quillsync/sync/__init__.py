"""Sync infrastructure for offline-first change delivery.

Pending changes are kept in a durable ledger and delivered to the backend
in rounds; only an explicit acknowledgement retires a change.
"""

from .coordinator import SyncCoordinator
from .ledger import ChangeLedger, ReconcileResult
from .transport import FailureKind, Transport, TransportResult

__all__ = [
    "ChangeLedger",
    "FailureKind",
    "ReconcileResult",
    "SyncCoordinator",
    "Transport",
    "TransportResult",
]
