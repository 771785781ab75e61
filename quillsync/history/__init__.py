"""Incremental content history of documents.

Decides per check whether an edit is saved as a full snapshot or as a
delta patch and keeps the append-only log of save steps.
"""

from .differ import PatchResult, apply_patch, compute_patch
from .document import CheckOutcome, DocumentHistory, DocumentState, make_hash
from .steps import StepStore

__all__ = [
    "CheckOutcome",
    "DocumentHistory",
    "DocumentState",
    "PatchResult",
    "StepStore",
    "apply_patch",
    "compute_patch",
    "make_hash",
]
