"""Text diffing for incremental saves.

Uses ``diff-match-patch``, whose text patch format is what the backend
applies when it rebuilds a document from its delta steps.
"""

import logging
from dataclasses import dataclass

from diff_match_patch import diff_match_patch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatchResult:
    """Patch from a previous to a current text."""

    patch: str
    distance: int  # Levenshtein distance after cleanup
    verified: bool  # applying the patch reproduces the current text


def _make_dmp() -> diff_match_patch:
    dmp = diff_match_patch()
    # No time limit: the same inputs must always produce the same patch
    dmp.Diff_Timeout = 0
    return dmp


def compute_patch(previous: str, current: str) -> PatchResult:
    """Compute a serialized patch and its edit distance.

    Never raises for a patch that does not round-trip; that is reported
    with ``verified=False`` and the caller saves the full text instead.
    """
    dmp = _make_dmp()
    diffs = dmp.diff_main(previous, current)
    dmp.diff_cleanupEfficiency(diffs)
    distance = dmp.diff_levenshtein(diffs)

    try:
        patch = dmp.patch_toText(dmp.patch_make(previous, diffs))
        applied, results = dmp.patch_apply(dmp.patch_fromText(patch), previous)
    except (ValueError, UnicodeError) as e:
        # e.g. lone surrogates cannot be percent-encoded
        logger.debug(f"Patch serialization failed: {e}")
        return PatchResult(patch="", distance=distance, verified=False)

    verified = applied == current and all(results)
    return PatchResult(patch=patch, distance=distance, verified=verified)


def apply_patch(previous: str, patch: str) -> str:
    """Apply a serialized patch to a text.

    Raises:
        ValueError: If the patch text is malformed or does not apply.
    """
    dmp = _make_dmp()
    applied, results = dmp.patch_apply(dmp.patch_fromText(patch), previous)
    if not all(results):
        raise ValueError("Patch does not apply to the given text")
    return applied
