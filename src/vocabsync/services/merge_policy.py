"""Conflict resolution between local and remote records.

Each ``merge_*`` function returns the record local state should become, or
None when the remote record brings nothing new. Applying the same remote
record twice has the same effect as applying it once, and no merge ever
lowers a lookup count, a review count or a review-queue state.

The ``*_ahead`` functions are the upload side: they tell whether the local
record holds progress the remote one lacks.
"""
from typing import List, Optional

from vocabsync.models.records import (
    FlashcardProgress,
    ReviewQueueEntry,
    ReviewState,
    WordLookupRecord,
)


def merge_contexts(local: List[str], remote: List[str], capacity: int) -> Optional[List[str]]:
    """Union two context lists, newest last, bounded to ``capacity``.

    Returns None when every remote context is already known locally.
    """
    if all(ctx in local for ctx in remote):
        return None
    merged = [ctx for ctx in local if ctx not in remote]
    for ctx in remote:
        if ctx not in merged:
            merged.append(ctx)
    return merged[-capacity:]


def merge_word(
    local: Optional[WordLookupRecord], remote: WordLookupRecord, max_contexts: int = 10
) -> Optional[WordLookupRecord]:
    """Merge a remote word record: highest count, union of contexts and lookups."""
    if local is None:
        adopted = remote.copy()
        adopted.lookup_count = max(1, adopted.lookup_count)
        adopted.contexts = adopted.contexts[-max_contexts:]
        return adopted

    merged = local.copy()
    changed = False

    if remote.lookup_count > local.lookup_count:
        merged.lookup_count = remote.lookup_count
        changed = True

    contexts = merge_contexts(local.contexts, remote.contexts, max_contexts)
    if contexts is not None:
        merged.contexts = contexts
        changed = True

    known = set(local.lookup_timestamps)
    extra = [ts for ts in remote.lookup_timestamps if ts not in known]
    if extra:
        merged.lookup_timestamps = sorted(known.union(extra))
        changed = True

    return merged if changed else None


def merge_flashcard(
    local: Optional[FlashcardProgress], remote: FlashcardProgress
) -> Optional[FlashcardProgress]:
    """Adopt remote progress only when it has more reviews or a higher level."""
    if local is None:
        return remote.copy()
    if remote.review_count > local.review_count or remote.mastery_level > local.mastery_level:
        adopted = remote.copy()
        if not adopted.context:
            adopted.context = local.context
        return adopted
    return None


def _review_ahead(candidate: ReviewQueueEntry, other: ReviewQueueEntry) -> bool:
    if candidate.state.order != other.state.order:
        return candidate.state.order > other.state.order
    return candidate.state is ReviewState.REVIEWING and candidate.stage > other.stage


def merge_review_entry(
    local: Optional[ReviewQueueEntry], remote: ReviewQueueEntry
) -> Optional[ReviewQueueEntry]:
    """Adopt a remote queue entry only when it is further along than local."""
    if local is None or _review_ahead(remote, local):
        return remote.copy()
    return None


def word_ahead(local: WordLookupRecord, remote: Optional[WordLookupRecord]) -> bool:
    """Whether the local word holds lookups or contexts the remote one lacks."""
    if remote is None:
        return True
    if local.lookup_count > remote.lookup_count:
        return True
    return any(ctx not in remote.contexts for ctx in local.contexts)


def flashcard_ahead(local: FlashcardProgress, remote: Optional[FlashcardProgress]) -> bool:
    if remote is None:
        return True
    return local.review_count > remote.review_count or local.mastery_level > remote.mastery_level


def review_entry_ahead(local: ReviewQueueEntry, remote: Optional[ReviewQueueEntry]) -> bool:
    if remote is None:
        return True
    return _review_ahead(local, remote)
