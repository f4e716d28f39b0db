"""Spaced-repetition scheduling.

Flashcards follow an SM-2 variant with a binary answer quality (0 wrong,
1 correct) and a fixed interval table indexed by the resulting mastery level.
The immersive review queue advances through a separate Ebbinghaus-style
table. Everything here is pure; callers supply ``now``.
"""
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from vocabsync.config import (
    EBBINGHAUS_INTERVALS,
    FLASHCARD_FALLBACK_INTERVAL,
    FLASHCARD_INTERVALS,
    MAX_EASINESS_FACTOR,
    MAX_MASTERY_LEVEL,
    MIN_EASINESS_FACTOR,
)
from vocabsync.models.records import FlashcardProgress, ReviewQueueEntry, ReviewState


def calculate_sm2(quality: int, easiness_factor: float, mastery_level: int) -> Tuple[float, int]:
    """Return the new (easiness factor, mastery level) for one answer."""
    miss = 1 - quality
    new_ef = easiness_factor + (0.1 - miss * (0.08 + miss * 0.02))
    new_ef = max(MIN_EASINESS_FACTOR, min(MAX_EASINESS_FACTOR, new_ef))

    if quality >= 1:
        new_level = min(MAX_MASTERY_LEVEL, mastery_level + 1)
    else:
        new_level = max(0, mastery_level - 1)
    return new_ef, new_level


def flashcard_interval_days(mastery_level: int, intervals: Sequence[int] = FLASHCARD_INTERVALS) -> int:
    """Days until the next flashcard review for a mastery level."""
    if 0 <= mastery_level < len(intervals):
        return intervals[mastery_level]
    return FLASHCARD_FALLBACK_INTERVAL


def review_flashcard(
    progress: Optional[FlashcardProgress],
    word: str,
    remembered: bool,
    now: datetime,
    context: str = "",
    intervals: Sequence[int] = FLASHCARD_INTERVALS,
) -> FlashcardProgress:
    """Apply one review outcome and return the updated progress.

    The input record is not modified. A word with no progress starts from
    EF 2.5, level 0 and no reviews.
    """
    current = progress.copy() if progress else FlashcardProgress(word=word, next_review=now)
    new_ef, new_level = calculate_sm2(1 if remembered else 0, current.easiness_factor, current.mastery_level)

    current.easiness_factor = new_ef
    current.mastery_level = new_level
    current.review_count += 1
    current.last_reviewed = now
    current.next_review = now + timedelta(days=flashcard_interval_days(new_level, intervals))
    if context:
        current.context = context
    return current


def review_interval_days(stage: int, intervals: Sequence[int] = EBBINGHAUS_INTERVALS) -> int:
    """Days until the next immersive review for a stage, clamped to the table."""
    return intervals[max(0, min(stage, len(intervals) - 1))]


def advance_review_entry(
    entry: Optional[ReviewQueueEntry],
    word: str,
    now: datetime,
    intervals: Sequence[int] = EBBINGHAUS_INTERVALS,
) -> ReviewQueueEntry:
    """Move a word one step along pending -> reviewing -> mastered."""
    if entry is None or entry.state is ReviewState.PENDING:
        return ReviewQueueEntry.reviewing(
            word,
            stage=0,
            next_review_at=now + timedelta(days=review_interval_days(0, intervals)),
            last_used_at=now,
        )
    if entry.state is ReviewState.MASTERED:
        return entry.copy()

    next_stage = entry.stage + 1
    if next_stage >= len(intervals):
        return ReviewQueueEntry.mastered(word, now)
    return ReviewQueueEntry.reviewing(
        word,
        stage=next_stage,
        next_review_at=now + timedelta(days=review_interval_days(next_stage, intervals)),
        last_used_at=now,
    )
