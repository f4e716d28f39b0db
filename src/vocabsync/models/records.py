"""Domain records owned by the learning engine.

Every record converts to and from a plain JSON-compatible dict with
``to_data``/``from_data``; that dict is what the local store, the JSON backup
and the remote gateway carry. Instants are timezone-aware UTC datetimes in
memory and ISO-8601 strings on the wire.
"""
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utc_now() -> datetime:
    """Current instant, timezone-aware."""
    return datetime.now(UTC)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant (None stays None)."""
    return value.isoformat() if value else None


def from_iso(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse an instant from ISO text or epoch milliseconds.

    Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if value <= 0:
            return None
        parsed = datetime.fromtimestamp(value / 1000, UTC)
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def clean_word(word: Optional[str]) -> str:
    """Normalize a word into its storage key."""
    if not word:
        return ""
    return " ".join(word.replace("\r", " ").replace("\n", " ").split()).lower()


@dataclass
class WordLookupRecord:
    """Lookup history for one word."""
    word: str
    lookup_count: int = 0
    lookup_timestamps: List[datetime] = field(default_factory=list)
    contexts: List[str] = field(default_factory=list)

    @property
    def latest_context(self) -> str:
        return self.contexts[-1] if self.contexts else ""

    def copy(self) -> "WordLookupRecord":
        return replace(self, lookup_timestamps=list(self.lookup_timestamps), contexts=list(self.contexts))

    def to_data(self) -> Dict[str, Any]:
        return {
            "word": self.word,
            "count": self.lookup_count,
            "lookups": [to_iso(ts) for ts in self.lookup_timestamps],
            "contexts": list(self.contexts),
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any], word: Optional[str] = None) -> "WordLookupRecord":
        stamps = [from_iso(ts) for ts in data.get("lookups") or []]
        return cls(
            word=clean_word(word or data.get("word")),
            lookup_count=max(0, int(data.get("count") or 0)),
            lookup_timestamps=sorted(ts for ts in stamps if ts is not None),
            contexts=[str(c) for c in data.get("contexts") or []],
        )


@dataclass
class FlashcardProgress:
    """SM-2 progress for one word."""
    word: str
    mastery_level: int = 0
    easiness_factor: float = 2.5
    review_count: int = 0
    last_reviewed: Optional[datetime] = None
    next_review: datetime = field(default_factory=utc_now)
    context: str = ""

    def copy(self) -> "FlashcardProgress":
        return replace(self)

    def to_data(self) -> Dict[str, Any]:
        return {
            "word": self.word,
            "masteryLevel": self.mastery_level,
            "easinessFactor": self.easiness_factor,
            "reviewCount": self.review_count,
            "lastReviewed": to_iso(self.last_reviewed),
            "nextReview": to_iso(self.next_review),
            "context": self.context,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any], word: Optional[str] = None) -> "FlashcardProgress":
        return cls(
            word=clean_word(word or data.get("word")),
            mastery_level=int(data.get("masteryLevel") or 0),
            easiness_factor=float(data.get("easinessFactor") or 2.5),
            review_count=int(data.get("reviewCount") or 0),
            last_reviewed=from_iso(data.get("lastReviewed")),
            next_review=from_iso(data.get("nextReview")) or utc_now(),
            context=data.get("context") or "",
        )


class ReviewState(Enum):
    """Immersive review queue states, in transition order."""
    PENDING = "pending"
    REVIEWING = "reviewing"
    MASTERED = "mastered"

    @property
    def order(self) -> int:
        return _STATE_ORDER[self]


_STATE_ORDER = {
    ReviewState.PENDING: 0,
    ReviewState.REVIEWING: 1,
    ReviewState.MASTERED: 2,
}


@dataclass
class ReviewQueueEntry:
    """A word's position in the immersive review queue."""
    word: str
    state: ReviewState
    added_at: Optional[datetime] = None
    stage: int = 0
    next_review_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    mastered_at: Optional[datetime] = None

    @classmethod
    def pending(cls, word: str, added_at: datetime) -> "ReviewQueueEntry":
        return cls(word=word, state=ReviewState.PENDING, added_at=added_at)

    @classmethod
    def reviewing(
        cls, word: str, stage: int, next_review_at: datetime, last_used_at: Optional[datetime]
    ) -> "ReviewQueueEntry":
        return cls(
            word=word,
            state=ReviewState.REVIEWING,
            stage=stage,
            next_review_at=next_review_at,
            last_used_at=last_used_at,
        )

    @classmethod
    def mastered(cls, word: str, mastered_at: datetime) -> "ReviewQueueEntry":
        return cls(word=word, state=ReviewState.MASTERED, mastered_at=mastered_at)

    def copy(self) -> "ReviewQueueEntry":
        return replace(self)

    def to_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"word": self.word, "status": self.state.value}
        if self.state is ReviewState.PENDING:
            data["addedDate"] = to_iso(self.added_at)
        elif self.state is ReviewState.REVIEWING:
            data["stage"] = self.stage
            data["nextReviewDate"] = to_iso(self.next_review_at)
            data["lastUsedDate"] = to_iso(self.last_used_at)
        else:
            data["masteredDate"] = to_iso(self.mastered_at)
        return data

    @classmethod
    def from_data(
        cls, data: Dict[str, Any], word: Optional[str] = None, state: Optional[ReviewState] = None
    ) -> "ReviewQueueEntry":
        state = state or ReviewState(data.get("status", ReviewState.PENDING.value))
        key = clean_word(word or data.get("word"))
        if state is ReviewState.PENDING:
            return cls.pending(key, from_iso(data.get("addedDate")) or utc_now())
        if state is ReviewState.REVIEWING:
            return cls.reviewing(
                key,
                stage=int(data.get("stage") or 0),
                next_review_at=from_iso(data.get("nextReviewDate")) or utc_now(),
                last_used_at=from_iso(data.get("lastUsedDate")),
            )
        return cls.mastered(key, from_iso(data.get("masteredDate")) or utc_now())


@dataclass
class DeckCard:
    """One card of a practice deck."""
    word: str
    context: str = ""
    correct_count: int = 0
    is_review_card: bool = False

    def to_data(self) -> Dict[str, Any]:
        return {
            "word": self.word,
            "context": self.context,
            "correctCount": self.correct_count,
            "isReviewCard": self.is_review_card,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "DeckCard":
        return cls(
            word=data.get("word", ""),
            context=data.get("context") or "",
            correct_count=int(data.get("correctCount") or 0),
            is_review_card=bool(data.get("isReviewCard", False)),
        )


@dataclass
class FlashcardSession:
    """An in-progress flashcard practice session."""
    deck: List[DeckCard] = field(default_factory=list)
    current_index: int = 0
    words_completed: int = 0
    progress_score: int = 0
    last_review_time: Optional[datetime] = None
    total_words_in_history: int = 0

    def to_data(self) -> Dict[str, Any]:
        return {
            "deck": [card.to_data() for card in self.deck],
            "currentIndex": self.current_index,
            "wordsCompleted": self.words_completed,
            "progressScore": self.progress_score,
            "lastReviewTime": to_iso(self.last_review_time),
            "totalWordsInHistory": self.total_words_in_history,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "FlashcardSession":
        return cls(
            deck=[DeckCard.from_data(card) for card in data.get("deck") or []],
            current_index=int(data.get("currentIndex") or 0),
            words_completed=int(data.get("wordsCompleted") or 0),
            progress_score=int(data.get("progressScore") or 0),
            last_review_time=from_iso(data.get("lastReviewTime")),
            total_words_in_history=int(data.get("totalWordsInHistory") or 0),
        )


@dataclass
class ReviewSession:
    """Words queued for the current immersive review session."""
    words: List[str] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_data(self) -> Dict[str, Any]:
        return {"words": list(self.words), "lastUpdated": to_iso(self.last_updated)}

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ReviewSession":
        words = data.get("words") or []
        if isinstance(words, str):
            words = words.split(",")
        return cls(
            words=[w for w in (clean_word(w) for w in words) if w],
            last_updated=from_iso(data.get("lastUpdated")),
        )
