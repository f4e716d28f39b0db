"""Service for flashcard progress and practice sessions."""
import logging
import random
from datetime import datetime
from typing import Callable, Dict, List, Optional

from vocabsync.config import STORE_FLASHCARD_PROGRESS, STORE_FLASHCARD_SESSION, SYNC_FLASHCARD, settings
from vocabsync.errors import StoreUnavailable
from vocabsync.models.records import DeckCard, FlashcardProgress, FlashcardSession, clean_word, utc_now
from vocabsync.monitoring import flashcard_reviews
from vocabsync.services.deck_builder import build_balanced_deck
from vocabsync.services.local_store import LocalStore
from vocabsync.services.merge_policy import merge_flashcard
from vocabsync.services.srs_scheduler import review_flashcard
from vocabsync.services.word_history_service import WordHistoryService
from vocabsync.services.write_coalescer import WriteCoalescer

logger = logging.getLogger(__name__)

SESSION_KEY = "current-session"


class FlashcardService:
    """Owns SM-2 progress per word and the in-progress practice session."""

    collection = SYNC_FLASHCARD

    def __init__(
        self,
        store: LocalStore,
        coalescer: WriteCoalescer,
        word_history: WordHistoryService,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random = random,
    ):
        self.store = store
        self.coalescer = coalescer
        self.word_history = word_history
        self.clock = clock
        self.rng = rng
        self.progress: Dict[str, FlashcardProgress] = {}
        self.current_session: Optional[FlashcardSession] = None

    async def load(self) -> int:
        """Load progress and the saved session; returns the progress count."""
        rows = await self.store.get_all(STORE_FLASHCARD_PROGRESS)
        self.progress = {}
        for key, data in rows.items():
            record = FlashcardProgress.from_data(data, word=key)
            if record.word:
                self.progress[record.word] = record

        session = await self.store.get(STORE_FLASHCARD_SESSION, SESSION_KEY)
        self.current_session = FlashcardSession.from_data(session) if session else None
        if self.current_session and not self.current_session.deck:
            self.current_session = None
        if self.current_session:
            logger.info("Loaded ongoing session with %d remaining card(s)", len(self.current_session.deck))
        logger.info("Loaded %d flashcard progress record(s)", len(self.progress))
        return len(self.progress)

    def record_review(self, word: str, remembered: bool, context: str = "") -> Optional[FlashcardProgress]:
        """Apply one flashcard answer to a word's progress."""
        key = clean_word(word)
        if not key:
            return None
        updated = review_flashcard(
            self.progress.get(key),
            key,
            remembered,
            self.clock(),
            context=context,
            intervals=settings.learning.flashcard_intervals,
        )
        self.progress[key] = updated
        flashcard_reviews.labels(result="remembered" if remembered else "forgotten").inc()
        self.coalescer.mark(self.collection, key)
        logger.debug(
            "Reviewed %s: level %d, EF %.2f, next review %s",
            key, updated.mastery_level, updated.easiness_factor, updated.next_review.isoformat(),
        )
        return updated.copy()

    def get(self, word: str) -> Optional[FlashcardProgress]:
        record = self.progress.get(clean_word(word))
        return record.copy() if record else None

    def all(self) -> Dict[str, FlashcardProgress]:
        return {key: record.copy() for key, record in self.progress.items()}

    def stats(self) -> Dict[str, int]:
        """Count words by mastery band."""
        stats = {"total": len(self.progress), "mastered": 0, "learning": 0, "new": 0}
        for record in self.progress.values():
            if record.mastery_level >= 4:
                stats["mastered"] += 1
            elif record.mastery_level >= 1:
                stats["learning"] += 1
            else:
                stats["new"] += 1
        return stats

    def build_deck(self, deck_size: Optional[int] = None, new_ratio: Optional[float] = None) -> List[DeckCard]:
        """Build a balanced deck from the current word history."""
        return build_balanced_deck(
            self.word_history.words,
            self.progress,
            self.clock(),
            deck_size=deck_size or settings.learning.deck_size,
            new_ratio=settings.learning.new_word_ratio if new_ratio is None else new_ratio,
            rng=self.rng,
        )

    async def save_session(self, session: Optional[FlashcardSession]) -> None:
        """Save the practice session; an empty or missing deck ends it."""
        try:
            if session is None or not session.deck:
                await self.store.delete(STORE_FLASHCARD_SESSION, SESSION_KEY)
                self.current_session = None
            else:
                await self.store.put(STORE_FLASHCARD_SESSION, SESSION_KEY, session.to_data())
                self.current_session = session
        except StoreUnavailable as e:
            logger.error("Could not save flashcard session: %s", str(e))

    async def clear_all(self) -> int:
        """Drop all progress and the session."""
        count = len(self.progress)
        self.progress = {}
        self.current_session = None
        try:
            await self.store.clear(STORE_FLASHCARD_PROGRESS)
            await self.store.clear(STORE_FLASHCARD_SESSION)
        except StoreUnavailable as e:
            logger.error("Could not clear stored flashcard progress: %s", str(e))
        logger.info("Cleared %d flashcard progress record(s)", count)
        return count

    async def forget(self, word: str) -> bool:
        """Drop one word's progress locally."""
        key = clean_word(word)
        if self.progress.pop(key, None) is None:
            return False
        self.coalescer.mark(self.collection, key, push=False)
        self.coalescer.forget(self.collection, key)
        return True

    def snapshot(self, key: str) -> Optional[FlashcardProgress]:
        record = self.progress.get(key)
        return record.copy() if record else None

    def snapshot_all(self) -> Dict[str, FlashcardProgress]:
        return self.all()

    def merge_remote(self, records: Dict[str, FlashcardProgress]) -> int:
        """Merge remote progress; returns how many words changed."""
        changed = 0
        for key, remote in records.items():
            key = clean_word(key)
            if not key or self.word_history.is_blacklisted(key):
                continue
            merged = merge_flashcard(self.progress.get(key), remote)
            if merged is None:
                continue
            merged.word = key
            self.progress[key] = merged
            self.coalescer.mark(self.collection, key, push=False)
            changed += 1
        return changed

    def replace_all(self, records: Dict[str, FlashcardProgress]) -> None:
        """Discard local progress in favour of the given records."""
        stale = set(self.progress)
        self.progress = {}
        for key, record in records.items():
            key = clean_word(key)
            if key and not self.word_history.is_blacklisted(key):
                adopted = record.copy()
                adopted.word = key
                self.progress[key] = adopted
        for key in stale | set(self.progress):
            self.coalescer.mark(self.collection, key, push=False)

    async def persist(self, key: str) -> None:
        record = self.progress.get(key)
        if record is None:
            await self.store.delete(STORE_FLASHCARD_PROGRESS, key)
        else:
            await self.store.put(STORE_FLASHCARD_PROGRESS, key, record.to_data())

    def export(self) -> Dict[str, dict]:
        return {
            "progress": {key: record.to_data() for key, record in self.progress.items()},
            "session": self.current_session.to_data() if self.current_session else None,
        }

    def restore(self, data: Dict[str, dict]) -> int:
        """Adopt progress and session from a backup document section."""
        for key, entry in (data.get("progress") or {}).items():
            record = FlashcardProgress.from_data(entry, word=key)
            if record.word:
                self.progress[record.word] = record
                self.coalescer.mark(self.collection, record.word, push=False)
        session = data.get("session")
        if session and self.current_session is None:
            restored = FlashcardSession.from_data(session)
            self.current_session = restored if restored.deck else None
        return len(self.progress)
