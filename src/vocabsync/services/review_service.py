"""Service for the immersive review queue.

Words move pending -> reviewing -> mastered each time they show up in a
generated response. Each state is persisted to its own store collection.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from vocabsync.config import (
    STORE_REVIEW_MASTERED,
    STORE_REVIEW_PENDING,
    STORE_REVIEW_PROGRESS,
    STORE_SESSION_META,
    SYNC_REVIEW,
    settings,
)
from vocabsync.errors import StoreUnavailable
from vocabsync.models.records import ReviewQueueEntry, ReviewSession, ReviewState, clean_word, utc_now
from vocabsync.monitoring import review_words_advanced
from vocabsync.services.local_store import LocalStore
from vocabsync.services.merge_policy import merge_review_entry
from vocabsync.services.srs_scheduler import advance_review_entry
from vocabsync.services.write_coalescer import WriteCoalescer

logger = logging.getLogger(__name__)

SESSION_KEY = "reviewSession"
WORDS_PLACEHOLDER = "%words%"

STATE_COLLECTIONS = {
    ReviewState.PENDING: STORE_REVIEW_PENDING,
    ReviewState.REVIEWING: STORE_REVIEW_PROGRESS,
    ReviewState.MASTERED: STORE_REVIEW_MASTERED,
}


class ReviewService:
    """Owns the review queue and the current review session."""

    collection = SYNC_REVIEW

    def __init__(
        self,
        store: LocalStore,
        coalescer: WriteCoalescer,
        remote_delete: Optional[Callable[[str, str, bool], Awaitable[bool]]] = None,
        clock: Callable[[], datetime] = utc_now,
        enabled: Optional[bool] = None,
        max_daily_words: Optional[int] = None,
        is_blacklisted: Optional[Callable[[str], bool]] = None,
    ):
        self.store = store
        self.coalescer = coalescer
        self.remote_delete = remote_delete
        self.clock = clock
        self.enabled = settings.learning.immersive_review if enabled is None else enabled
        self.max_daily_words = max_daily_words or settings.learning.max_daily_review_words
        self.is_blacklisted = is_blacklisted
        self.entries: Dict[str, ReviewQueueEntry] = {}
        self.session = ReviewSession()

    async def load(self) -> int:
        """Load all three queue collections and the session."""
        self.entries = {}
        for state, collection in STATE_COLLECTIONS.items():
            rows = await self.store.get_all(collection)
            for key, data in rows.items():
                entry = ReviewQueueEntry.from_data(data, word=key, state=state)
                current = self.entries.get(entry.word)
                # A word left in two collections keeps its furthest state
                if entry.word and (current is None or state.order > current.state.order):
                    self.entries[entry.word] = entry
        session = await self.store.get(STORE_SESSION_META, SESSION_KEY)
        self.session = ReviewSession.from_data(session) if session else ReviewSession()
        logger.info("Loaded %d review queue entr(ies)", len(self.entries))
        return len(self.entries)

    def get(self, word: str) -> Optional[ReviewQueueEntry]:
        entry = self.entries.get(clean_word(word))
        return entry.copy() if entry else None

    def all(self) -> Dict[str, ReviewQueueEntry]:
        return {key: entry.copy() for key, entry in self.entries.items()}

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ReviewState}
        for entry in self.entries.values():
            counts[entry.state.value] += 1
        return counts

    def is_in_review(self, word: str) -> bool:
        return clean_word(word) in self.entries

    def add_pending(self, word: str) -> bool:
        """Queue a word; words already queued in any state are left alone."""
        key = clean_word(word)
        if not self.enabled or not key or key in self.entries:
            return False
        self.entries[key] = ReviewQueueEntry.pending(key, self.clock())
        self.coalescer.mark(self.collection, key)
        logger.info("Word added to pending review: %s", key)
        return True

    async def toggle(self, word: str) -> bool:
        """Remove a queued word, or queue it; returns whether it is now queued."""
        key = clean_word(word)
        if not key:
            return False
        if key in self.entries:
            await self.remove(key)
            return False
        self.entries[key] = ReviewQueueEntry.pending(key, self.clock())
        self.coalescer.mark(self.collection, key)
        logger.info("Added %s to pending review", key)
        return True

    async def remove(self, word: str) -> bool:
        """Drop a word from the queue locally and remotely."""
        key = clean_word(word)
        if self.entries.pop(key, None) is None:
            return False
        self.coalescer.mark(self.collection, key, push=False)
        self.coalescer.forget(self.collection, key)
        if self.remote_delete:
            await self.remote_delete(self.collection, key, False)
        logger.info("Removed %s from review", key)
        return True

    def words_to_review_today(self) -> List[str]:
        """Pending words added before today plus reviewing words due by tonight."""
        now = self.clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_day = midnight + timedelta(days=1)

        pending = sorted(
            (e for e in self.entries.values() if e.state is ReviewState.PENDING),
            key=lambda e: e.added_at,
        )
        reviewing = sorted(
            (e for e in self.entries.values() if e.state is ReviewState.REVIEWING),
            key=lambda e: e.next_review_at,
        )
        words = [e.word for e in pending if e.added_at < midnight]
        words.extend(e.word for e in reviewing if e.next_review_at <= end_of_day)
        return words[:self.max_daily_words]

    async def build_session_words(self) -> List[str]:
        """Current session words, starting a new session when it is empty."""
        if self.session.words:
            return list(self.session.words)
        self.session = ReviewSession(words=self.words_to_review_today(), last_updated=self.clock())
        await self._save_session()
        return list(self.session.words)

    async def generate_prompt(self, template: str) -> str:
        """Fill ``%words%`` in the template with the session words."""
        if not self.enabled:
            return ""
        words = await self.build_session_words()
        if not words:
            return ""
        return template.replace(WORDS_PLACEHOLDER, ", ".join(words))

    async def check_response(self, text: str) -> List[str]:
        """Advance every session word used in ``text``; returns those words."""
        if not self.enabled or not text or not self.session.words:
            return []
        used: List[str] = []
        remaining: List[str] = []
        for word in self.session.words:
            if re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE):
                used.append(word)
            else:
                remaining.append(word)

        for word in used:
            self._advance(word)

        self.session = ReviewSession(words=remaining, last_updated=self.clock())
        if used:
            logger.info("Review words used: %s", ", ".join(used))
            await self._save_session()
        return used

    def _advance(self, word: str) -> None:
        entry = self.entries.get(word)
        if entry is None or entry.state is ReviewState.MASTERED:
            return
        advanced = advance_review_entry(entry, word, self.clock(), settings.learning.review_intervals)
        self.entries[word] = advanced
        review_words_advanced.labels(state=advanced.state.value).inc()
        self.coalescer.mark(self.collection, word)
        logger.debug("Review word %s is now %s (stage %d)", word, advanced.state.value, advanced.stage)

    async def force_all_reviewable(self) -> int:
        """Put every pending and reviewing word into the session."""
        words = [
            e.word for e in self.entries.values()
            if e.state in (ReviewState.PENDING, ReviewState.REVIEWING)
        ]
        self.session = ReviewSession(words=words, last_updated=self.clock())
        await self._save_session()
        return len(words)

    async def clear_all(self) -> int:
        count = len(self.entries)
        self.entries = {}
        self.session = ReviewSession()
        try:
            for collection in STATE_COLLECTIONS.values():
                await self.store.clear(collection)
            await self.store.delete(STORE_SESSION_META, SESSION_KEY)
        except StoreUnavailable as e:
            logger.error("Could not clear stored review queue: %s", str(e))
        logger.info("Cleared %d review queue entr(ies)", count)
        return count

    async def _save_session(self) -> None:
        try:
            await self.store.put(STORE_SESSION_META, SESSION_KEY, self.session.to_data())
        except StoreUnavailable as e:
            logger.error("Could not save review session: %s", str(e))

    def _blacklisted(self, key: str) -> bool:
        return self.is_blacklisted is not None and self.is_blacklisted(key)

    def snapshot(self, key: str) -> Optional[ReviewQueueEntry]:
        entry = self.entries.get(key)
        return entry.copy() if entry else None

    def snapshot_all(self) -> Dict[str, ReviewQueueEntry]:
        return self.all()

    def merge_remote(self, records: Dict[str, ReviewQueueEntry]) -> int:
        """Merge remote entries without ever moving a word backwards."""
        changed = 0
        for key, remote in records.items():
            key = clean_word(key)
            if not key or self._blacklisted(key):
                continue
            merged = merge_review_entry(self.entries.get(key), remote)
            if merged is None:
                continue
            merged.word = key
            self.entries[key] = merged
            self.coalescer.mark(self.collection, key, push=False)
            changed += 1
        return changed

    def replace_all(self, records: Dict[str, ReviewQueueEntry]) -> None:
        stale = set(self.entries)
        self.entries = {}
        for key, record in records.items():
            key = clean_word(key)
            if key and not self._blacklisted(key):
                adopted = record.copy()
                adopted.word = key
                self.entries[key] = adopted
        for key in stale | set(self.entries):
            self.coalescer.mark(self.collection, key, push=False)

    async def persist(self, key: str) -> None:
        """Store an entry in its state's collection and drop it from the others."""
        entry = self.entries.get(key)
        for state, collection in STATE_COLLECTIONS.items():
            if entry is not None and entry.state is state:
                await self.store.put(collection, key, entry.to_data())
            else:
                await self.store.delete(collection, key)

    def export(self) -> Dict[str, object]:
        by_state = {state: [] for state in ReviewState}
        for entry in self.entries.values():
            by_state[entry.state].append(entry.to_data())
        return {
            "pending": by_state[ReviewState.PENDING],
            "reviewing": by_state[ReviewState.REVIEWING],
            "mastered": by_state[ReviewState.MASTERED],
            "session": self.session.to_data(),
        }

    def restore(self, data: Dict[str, object]) -> int:
        """Adopt queue entries and the session from a backup document section."""
        sections = (
            ("pending", ReviewState.PENDING),
            ("reviewing", ReviewState.REVIEWING),
            ("mastered", ReviewState.MASTERED),
        )
        for name, state in sections:
            for item in data.get(name) or []:
                entry = ReviewQueueEntry.from_data(item, state=state)
                if entry.word:
                    self.entries[entry.word] = entry
                    self.coalescer.mark(self.collection, entry.word, push=False)
        session = data.get("session")
        if session and not self.session.words:
            self.session = ReviewSession.from_data(session)
        return len(self.entries)
