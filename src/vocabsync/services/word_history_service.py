"""Service for the word lookup history."""
import logging
import re
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set

from vocabsync.config import STORE_SESSION_META, STORE_WORD_HISTORY, SYNC_WORDS, settings
from vocabsync.errors import StoreUnavailable
from vocabsync.models.records import WordLookupRecord, clean_word, utc_now
from vocabsync.monitoring import lookups_recorded
from vocabsync.services.local_store import LocalStore
from vocabsync.services.merge_policy import merge_word
from vocabsync.services.write_coalescer import WriteCoalescer

logger = logging.getLogger(__name__)

BLACKLIST_KEY = "blacklist"
SENTENCE_PUNCTUATION = re.compile(r"[.!?。！？]")
MAX_LOOKUP_WORDS = 5

RemoteDelete = Callable[[str, str, bool], Awaitable[bool]]


def looks_like_sentence(text: str) -> bool:
    """Whether a selection is a sentence rather than a word or short phrase."""
    return bool(SENTENCE_PUNCTUATION.search(text)) or len(text.split()) > MAX_LOOKUP_WORDS


class WordHistoryService:
    """Owns every word's lookup count, lookup instants and contexts."""

    collection = SYNC_WORDS

    def __init__(
        self,
        store: LocalStore,
        coalescer: WriteCoalescer,
        on_second_lookup: Optional[Callable[[str], None]] = None,
        remote_delete: Optional[RemoteDelete] = None,
        clock: Callable[[], datetime] = utc_now,
        max_contexts: Optional[int] = None,
        max_context_length: Optional[int] = None,
    ):
        """Initialize the service.

        Args:
            store: Local store the history is loaded from and persisted to.
            coalescer: Receives a mark for every changed word.
            on_second_lookup: Called with the word key when its count reaches 2.
            remote_delete: Coroutine propagating deletes to the remote store.
        """
        self.store = store
        self.coalescer = coalescer
        self.on_second_lookup = on_second_lookup
        self.remote_delete = remote_delete
        self.clock = clock
        self.max_contexts = max_contexts or settings.learning.max_contexts
        self.max_context_length = max_context_length or settings.learning.max_context_length
        self.words: Dict[str, WordLookupRecord] = {}
        self.blacklist: Set[str] = set()

    async def load(self) -> int:
        """Load history and blacklist from the store; returns the word count."""
        rows = await self.store.get_all(STORE_WORD_HISTORY)
        meta = await self.store.get(STORE_SESSION_META, BLACKLIST_KEY) or {}
        self.blacklist = {clean_word(w) for w in meta.get("words", [])}
        self.words = {}
        for key, data in rows.items():
            record = WordLookupRecord.from_data(data, word=key)
            if record.word and record.word not in self.blacklist:
                self.words[record.word] = record
        logger.info("Loaded %d word(s) from local store", len(self.words))
        return len(self.words)

    def record_lookup(self, word: str, context: str = "") -> Optional[WordLookupRecord]:
        """Record one lookup of a word with the surrounding text.

        Sentences, empty selections and blacklisted words are ignored.
        """
        if not word or not word.strip():
            return None
        text = word.strip()
        if looks_like_sentence(text):
            logger.debug("Ignoring sentence-like selection")
            return None
        key = clean_word(text)
        if key in self.blacklist:
            return None

        record = self.words.setdefault(key, WordLookupRecord(word=key))
        record.lookup_count += 1
        record.lookup_timestamps.append(self.clock())
        if context and context.strip():
            self._add_context(record, context.strip())

        lookups_recorded.inc()
        self.coalescer.mark(self.collection, key)

        if record.lookup_count == 2 and self.on_second_lookup:
            try:
                self.on_second_lookup(key)
            except Exception as e:
                logger.error("Second lookup callback failed for %s: %s", key, str(e))
        return record.copy()

    def _add_context(self, record: WordLookupRecord, context: str) -> None:
        if len(context) > self.max_context_length:
            context = context[:self.max_context_length] + "..."
        if context in record.contexts:
            return
        record.contexts.append(context)
        del record.contexts[:-self.max_contexts]

    def get(self, word: str) -> Optional[WordLookupRecord]:
        record = self.words.get(clean_word(word))
        return record.copy() if record else None

    def all(self) -> Dict[str, WordLookupRecord]:
        return {key: record.copy() for key, record in self.words.items()}

    def is_blacklisted(self, word: str) -> bool:
        return clean_word(word) in self.blacklist

    def remove_context(self, word: str, index: int) -> bool:
        """Remove one stored context of a word."""
        record = self.words.get(clean_word(word))
        if record is None or not 0 <= index < len(record.contexts):
            return False
        del record.contexts[index]
        self.coalescer.mark(self.collection, record.word)
        return True

    async def clear_word(self, word: str) -> bool:
        """Forget a word locally and remotely. It can be recorded again later."""
        key = clean_word(word)
        if self.words.pop(key, None) is None:
            return False
        self.coalescer.mark(self.collection, key, push=False)
        self.coalescer.forget(self.collection, key)
        if self.remote_delete:
            await self.remote_delete(self.collection, key, False)
        logger.info("Cleared history of %s", key)
        return True

    async def clear_all(self) -> int:
        """Forget every word locally; returns how many were removed."""
        count = len(self.words)
        self.words = {}
        try:
            await self.store.clear(STORE_WORD_HISTORY)
        except StoreUnavailable as e:
            logger.error("Could not clear stored history: %s", str(e))
        logger.info("Cleared %d word(s) from history", count)
        return count

    async def delete_permanently(self, word: str) -> None:
        """Forget a word and never record or restore it again."""
        key = clean_word(word)
        if not key:
            return
        if self.words.pop(key, None) is not None:
            self.coalescer.mark(self.collection, key, push=False)
            self.coalescer.forget(self.collection, key)
        self.blacklist.add(key)
        await self._save_blacklist()
        if self.remote_delete:
            await self.remote_delete(self.collection, key, True)
        logger.info("Blacklisted %s", key)

    async def _save_blacklist(self) -> None:
        try:
            await self.store.put(STORE_SESSION_META, BLACKLIST_KEY, {"words": sorted(self.blacklist)})
        except StoreUnavailable as e:
            logger.error("Could not save blacklist: %s", str(e))

    def snapshot(self, key: str) -> Optional[WordLookupRecord]:
        record = self.words.get(key)
        return record.copy() if record else None

    def snapshot_all(self) -> Dict[str, WordLookupRecord]:
        return self.all()

    def merge_remote(self, records: Dict[str, WordLookupRecord]) -> int:
        """Merge remote words into local history; returns how many changed."""
        changed = 0
        for key, remote in records.items():
            key = clean_word(key)
            if not key or key in self.blacklist:
                continue
            merged = merge_word(self.words.get(key), remote, self.max_contexts)
            if merged is None:
                continue
            merged.word = key
            self.words[key] = merged
            self.coalescer.mark(self.collection, key, push=False)
            changed += 1
        return changed

    def replace_all(self, records: Dict[str, WordLookupRecord]) -> None:
        """Discard local history in favour of the given records."""
        stale = set(self.words)
        self.words = {}
        for key, record in records.items():
            key = clean_word(key)
            if not key or key in self.blacklist:
                continue
            adopted = record.copy()
            adopted.word = key
            adopted.contexts = adopted.contexts[-self.max_contexts:]
            self.words[key] = adopted
        for key in stale | set(self.words):
            self.coalescer.mark(self.collection, key, push=False)

    async def persist(self, key: str) -> None:
        """Write one word's current state to the store (or delete it)."""
        record = self.words.get(key)
        if record is None:
            await self.store.delete(STORE_WORD_HISTORY, key)
        else:
            await self.store.put(STORE_WORD_HISTORY, key, record.to_data())

    def export(self) -> Dict[str, dict]:
        return {key: record.to_data() for key, record in self.words.items()}

    def restore(self, data: Dict[str, dict]) -> int:
        """Adopt words from a backup document and mark them for saving."""
        for key, entry in data.items():
            record = WordLookupRecord.from_data(entry, word=key)
            if record.word and record.word not in self.blacklist:
                self.words[record.word] = record
                self.coalescer.mark(self.collection, record.word, push=False)
        return len(self.words)
