"""Learning engine: the object owning all learning state."""
import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from vocabsync.config import SYNC_FLASHCARD, SYNC_REVIEW, SYNC_WORDS
from vocabsync.errors import MalformedBackup, StoreUnavailable
from vocabsync.models.records import (
    DeckCard,
    FlashcardProgress,
    FlashcardSession,
    WordLookupRecord,
    clean_word,
    utc_now,
)
from vocabsync.services.backup_service import BackupService
from vocabsync.services.flashcard_service import FlashcardService
from vocabsync.services.local_store import LocalStore
from vocabsync.services.remote_gateway import GatewayResult, RemoteGateway, SupabaseGateway
from vocabsync.services.review_service import ReviewService
from vocabsync.services.sync_coordinator import ProgressCallback, SyncCoordinator, SyncState
from vocabsync.services.word_history_service import WordHistoryService
from vocabsync.services.write_coalescer import Key, WriteCoalescer


class LearningEngine:
    """Main application class.

    Owns the local store, the owner services, the write coalescer and the
    sync coordinator. Several engines can live side by side; nothing is kept
    in module globals.
    """

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        gateway: Optional[RemoteGateway] = None,
        backup: Optional[BackupService] = None,
        on_second_lookup: Optional[Callable[[str], None]] = None,
        on_sync_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random = random,
        coalescer_clock: Callable[[], float] = time.monotonic,
        local_delay: Optional[float] = None,
        cloud_delay: Optional[float] = None,
        tick_interval: Optional[float] = None,
    ):
        """Initialize the engine; nothing is opened until ``start``."""
        self.logger = logging.getLogger(__name__)
        self.store = store or LocalStore()
        self.gateway = gateway or SupabaseGateway()
        self.backup = backup or BackupService()
        self.on_second_lookup = on_second_lookup
        self.running = False

        self.coalescer = WriteCoalescer(
            self._persist,
            self._push,
            lambda: self.sync_coordinator.can_push,
            local_delay=local_delay,
            cloud_delay=cloud_delay,
            tick_interval=tick_interval,
            clock=coalescer_clock,
        )
        self.words = WordHistoryService(
            self.store,
            self.coalescer,
            on_second_lookup=self._handle_second_lookup,
            remote_delete=self._remote_delete,
            clock=clock,
        )
        self.flashcards = FlashcardService(self.store, self.coalescer, self.words, clock=clock, rng=rng)
        self.review = ReviewService(
            self.store,
            self.coalescer,
            remote_delete=self._remote_delete,
            clock=clock,
            is_blacklisted=self.words.is_blacklisted,
        )
        self.owners = {
            SYNC_WORDS: self.words,
            SYNC_FLASHCARD: self.flashcards,
            SYNC_REVIEW: self.review,
        }
        self.sync_coordinator = SyncCoordinator(
            self.gateway, self.owners, self.store, on_progress=on_sync_progress, clock=clock
        )

    async def start(self) -> None:
        """Open the store, load state and start the coalescer."""
        if self.running:
            return

        try:
            await self.store.init()
            await self._load()
        except StoreUnavailable as e:
            self.logger.error("Local store unavailable, running in memory: %s", str(e))
            await self._restore_from_backup()

        self.coalescer.start()
        self.running = True
        self.logger.info("Learning engine started")
        self.sync_coordinator.trigger_sync()

    async def stop(self) -> None:
        """Flush pending writes and release resources."""
        if not self.running:
            return

        try:
            await self.sync_coordinator.cancel()
            await self.coalescer.stop()
            if self.store.ready:
                await self.write_backup()
            await self.gateway.close()
            await self.store.close()
            self.logger.info("Learning engine stopped")
        finally:
            self.running = False

    async def _load(self) -> None:
        await self.words.load()
        await self.flashcards.load()
        await self.review.load()
        await self.sync_coordinator.load()
        await self._restore_from_backup()
        await self.write_backup()

    async def _restore_from_backup(self) -> None:
        """Fill empty sections from the JSON backup."""
        try:
            document = await asyncio.to_thread(self.backup.load)
        except MalformedBackup as e:
            self.logger.error("Ignoring backup: %s", str(e))
            return
        if not document:
            return

        if not self.words.words and document.get("words"):
            restored = self.words.restore(document["words"])
            self.logger.info("Restored %d word(s) from backup", restored)
        if not self.flashcards.progress and document.get("flashcard"):
            restored = self.flashcards.restore(document["flashcard"])
            self.logger.info("Restored %d flashcard record(s) from backup", restored)
            if self.flashcards.current_session and self.store.ready:
                await self.flashcards.save_session(self.flashcards.current_session)
        if not self.review.entries and document.get("review"):
            restored = self.review.restore(document["review"])
            self.logger.info("Restored %d review entr(ies) from backup", restored)

    async def write_backup(self) -> bool:
        """Write the JSON backup of everything currently loaded."""
        document = {
            "words": self.words.export(),
            "flashcard": self.flashcards.export(),
            "review": self.review.export(),
        }
        return await asyncio.to_thread(self.backup.write, document)

    async def flush(self) -> None:
        """Force both coalescing windows to flush now."""
        await self.coalescer.flush()

    async def _persist(self, keys: List[Key]) -> List[Key]:
        results = await asyncio.gather(
            *(self.owners[collection].persist(key) for collection, key in keys),
            return_exceptions=True,
        )
        retry = []
        for key, result in zip(keys, results):
            if isinstance(result, StoreUnavailable):
                self.logger.error("Could not persist %s/%s: %s", key[0], key[1], str(result))
                retry.append(key)
            elif isinstance(result, BaseException):
                raise result
        return retry

    async def _push(self, keys: List[Key]) -> None:
        await self.sync_coordinator.push(keys)

    async def _remote_delete(self, collection: str, key: str, blacklist: bool) -> bool:
        return await self.sync_coordinator.push_delete(collection, key, blacklist=blacklist)

    def _handle_second_lookup(self, word: str) -> None:
        if self.on_second_lookup:
            self.on_second_lookup(word)
        self.review.add_pending(word)

    # Word history

    async def record_lookup(self, word: str, context: str = "") -> Optional[WordLookupRecord]:
        return self.words.record_lookup(word, context)

    async def word_history(self, word: Optional[str] = None) -> Any:
        """One word's record, or every record when ``word`` is omitted."""
        if word is None:
            return self.words.all()
        return self.words.get(word)

    async def remove_context(self, word: str, index: int) -> bool:
        return self.words.remove_context(word, index)

    async def clear_word(self, word: str) -> bool:
        return await self.words.clear_word(word)

    async def delete_word_permanently(self, word: str) -> None:
        """Blacklist a word and drop everything known about it."""
        await self.words.delete_permanently(word)
        if await self.flashcards.forget(word):
            await self._remote_delete(SYNC_FLASHCARD, clean_word(word), False)
        await self.review.remove(word)

    async def clear_word_history(self) -> int:
        return await self.words.clear_all()

    # Flashcards

    async def record_flashcard_review(
        self, word: str, remembered: bool, context: str = ""
    ) -> Optional[FlashcardProgress]:
        return self.flashcards.record_review(word, remembered, context)

    async def build_deck(self, deck_size: Optional[int] = None) -> List[DeckCard]:
        return self.flashcards.build_deck(deck_size)

    async def flashcard_stats(self) -> Dict[str, int]:
        return self.flashcards.stats()

    async def save_session(self, session: Optional[FlashcardSession]) -> None:
        await self.flashcards.save_session(session)

    async def current_session(self) -> Optional[FlashcardSession]:
        return self.flashcards.current_session

    async def clear_flashcards(self) -> int:
        count = await self.flashcards.clear_all()
        await asyncio.to_thread(self.backup.delete_section, "flashcard")
        return count

    # Immersive review

    async def add_to_review(self, word: str) -> bool:
        return self.review.add_pending(word)

    async def review_prompt(self, template: str) -> str:
        return await self.review.generate_prompt(template)

    async def check_review_response(self, text: str) -> List[str]:
        return await self.review.check_response(text)

    async def toggle_review(self, word: str) -> bool:
        return await self.review.toggle(word)

    async def clear_review(self) -> int:
        count = await self.review.clear_all()
        await asyncio.to_thread(self.backup.delete_section, "review")
        return count

    # Cloud sync

    async def sign_in(self, email: str, password: str) -> GatewayResult:
        result = await self.gateway.sign_in(email, password)
        if result.success:
            await self.sync_coordinator.on_login()
        return result

    async def sign_out(self) -> None:
        await self.sync_coordinator.on_logout()
        await self.gateway.sign_out()

    async def enable_sync(self) -> Optional[asyncio.Task]:
        return await self.sync_coordinator.enable()

    async def disable_sync(self) -> None:
        await self.sync_coordinator.disable()

    async def sync(self) -> Dict[str, SyncState]:
        return await self.sync_coordinator.sync()

    async def sync_status(self) -> Dict[str, Any]:
        return self.sync_coordinator.status()

    async def remote_counts(self) -> Dict[str, Optional[int]]:
        return await self.sync_coordinator.remote_counts()

