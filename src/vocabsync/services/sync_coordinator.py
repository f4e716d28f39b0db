"""Full and incremental synchronization against the remote store."""
import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from vocabsync.config import STORE_SESSION_META, SYNC_COLLECTIONS, SYNC_FLASHCARD, SYNC_REVIEW, SYNC_WORDS, settings
from vocabsync.errors import StoreUnavailable
from vocabsync.models.records import from_iso, to_iso, utc_now
from vocabsync.monitoring import error_count, records_merged, records_uploaded, sync_duration, sync_runs
from vocabsync.services.local_store import LocalStore
from vocabsync.services.merge_policy import flashcard_ahead, merge_word, review_entry_ahead, word_ahead
from vocabsync.services.remote_gateway import RemoteGateway, batched

logger = logging.getLogger(__name__)

CHECKPOINTS_KEY = "syncCheckpoints"
SYNC_SETTINGS_KEY = "cloudSync"
CHECKPOINT_EPSILON = timedelta(milliseconds=1)

AHEAD = {
    SYNC_WORDS: word_ahead,
    SYNC_FLASHCARD: flashcard_ahead,
    SYNC_REVIEW: review_entry_ahead,
}

ProgressCallback = Callable[[int, int, str], None]


class SyncState(Enum):
    """Sync state of one collection."""
    UNINITIALIZED = "uninitialized"
    SYNCING = "syncing"
    IDLE = "idle"
    ERROR = "error"


class SyncOwner(Protocol):
    """What the coordinator needs from the service owning a collection."""

    def snapshot(self, key: str) -> Optional[Any]: ...

    def snapshot_all(self) -> Dict[str, Any]: ...

    def merge_remote(self, records: Dict[str, Any]) -> int: ...

    def replace_all(self, records: Dict[str, Any]) -> None: ...


class SyncCoordinator:
    """Drives sync cycles and owns the per-collection checkpoints.

    A cycle runs as one background task; triggering while a cycle is running
    returns the running task. Each collection carries its own lock and state,
    and its checkpoint only moves after a successful pull.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        owners: Dict[str, SyncOwner],
        store: LocalStore,
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = utc_now,
        max_contexts: Optional[int] = None,
    ):
        self.gateway = gateway
        self.owners = owners
        self.store = store
        self.batch_size = batch_size or settings.sync.batch_size
        self.on_progress = on_progress
        self.clock = clock
        self.max_contexts = max_contexts or settings.learning.max_contexts
        self.enabled = settings.sync.enabled
        self.states: Dict[str, SyncState] = {c: SyncState.UNINITIALIZED for c in SYNC_COLLECTIONS}
        self.checkpoints: Dict[str, Optional[datetime]] = {c: None for c in SYNC_COLLECTIONS}
        self._locks = {c: asyncio.Lock() for c in SYNC_COLLECTIONS}
        self._task: Optional[asyncio.Task] = None

    @property
    def can_push(self) -> bool:
        return self.enabled and self.gateway.is_authenticated

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def load(self) -> None:
        """Restore checkpoints and the enabled flag from the local store."""
        try:
            saved = await self.store.get(STORE_SESSION_META, CHECKPOINTS_KEY) or {}
            sync_settings = await self.store.get(STORE_SESSION_META, SYNC_SETTINGS_KEY)
        except StoreUnavailable as e:
            logger.error("Could not load sync checkpoints: %s", str(e))
            return
        for collection in SYNC_COLLECTIONS:
            self.checkpoints[collection] = from_iso(saved.get(collection))
            if self.checkpoints[collection] is not None:
                self._transition(collection, SyncState.IDLE)
        if sync_settings is not None:
            self.enabled = bool(sync_settings.get("enabled", self.enabled))

    def status(self) -> Dict[str, Any]:
        """Snapshot of the enabled flag, session, states and checkpoints."""
        return {
            "enabled": self.enabled,
            "authenticated": self.gateway.is_authenticated,
            "running": self.running,
            "collections": {
                collection: {
                    "state": self.states[collection].value,
                    "checkpoint": to_iso(self.checkpoints[collection]),
                }
                for collection in SYNC_COLLECTIONS
            },
        }

    def trigger_sync(self) -> Optional[asyncio.Task]:
        """Start a cycle in the background, or return the one in flight."""
        if not self.can_push:
            logger.debug("Sync not triggered: enabled=%s authenticated=%s", self.enabled, self.gateway.is_authenticated)
            return None
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run_cycle())
        return self._task

    async def sync(self) -> Dict[str, SyncState]:
        """Run a cycle (or join the running one) and return the states."""
        task = self.trigger_sync()
        if task is not None:
            await task
        return dict(self.states)

    async def on_login(self) -> Optional[asyncio.Task]:
        return self.trigger_sync()

    async def on_logout(self) -> None:
        await self.cancel()

    async def enable(self) -> Optional[asyncio.Task]:
        """Turn cloud sync on and start a cycle."""
        self.enabled = True
        await self._save_settings()
        return self.trigger_sync()

    async def disable(self) -> None:
        """Turn cloud sync off, stop any cycle and forget all checkpoints."""
        self.enabled = False
        await self.cancel()
        for collection in SYNC_COLLECTIONS:
            self.checkpoints[collection] = None
            self._transition(collection, SyncState.UNINITIALIZED)
        await self._save_checkpoints()
        await self._save_settings()

    async def cancel(self) -> None:
        """Cancel the in-flight cycle, if any."""
        if self.running:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            logger.info("Sync cycle cancelled")
        self._task = None

    async def run_cycle(self) -> None:
        """Pull every collection, then upload what local has ahead."""
        full = all(self.checkpoints[c] is None for c in SYNC_COLLECTIONS)
        mode = "full" if full else "incremental"
        logger.info("Starting %s sync", mode)
        total = len(SYNC_COLLECTIONS) * 2
        with sync_duration.time():
            for index, collection in enumerate(SYNC_COLLECTIONS):
                await self._sync_collection(collection, full, index * 2, total)
        self._report(total, total, "Sync complete")
        logger.info("Sync finished: %s", {c: s.value for c, s in self.states.items()})

    async def push(self, keys: List[Tuple[str, str]]) -> None:
        """Push the current version of changed records (real-time path)."""
        if not self.can_push:
            return None
        grouped: Dict[str, Dict[str, Any]] = {}
        for collection, key in keys:
            record = self.owners[collection].snapshot(key)
            if record is not None:
                grouped.setdefault(collection, {})[key] = record
        for collection, records in grouped.items():
            # Rows may have changed on another device since the last pull.
            result = await self.gateway.fetch_keys(collection, list(records))
            if not result.success:
                logger.error("Real-time push of %s skipped, remote rows unavailable: %s", collection, result.error)
                continue
            remote = result.data or {}
            adopted = self.owners[collection].merge_remote(remote)
            if adopted:
                records_merged.labels(collection=collection).inc(adopted)
            outgoing = self._outgoing(collection, records, remote)
            for batch in batched(outgoing, self.batch_size):
                result = await self.gateway.upsert_batch(collection, batch)
                if result.success:
                    records_uploaded.labels(collection=collection).inc(len(batch))
                else:
                    logger.error("Real-time push of %d %s record(s) failed: %s", len(batch), collection, result.error)
        return None

    async def push_delete(self, collection: str, key: str, blacklist: bool = False) -> bool:
        """Propagate a local delete (or a permanent delete) to the remote store."""
        if not self.can_push:
            return False
        if blacklist:
            result = await self.gateway.blacklist(key)
        else:
            result = await self.gateway.delete(collection, key)
        if not result.success:
            logger.error("Remote delete of %s/%s failed: %s", collection, key, result.error)
        return result.success

    async def remote_counts(self) -> Dict[str, Optional[int]]:
        """Remote record count per collection (None where the call failed)."""
        counts: Dict[str, Optional[int]] = {}
        for collection in SYNC_COLLECTIONS:
            result = await self.gateway.count(collection)
            counts[collection] = result.data if result.success else None
        return counts

    def _transition(self, collection: str, state: SyncState) -> None:
        previous = self.states[collection]
        if previous is not state:
            logger.debug("Sync state of %s: %s -> %s", collection, previous.value, state.value)
        self.states[collection] = state

    async def _sync_collection(self, collection: str, full: bool, step: int, total: int) -> None:
        lock = self._locks[collection]
        if lock.locked():
            logger.info("Skipping %s, already syncing", collection)
            return
        async with lock:
            self._transition(collection, SyncState.SYNCING)
            try:
                self._report(step, total, f"Downloading {collection}")
                if full:
                    pulled = await self._full_download(collection)
                else:
                    pulled = await self._incremental_pull(collection)
                if not pulled:
                    self._transition(collection, SyncState.ERROR)
                    return

                self._report(step + 1, total, f"Uploading {collection}")
                uploaded = await self._upload(collection, step + 1, total)
                self._transition(collection, SyncState.IDLE if uploaded else SyncState.ERROR)
            except asyncio.CancelledError:
                settled = SyncState.IDLE if self.checkpoints[collection] else SyncState.UNINITIALIZED
                self._transition(collection, settled)
                raise
            except Exception as e:
                error_count.labels(error_type="sync_cycle").inc()
                logger.exception("Unexpected error while syncing %s: %s", collection, str(e))
                self._transition(collection, SyncState.ERROR)

    async def _full_download(self, collection: str) -> bool:
        result = await self.gateway.fetch_all(collection)
        if not result.success:
            self._record_failure(collection, "download", result.error)
            return False
        records = result.data or {}
        if records:
            self.owners[collection].replace_all(records)
            records_merged.labels(collection=collection).inc(len(records))
            logger.info("Replaced local %s with %d remote record(s)", collection, len(records))
        else:
            logger.info("Remote %s is empty, keeping local data as baseline", collection)
        await self._advance_checkpoint(collection, self.clock())
        sync_runs.labels(collection=collection, mode="full").inc()
        return True

    async def _incremental_pull(self, collection: str) -> bool:
        checkpoint = self.checkpoints[collection]
        if checkpoint is None:
            result = await self.gateway.fetch_all(collection)
        else:
            result = await self.gateway.fetch_since(collection, checkpoint)
        if not result.success:
            self._record_failure(collection, "pull", result.error)
            return False

        adopted = self.owners[collection].merge_remote(result.data or {})
        if adopted:
            records_merged.labels(collection=collection).inc(adopted)
        logger.info("Pulled %d %s record(s), adopted %d", len(result.data or {}), collection, adopted)

        if result.latest_updated_at is not None:
            await self._advance_checkpoint(collection, result.latest_updated_at + CHECKPOINT_EPSILON)
        elif checkpoint is None:
            await self._advance_checkpoint(collection, self.clock())
        sync_runs.labels(collection=collection, mode="incremental").inc()
        return True

    async def _upload(self, collection: str, step: int, total: int) -> bool:
        result = await self.gateway.fetch_all(collection)
        if not result.success:
            self._record_failure(collection, "upload", result.error)
            return False
        pending = self._outgoing(collection, self.owners[collection].snapshot_all(), result.data or {})
        if not pending:
            logger.debug("Remote %s is up to date", collection)
            return True

        failed = 0
        sent = 0
        for batch in batched(pending, self.batch_size):
            batch_result = await self.gateway.upsert_batch(collection, batch)
            if batch_result.success:
                records_uploaded.labels(collection=collection).inc(len(batch))
            else:
                failed += 1
                error_count.labels(error_type="upload_batch").inc()
                logger.error("Upload of %d %s record(s) failed: %s", len(batch), collection, batch_result.error)
            sent += len(batch)
            self._report(step, total, f"Uploaded {sent}/{len(pending)} {collection}")
        logger.info("Uploaded %d %s record(s), %d batch(es) failed", len(pending), collection, failed)
        return failed == 0

    def _outgoing(self, collection: str, records: Dict[str, Any], remote: Dict[str, Any]) -> List[Any]:
        """Records local has ahead of the remote rows.

        Words go out as the union with the remote row, so counts, contexts
        and lookups written by other devices survive the upsert.
        """
        ahead = AHEAD[collection]
        outgoing = []
        for key, record in records.items():
            theirs = remote.get(key)
            if not ahead(record, theirs):
                continue
            if collection == SYNC_WORDS and theirs is not None:
                record = merge_word(theirs, record, self.max_contexts) or record
            outgoing.append(record)
        return outgoing

    async def _advance_checkpoint(self, collection: str, candidate: datetime) -> None:
        previous = self.checkpoints[collection]
        self.checkpoints[collection] = candidate if previous is None else max(candidate, previous)
        await self._save_checkpoints()

    async def _save_checkpoints(self) -> None:
        data = {c: to_iso(cp) for c, cp in self.checkpoints.items() if cp is not None}
        try:
            await self.store.put(STORE_SESSION_META, CHECKPOINTS_KEY, data)
        except StoreUnavailable as e:
            logger.error("Could not save sync checkpoints: %s", str(e))

    async def _save_settings(self) -> None:
        try:
            await self.store.put(STORE_SESSION_META, SYNC_SETTINGS_KEY, {"enabled": self.enabled})
        except StoreUnavailable as e:
            logger.error("Could not save sync settings: %s", str(e))

    def _record_failure(self, collection: str, phase: str, error: Any) -> None:
        error_count.labels(error_type=f"sync_{phase}").inc()
        logger.error("Sync %s of %s failed: %s", phase, collection, error)

    def _report(self, current: int, total: int, message: str) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(current, total, message)
        except Exception as e:
            logger.warning("Sync progress callback failed: %s", str(e))
