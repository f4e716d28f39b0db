"""Tests for the sync coordinator."""
import asyncio
from datetime import timedelta

import pytest

from conftest import InMemoryGateway
from vocabsync.config import STORE_SESSION_META, STORE_WORD_HISTORY
from vocabsync.models.records import FlashcardProgress, ReviewQueueEntry, WordLookupRecord
from vocabsync.services.sync_coordinator import CHECKPOINT_EPSILON, CHECKPOINTS_KEY, SyncState


class BlockingGateway(InMemoryGateway):
    """Gateway whose full fetches wait until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_all(self, collection):
        self.entered.set()
        await self.release.wait()
        return await super().fetch_all(collection)


@pytest.fixture(autouse=True)
def remote_clock(gateway, clock):
    """Remote timestamps start at the local clock."""
    gateway.server_time = clock.now


async def lookup_words(engine, count: int) -> None:
    for i in range(count):
        await engine.record_lookup(f"word{i}", f"context {i}")
    await engine.coalescer.local.flush()


@pytest.mark.asyncio
async def test_sync_requires_enabled_and_session(engine, gateway):
    """Test that nothing syncs while disabled or signed out."""
    assert not engine.sync_coordinator.can_push
    states = await engine.sync()
    assert set(states.values()) == {SyncState.UNINITIALIZED}
    assert gateway.fetch_calls == []

    gateway.authenticated = False
    assert await engine.enable_sync() is None
    assert gateway.fetch_calls == []


@pytest.mark.asyncio
async def test_first_sync_uploads_local_words(engine, gateway, clock):
    """Test a full sync with an empty remote and 50 local words."""
    await lookup_words(engine, 50)
    engine.sync_coordinator.batch_size = 20

    await engine.enable_sync()
    states = await engine.sync()

    assert set(states.values()) == {SyncState.IDLE}
    assert len(gateway.tables["words"]) == 50
    assert [len(batch) for batch in gateway.upserts] == [20, 20, 10]
    assert len(engine.words.words) == 50
    assert engine.sync_coordinator.checkpoints == {"words": clock.now, "flashcard": clock.now, "review": clock.now}
    saved = await engine.store.get(STORE_SESSION_META, CHECKPOINTS_KEY)
    assert saved["words"] == clock.now.isoformat()


@pytest.mark.asyncio
async def test_full_sync_adopts_remote_state(engine, gateway):
    """Test that a non-empty remote replaces local data on the first sync."""
    await engine.record_lookup("local", "only here")
    await engine.coalescer.local.flush()
    gateway.seed("words", WordLookupRecord(word="remote", lookup_count=4, contexts=["from afar"]))

    await engine.enable_sync()
    await engine.sync()
    await engine.flush()

    assert set(engine.words.words) == {"remote"}
    assert set(await engine.store.get_all(STORE_WORD_HISTORY)) == {"remote"}


@pytest.mark.asyncio
async def test_incremental_pull_and_checkpoint(engine, gateway, clock):
    """Test that later syncs pull only newer rows and move the checkpoint forward."""
    await engine.enable_sync()
    await engine.sync()
    first_checkpoint = engine.sync_coordinator.checkpoints["flashcard"]

    updated_at = gateway.seed(
        "flashcard", FlashcardProgress(word="cat", review_count=3, mastery_level=2, next_review=clock.now)
    )
    await engine.sync()

    assert ("flashcard", first_checkpoint) in gateway.fetch_calls
    assert engine.flashcards.get("cat").review_count == 3
    assert engine.sync_coordinator.checkpoints["flashcard"] == updated_at + CHECKPOINT_EPSILON

    await engine.sync()
    assert engine.sync_coordinator.checkpoints["flashcard"] == updated_at + CHECKPOINT_EPSILON


@pytest.mark.asyncio
async def test_checkpoint_never_moves_back(engine, gateway, clock):
    """Test that an older remote row cannot lower the checkpoint."""
    await engine.enable_sync()
    await engine.sync()
    future = clock.now + timedelta(days=30)
    engine.sync_coordinator.checkpoints["review"] = future

    gateway.seed("review", ReviewQueueEntry.pending("cat", clock.now))
    await engine.sync()
    assert engine.sync_coordinator.checkpoints["review"] == future

    await engine.sync_coordinator._advance_checkpoint("review", clock.now)
    assert engine.sync_coordinator.checkpoints["review"] == future


@pytest.mark.asyncio
async def test_incremental_merge_never_regresses(engine, gateway, clock):
    """Test that remote rows behind local progress are ignored on pull."""
    await engine.enable_sync()
    await engine.sync()
    for _ in range(3):
        await engine.record_flashcard_review("cat", True)

    gateway.seed("flashcard", FlashcardProgress(word="cat", review_count=2, mastery_level=1, next_review=clock.now))
    await engine.sync()

    assert engine.flashcards.get("cat").review_count == 3
    assert gateway.tables["flashcard"]["cat"].review_count == 3


@pytest.mark.asyncio
async def test_failed_batch_does_not_stop_upload(engine, gateway):
    """Test that one rejected batch marks the collection as failed."""
    await lookup_words(engine, 50)
    engine.sync_coordinator.batch_size = 20
    gateway.failing_batches = {1}

    await engine.enable_sync()
    states = await engine.sync()

    assert states["words"] is SyncState.ERROR
    assert states["flashcard"] is SyncState.IDLE
    assert len(gateway.upserts) == 3
    assert len(gateway.tables["words"]) == 30

    gateway.failing_batches = set()
    states = await engine.sync()
    assert states["words"] is SyncState.IDLE
    assert len(gateway.tables["words"]) == 50


@pytest.mark.asyncio
async def test_fetch_failure(engine, gateway):
    """Test that a failed pull leaves checkpoints untouched."""
    gateway.failing = {"fetch"}

    await engine.enable_sync()
    states = await engine.sync()

    assert set(states.values()) == {SyncState.ERROR}
    assert set(engine.sync_coordinator.checkpoints.values()) == {None}


@pytest.mark.asyncio
async def test_cancel_settles_state(make_engine):
    """Test cancelling a cycle in flight."""
    blocking = BlockingGateway()
    engine = make_engine(gateway=blocking)
    await engine.start()
    try:
        task = await engine.enable_sync()
        await asyncio.wait_for(blocking.entered.wait(), 1)
        assert engine.sync_coordinator.states["words"] is SyncState.SYNCING
        assert engine.sync_coordinator.trigger_sync() is task

        await engine.sync_coordinator.cancel()

        assert task.cancelled()
        assert engine.sync_coordinator.states["words"] is SyncState.UNINITIALIZED
        assert not engine.sync_coordinator.running
    finally:
        blocking.release.set()
        await engine.stop()


@pytest.mark.asyncio
async def test_disable_clears_checkpoints(engine, gateway):
    """Test that disabling forgets every checkpoint."""
    await engine.enable_sync()
    await engine.sync()

    await engine.disable_sync()

    status = await engine.sync_status()
    assert status["enabled"] is False
    assert {c["state"] for c in status["collections"].values()} == {"uninitialized"}
    assert {c["checkpoint"] for c in status["collections"].values()} == {None}
    assert await engine.store.get(STORE_SESSION_META, CHECKPOINTS_KEY) == {}
    assert await engine.store.get(STORE_SESSION_META, "cloudSync") == {"enabled": False}


@pytest.mark.asyncio
async def test_real_time_push(engine, gateway, monotonic):
    """Test that a change reaches the remote store after the cloud window."""
    await engine.enable_sync()
    await engine.sync()
    checkpoints = dict(engine.sync_coordinator.checkpoints)
    gateway.upserts.clear()

    await engine.record_lookup("kiwi", "a kiwi")
    monotonic.advance(1.0)
    await engine.coalescer.tick()
    assert gateway.upserts == []

    monotonic.advance(1.0)
    await engine.coalescer.tick()

    assert gateway.upserts == [["kiwi"]]
    assert gateway.tables["words"]["kiwi"].contexts == ["a kiwi"]
    assert engine.sync_coordinator.checkpoints == checkpoints


@pytest.mark.asyncio
async def test_real_time_push_keeps_other_device_changes(engine, gateway, monotonic):
    """Test that a push unions with a remote row written after the last pull."""
    await engine.enable_sync()
    await engine.sync()
    gateway.seed("words", WordLookupRecord(word="kiwi", lookup_count=5, contexts=["from device B"]))

    await engine.record_lookup("kiwi", "a kiwi")
    monotonic.advance(2.0)
    await engine.coalescer.tick()

    remote = gateway.tables["words"]["kiwi"]
    assert remote.lookup_count >= 5
    assert set(remote.contexts) == {"from device B", "a kiwi"}
    local = await engine.word_history("kiwi")
    assert local.lookup_count == 5
    assert set(local.contexts) == {"from device B", "a kiwi"}


@pytest.mark.asyncio
async def test_real_time_push_skips_rows_not_ahead(engine, gateway, clock, monotonic):
    """Test that a push never lowers remote flashcard progress."""
    await engine.enable_sync()
    await engine.sync()
    gateway.seed("flashcard", FlashcardProgress(word="cat", review_count=9, mastery_level=4, next_review=clock.now))
    gateway.upserts.clear()

    await engine.record_flashcard_review("cat", True)
    monotonic.advance(2.0)
    await engine.coalescer.tick()

    assert gateway.upserts == []
    assert gateway.tables["flashcard"]["cat"].review_count == 9
    assert engine.flashcards.get("cat").review_count == 9


class ExplodingGateway(InMemoryGateway):
    """Gateway that fails with an unexpected error while fetching words."""

    async def fetch_all(self, collection):
        if collection == "words":
            raise RuntimeError("boom")
        return await super().fetch_all(collection)


@pytest.mark.asyncio
async def test_unexpected_error_marks_collection_failed(make_engine):
    """Test that an unexpected error leaves the collection retryable."""
    engine = make_engine(gateway=ExplodingGateway())
    await engine.start()
    try:
        await engine.enable_sync()
        states = await engine.sync()
    finally:
        await engine.stop()

    assert states["words"] is SyncState.ERROR
    assert states["flashcard"] is SyncState.IDLE
    assert engine.sync_coordinator.checkpoints["words"] is None


@pytest.mark.asyncio
async def test_remote_deletes(engine, gateway):
    """Test that clears and permanent deletes reach the remote store."""
    await engine.record_lookup("apple")
    await engine.record_lookup("pear")
    await engine.enable_sync()
    await engine.sync()

    await engine.clear_word("apple")
    await engine.delete_word_permanently("pear")

    assert ("words", "apple") in gateway.deleted
    assert "pear" in gateway.blacklisted
    assert await engine.remote_counts() == {"words": 0, "flashcard": 0, "review": 0}


@pytest.mark.asyncio
async def test_progress_reports(make_engine):
    """Test the progress callback over a cycle."""
    reports = []
    engine = make_engine(on_sync_progress=lambda current, total, message: reports.append((current, total, message)))
    await engine.start()
    try:
        await engine.enable_sync()
        await engine.sync()
    finally:
        await engine.stop()

    assert reports[0] == (0, 6, "Downloading words")
    assert reports[-1] == (6, 6, "Sync complete")


@pytest.mark.asyncio
async def test_progress_reported_per_upload_batch(make_engine):
    """Test that every uploaded batch reports progress."""
    reports = []
    engine = make_engine(on_sync_progress=lambda current, total, message: reports.append((current, total, message)))
    await engine.start()
    try:
        await lookup_words(engine, 50)
        engine.sync_coordinator.batch_size = 20
        await engine.enable_sync()
        await engine.sync()
    finally:
        await engine.stop()

    uploaded = [report for report in reports if report[2].startswith("Uploaded")]
    assert uploaded == [
        (1, 6, "Uploaded 20/50 words"),
        (1, 6, "Uploaded 40/50 words"),
        (1, 6, "Uploaded 50/50 words"),
    ]


@pytest.mark.asyncio
async def test_checkpoints_survive_restart(make_engine, gateway):
    """Test that a restarted engine resumes with an incremental pull."""
    first = make_engine()
    await first.start()
    await first.enable_sync()
    await first.sync()
    await first.stop()
    gateway.fetch_calls.clear()

    second = make_engine()
    await second.start()
    try:
        states = await second.sync()
    finally:
        await second.stop()

    assert set(states.values()) == {SyncState.IDLE}
    assert all(checkpoint is not None for _, checkpoint in gateway.fetch_calls[::2])


if __name__ == "__main__":
    pytest.main([__file__])
