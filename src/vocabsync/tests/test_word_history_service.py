"""Tests for the word history service."""
from typing import List

import pytest
from faker import Faker

from vocabsync.config import STORE_SESSION_META, STORE_WORD_HISTORY
from vocabsync.models.records import WordLookupRecord
from vocabsync.services.word_history_service import WordHistoryService, looks_like_sentence

fake = Faker()


@pytest.fixture
def seconds() -> List[str]:
    """Words reported by the second-lookup callback."""
    return []


@pytest.fixture
def remote_deletes() -> List[tuple]:
    """Remote deletes requested by the service."""
    return []


@pytest.fixture
def service(store, harness, clock, seconds, remote_deletes) -> WordHistoryService:
    """Create a word history service over a real store."""

    async def remote_delete(collection, key, blacklist):
        remote_deletes.append((collection, key, blacklist))
        return True

    history = WordHistoryService(
        store,
        harness.coalescer,
        on_second_lookup=seconds.append,
        remote_delete=remote_delete,
        clock=clock,
        max_contexts=3,
        max_context_length=500,
    )
    harness.owners[history.collection] = history
    return history


def test_looks_like_sentence():
    """Test sentence detection on selections."""
    assert looks_like_sentence("This is it.")
    assert looks_like_sentence("what?")
    assert looks_like_sentence("one two three four five six")
    assert not looks_like_sentence("ice cream")
    assert not looks_like_sentence("apple")


@pytest.mark.asyncio
async def test_second_lookup_fires_once_and_persists(service, harness, store, clock, seconds):
    """Test two lookups of "apple": one write with count 2, callback once."""
    service.record_lookup("apple", "I ate an apple.")
    clock.advance(seconds=5)
    record = service.record_lookup("Apple", "Apple pie")

    assert record.lookup_count == 2
    assert len(record.lookup_timestamps) == 2
    assert record.contexts == ["I ate an apple.", "Apple pie"]
    assert seconds == ["apple"]
    assert harness.coalescer.local.pending == [("words", "apple")]

    await harness.coalescer.flush()

    stored = await store.get(STORE_WORD_HISTORY, "apple")
    assert stored["count"] == 2
    assert harness.pushed == [("words", "apple")]

    service.record_lookup("apple")
    assert seconds == ["apple"]


@pytest.mark.asyncio
async def test_ignored_selections(service, harness):
    """Test that sentences, blanks and long phrases are not recorded."""
    assert service.record_lookup("") is None
    assert service.record_lookup("   ") is None
    assert service.record_lookup("The cat sat on the mat.") is None
    assert service.record_lookup("a b c d e f") is None
    assert service.words == {}
    assert harness.coalescer.local.pending == []


@pytest.mark.asyncio
async def test_word_is_normalized(service):
    """Test that whitespace and case do not split a word."""
    service.record_lookup("  Ice\n  Cream ")
    service.record_lookup("ice cream")
    assert service.get("ICE CREAM").lookup_count == 2


@pytest.mark.asyncio
async def test_contexts_trimmed_deduplicated_and_bounded(service):
    """Test context length limit, deduplication and FIFO capacity."""
    long_context = "x" * 600
    record = service.record_lookup("apple", long_context)
    assert record.contexts == ["x" * 500 + "..."]

    service.record_lookup("pear", "same")
    record = service.record_lookup("pear", "same")
    assert record.contexts == ["same"]

    for i in range(5):
        record = service.record_lookup("plum", f"context {i}")
    assert record.contexts == ["context 2", "context 3", "context 4"]


@pytest.mark.asyncio
async def test_callback_errors_are_contained(store, harness, clock):
    """Test that a failing second-lookup callback does not break recording."""

    def boom(word):
        raise RuntimeError("listener failed")

    history = WordHistoryService(store, harness.coalescer, on_second_lookup=boom, clock=clock)
    history.record_lookup("apple")
    assert history.record_lookup("apple").lookup_count == 2


@pytest.mark.asyncio
async def test_remove_context(service):
    """Test removing one context by index."""
    service.record_lookup("apple", "first")
    service.record_lookup("apple", "second")

    assert service.remove_context("apple", 0)
    assert service.get("apple").contexts == ["second"]
    assert not service.remove_context("apple", 5)
    assert not service.remove_context("missing", 0)


@pytest.mark.asyncio
async def test_clear_word(service, harness, store, remote_deletes):
    """Test clearing a word locally and remotely."""
    service.record_lookup("apple")
    await harness.coalescer.local.flush()

    assert await service.clear_word("apple")
    await harness.coalescer.flush()

    assert await store.get(STORE_WORD_HISTORY, "apple") is None
    assert remote_deletes == [("words", "apple", False)]
    assert harness.coalescer.cloud.pending == []
    assert not await service.clear_word("apple")

    assert service.record_lookup("apple").lookup_count == 1


@pytest.mark.asyncio
async def test_delete_permanently(service, store, harness, remote_deletes):
    """Test that a blacklisted word is never recorded again."""
    service.record_lookup("apple")
    await service.delete_permanently("Apple")

    assert service.is_blacklisted("apple")
    assert service.get("apple") is None
    assert service.record_lookup("apple") is None
    assert remote_deletes == [("words", "apple", True)]
    assert await store.get(STORE_SESSION_META, "blacklist") == {"words": ["apple"]}


@pytest.mark.asyncio
async def test_load_skips_blacklisted(store, harness, clock):
    """Test loading history and blacklist from the store."""
    await store.put(STORE_WORD_HISTORY, "apple", {"word": "apple", "count": 3, "contexts": ["a"]})
    await store.put(STORE_WORD_HISTORY, "pear", {"word": "pear", "count": 1})
    await store.put(STORE_SESSION_META, "blacklist", {"words": ["pear"]})

    history = WordHistoryService(store, harness.coalescer, clock=clock)
    assert await history.load() == 1
    assert history.get("apple").lookup_count == 3
    assert history.is_blacklisted("pear")


@pytest.mark.asyncio
async def test_clear_all(service, store, harness):
    """Test clearing the whole history."""
    for _ in range(3):
        service.record_lookup(fake.unique.word())
    await harness.coalescer.local.flush()

    assert await service.clear_all() == 3
    assert await store.get_all(STORE_WORD_HISTORY) == {}


@pytest.mark.asyncio
async def test_merge_remote(service, harness):
    """Test merging remote words without pushing them back."""
    service.record_lookup("apple", "local")
    await service.delete_permanently("banned")
    await harness.coalescer.flush()
    harness.pushed.clear()

    changed = service.merge_remote({
        "apple": WordLookupRecord(word="apple", lookup_count=5, contexts=["remote"]),
        "pear": WordLookupRecord(word="pear", lookup_count=2),
        "banned": WordLookupRecord(word="banned", lookup_count=9),
    })

    assert changed == 2
    assert service.get("apple").lookup_count == 5
    assert service.get("apple").contexts == ["local", "remote"]
    assert service.get("banned") is None
    assert harness.coalescer.cloud.pending == []
    assert service.merge_remote({"pear": WordLookupRecord(word="pear", lookup_count=2)}) == 0


@pytest.mark.asyncio
async def test_replace_all_marks_stale_words(service, harness, store):
    """Test that replacing history deletes words missing from the new set."""
    service.record_lookup("apple")
    await harness.coalescer.local.flush()

    service.replace_all({"pear": WordLookupRecord(word="pear", lookup_count=1)})
    await harness.coalescer.local.flush()

    assert set(await store.get_all(STORE_WORD_HISTORY)) == {"pear"}


@pytest.mark.asyncio
async def test_export_and_restore(service, store, harness, clock):
    """Test that exported history restores into an empty service."""
    service.record_lookup("apple", "ctx")
    exported = service.export()

    other = WordHistoryService(store, harness.coalescer, clock=clock)
    assert other.restore(exported) == 1
    assert other.get("apple").contexts == ["ctx"]


if __name__ == "__main__":
    pytest.main([__file__])
