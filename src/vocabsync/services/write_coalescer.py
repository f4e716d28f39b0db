"""Debounced persistence of dirty records."""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from vocabsync.config import settings
from vocabsync.monitoring import coalescer_flushes, error_count

logger = logging.getLogger(__name__)

Key = Tuple[str, str]  # (sync collection, record key)
FlushFunc = Callable[[List[Key]], Awaitable[Optional[Iterable[Key]]]]


class CoalescingWindow:
    """A dirty set flushed once it has been quiet for ``delay`` seconds.

    The flush callback receives every key dirty at the start of the pass and
    returns the keys that should be retried. Passes never overlap.
    """

    def __init__(
        self,
        name: str,
        delay: float,
        flush: FlushFunc,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: Optional[float] = None,
    ):
        self.name = name
        self.delay = delay
        self.clock = clock
        self.tick_interval = tick_interval or settings.coalescer.tick_interval
        self._flush = flush
        self._dirty: Dict[Key, None] = {}
        self._last_mark: Optional[float] = None
        self._pass_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False

    @property
    def pending(self) -> List[Key]:
        return list(self._dirty)

    def mark(self, key: Key) -> None:
        """Add a key and restart the window."""
        self._dirty[key] = None
        self._last_mark = self.clock()

    def discard(self, key: Key) -> None:
        self._dirty.pop(key, None)

    def is_due(self) -> bool:
        if not self._dirty or self._last_mark is None:
            return False
        return self.clock() - self._last_mark >= self.delay

    async def tick(self) -> bool:
        """Flush if the window has been quiet long enough."""
        if not self.is_due():
            return False
        await self.flush()
        return True

    async def flush(self) -> None:
        """Run one flush pass over everything currently dirty."""
        async with self._pass_lock:
            if not self._dirty:
                return
            keys = list(self._dirty)
            self._dirty.clear()
            coalescer_flushes.labels(window=self.name).inc()
            retry = await self._flush(keys)
            retry = list(retry or [])
            if retry:
                logger.warning("%s flush will retry %d record(s)", self.name, len(retry))
                for key in retry:
                    self.mark(key)

    def start(self) -> None:
        """Start the recurring ticker."""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the ticker and flush what is still dirty."""
        if self.running:
            self.running = False
            if self._task:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
                self._task = None
        await self.flush()

    async def _run(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.tick_interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                error_count.labels(error_type="coalescer").inc()
                logger.error("Error in %s flush: %s", self.name, str(e))


class WriteCoalescer:
    """Two coalescing windows over the same marks: local store, then cloud."""

    def __init__(
        self,
        persist: FlushFunc,
        push: FlushFunc,
        can_push: Callable[[], bool],
        local_delay: Optional[float] = None,
        cloud_delay: Optional[float] = None,
        tick_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._persist = persist
        self._push = push
        self._can_push = can_push
        self.local = CoalescingWindow(
            "local",
            settings.coalescer.local_delay if local_delay is None else local_delay,
            self._flush_local,
            clock=clock,
            tick_interval=tick_interval,
        )
        self.cloud = CoalescingWindow(
            "cloud",
            settings.coalescer.cloud_delay if cloud_delay is None else cloud_delay,
            self._flush_cloud,
            clock=clock,
            tick_interval=tick_interval,
        )

    def mark(self, collection: str, key: str, push: bool = True) -> None:
        """Mark a record dirty; ``push=False`` keeps it out of the cloud window."""
        self.local.mark((collection, key))
        if push:
            self.cloud.mark((collection, key))

    def forget(self, collection: str, key: str) -> None:
        """Drop a pending cloud push, e.g. after the record was deleted remotely."""
        self.cloud.discard((collection, key))

    async def tick(self) -> None:
        await self.local.tick()
        await self.cloud.tick()

    async def flush(self) -> None:
        await self.local.flush()
        await self.cloud.flush()

    def start(self) -> None:
        self.local.start()
        self.cloud.start()

    async def stop(self) -> None:
        await self.local.stop()
        await self.cloud.stop()

    async def _flush_local(self, keys: List[Key]) -> Optional[Iterable[Key]]:
        return await self._persist(keys)

    async def _flush_cloud(self, keys: List[Key]) -> Optional[Iterable[Key]]:
        if not self._can_push():
            logger.debug("Cloud push not allowed, dropping %d dirty record(s)", len(keys))
            return None
        return await self._push(keys)
