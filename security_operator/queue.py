"""
Work Queue - Coalescing, Per-key Serialized, Rate-limited
=========================================================
Keys (``namespace/name``) are queued, not events:

- a key waiting in the queue is queued only once, however often it is added
- a key is never handed to two workers at once; adding it while it is being
  processed re-queues it when the worker calls ``done``
- failed keys come back after an exponential backoff; ``forget`` resets it
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-key delay doubling on every failure, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}

    def when(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        # cap the exponent as well, 2 ** large overflows float
        return min(self.max_delay, self.base_delay * 2 ** min(failures, 62))

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)


class WorkQueue:
    """asyncio work queue with client-go workqueue semantics."""

    def __init__(self, backoff: ExponentialBackoff | None = None, name: str = "queue"):
        self.name = name
        self.backoff = backoff or ExponentialBackoff()
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def idle(self) -> bool:
        return self._idle.is_set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _update_idle(self) -> None:
        if self._dirty or self._processing:
            self._idle.clear()
        else:
            self._idle.set()

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        self._update_idle()
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add ``key`` once ``delay`` seconds have passed (earliest request wins)."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        delay = self.backoff.when(key)
        logger.debug(f"{self.name}: requeue {key} in {delay:.1f}s")
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        self.backoff.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.backoff.failures(key)

    async def get(self) -> str:
        """Wait for the next key and mark it as being processed."""
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)
        self._update_idle()

    async def join(self) -> None:
        """Wait until nothing is queued or being processed (delayed adds excluded)."""
        await self._idle.wait()

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._dirty.clear()
        self._update_idle()
