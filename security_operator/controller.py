"""
Controller - Bounded Worker Pool over a Work Queue
==================================================
1. RESILIENCE:
   - A failing reconcile never stops the worker; the key is requeued
     with backoff and other keys keep flowing
   - Every reconcile runs under a deadline

2. ORDERING:
   - The work queue guarantees a key is reconciled by one worker at a time
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from security_operator.exceptions import RequeueException
from security_operator.logs import ReconcileLogAdapter
from security_operator.queue import WorkQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconcile; ``requeue_after`` schedules a recheck."""

    requeue_after: float | None = None


class Reconciler(Protocol):
    async def reconcile(self, key: str) -> ReconcileResult:
        ...


class Controller:
    """
    Runs ``workers`` tasks that pull keys off ``queue`` and reconcile them.

    Args:
        name: controller name, used in logs
        reconciler: object with ``async reconcile(key) -> ReconcileResult``
        queue: work queue (a fresh one when omitted)
        workers: number of concurrent reconciles
        reconcile_timeout: deadline of a single reconcile in seconds
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        queue: WorkQueue | None = None,
        workers: int = 4,
        reconcile_timeout: float = 900,
    ):
        self.name = name
        self.reconciler = reconciler
        self.queue = queue if queue is not None else WorkQueue(name=name)
        self.workers = workers
        self.reconcile_timeout = reconcile_timeout
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    async def process(self, key: str) -> None:
        """Reconcile one key taken from the queue and settle it."""
        log = ReconcileLogAdapter(logger, {"key": f"{self.name}:{key}"})
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(key),
                timeout=self.reconcile_timeout,
            )
        except asyncio.TimeoutError:
            delay = self.queue.add_rate_limited(key)
            log.error(f"Reconcile exceeded {self.reconcile_timeout}s, retrying in {delay:.1f}s")
        except RequeueException as e:
            delay = self.queue.add_rate_limited(key)
            log.warning(f"{e.message} (retry in {delay:.1f}s)")
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            log.exception(f"Reconcile failed: {e} (retry in {delay:.1f}s)")
        else:
            self.queue.forget(key)
            if result is not None and result.requeue_after:
                self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)

    async def process_next(self) -> str:
        key = await self.queue.get()
        await self.process(key)
        return key

    async def _worker(self, index: int) -> None:
        logger.debug(f"{self.name} worker {index} started")
        while not self.queue.shutting_down:
            await self.process_next()

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Starting {self.name} controller with {self.workers} workers")
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.workers)
        ]

    async def stop(self) -> None:
        """Stop accepting keys and cancel the workers."""
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Stopped {self.name} controller")

    async def wait_idle(self) -> None:
        await self.queue.join()
