"""
Operator Controller - work queue in front of the reconciler.

Watch handlers enqueue SopsSecret keys; a fixed pool of workers drains
the queue. A key is never reconciled by two workers at once, failures are
retried with exponential backoff, and explicit requeues run again right
away.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from config import ControllerConfig
from errors import ReconcileError
from models import ObjectKey
from reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class ControllerStats:
    """Counters exposed by the health API."""

    reconciles_succeeded: int = 0
    reconciles_failed: int = 0
    reconciles_requeued: int = 0
    last_error: Optional[str] = None
    failures: Dict[str, int] = field(default_factory=dict)


class Controller:
    """
    Deduplicating work queue with bounded concurrency.

    Keys enqueued while they are being processed are marked dirty and
    processed once more after the current run finishes.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        config: Optional[ControllerConfig] = None,
    ):
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.running = False
        self.stats = ControllerStats()

        self._queue: Optional[asyncio.Queue] = None
        self._queued: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._dirty: Set[ObjectKey] = set()
        self._failures: Dict[ObjectKey, int] = {}
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    @property
    def queue_depth(self) -> int:
        return len(self._queued)

    @property
    def in_flight(self) -> int:
        return len(self._processing)

    def _ensure_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def enqueue(self, key: ObjectKey, delay: float = 0.0) -> None:
        """Schedule a reconciliation of ``key``, optionally after ``delay`` seconds."""
        if delay > 0:
            self._schedule(key, delay)
            return

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._ensure_queue().put_nowait(key)

    def _schedule(self, key: ObjectKey, delay: float) -> None:
        if key in self._timers or key in self._queued:
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        if self.running:
            self.enqueue(key)

    def _backoff_delay(self, key: ObjectKey) -> float:
        """Exponential backoff with jitter based on consecutive failures."""
        failures = self._failures.get(key, 1)
        delay = min(
            self.config.backoff_base_delay * (2 ** (failures - 1)),
            self.config.backoff_max_delay,
        )
        jitter = delay * self.config.backoff_jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))

    async def start(self):
        """Start the worker pool and block until stop() is called."""
        if self._shutdown_event.is_set():
            logger.info("Controller stopped before it started")
            return
        logger.info(
            f"Starting controller with {self.max_concurrent_reconciles} workers"
        )
        self._ensure_queue()
        self.running = True

        self._workers = [
            asyncio.create_task(self._worker(i))
            for i in range(self.max_concurrent_reconciles)
        ]
        await self._shutdown_event.wait()

    async def stop(self):
        """Stop the workers, cancelling in-flight reconciliations."""
        logger.info("Stopping controller")
        self.running = False

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._workers:
            if not task.done():
                task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._shutdown_event.set()

    async def _worker(self, index: int):
        queue = self._ensure_queue()
        while self.running:
            key = await queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._process(key)
            finally:
                self._processing.discard(key)
                queue.task_done()
                if key in self._dirty:
                    self._dirty.discard(key)
                    if self.running:
                        self.enqueue(key)

    async def _process(self, key: ObjectKey):
        """Run one reconciliation and decide when the key comes back."""
        start_time = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(key),
                timeout=self.config.reconcile_timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(
                key, f"reconciliation timed out after {self.config.reconcile_timeout}s"
            )
            return
        except ReconcileError as e:
            self._record_failure(key, e.message)
            return
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            self._record_failure(key, str(e))
            return

        duration = time.monotonic() - start_time
        self._failures.pop(key, None)
        self.stats.failures.pop(str(key), None)
        self.stats.reconciles_succeeded += 1
        logger.debug(f"Reconciled {key} in {duration:.3f}s: {result.message}")

        if result.requeue:
            self.stats.reconciles_requeued += 1
            self._dirty.add(key)

    def _record_failure(self, key: ObjectKey, message: str) -> None:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        self.stats.reconciles_failed += 1
        self.stats.last_error = f"{key}: {message}"
        self.stats.failures[str(key)] = failures

        delay = self._backoff_delay(key)
        logger.error(
            f"Failed to reconcile {key} (attempt {failures}): {message}; "
            f"retrying in {delay:.1f}s"
        )
        if self.running:
            self._schedule(key, delay)
