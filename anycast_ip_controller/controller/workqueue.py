import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Deque, Dict, Optional, Set

from anycast_ip_controller.controller.settings import WORKQUEUE_BASE_DELAY, WORKQUEUE_MAX_DELAY

logger = logging.getLogger(__name__)


class WorkQueue:
    """Queue of keys to process, where a single key is never processed by two workers at once.

    A key added multiple times while waiting is processed once. A key added while being processed
    is queued again once `done` is called for it.
    """

    def __init__(
        self,
        base_delay: timedelta = WORKQUEUE_BASE_DELAY,
        max_delay: timedelta = WORKQUEUE_MAX_DELAY,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down:
            return

        if key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        self._notify()

    def add_after(self, key: str, delay: timedelta) -> None:
        if self._shutting_down:
            return

        if delay <= timedelta(0):
            self.add(key)
            return

        if key in self._delayed:
            self._delayed.pop(key).cancel()

        self._delayed[key] = asyncio.get_running_loop().call_later(
            delay.total_seconds(), self._add_delayed, key
        )

    def _add_delayed(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> timedelta:
        """Add the key after its exponentially growing backoff, return the backoff used."""

        delay = self.when(key)
        self.add_after(key, delay)
        return delay

    def when(self, key: str) -> timedelta:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        try:
            delay = self._base_delay * (2**failures)
        except OverflowError:
            return self._max_delay

        return min(delay, self._max_delay)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[str]:
        """Wait for the next key, `None` is returned once the queue is shut down."""

        while not self._queue:
            if self._shutting_down:
                return None

            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)

            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._queue:
                    self._notify()
                raise

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)

        if key in self._dirty:
            self._queue.append(key)
            self._notify()

    def shutdown(self) -> None:
        logger.debug("Shutting down work queue...")

        self._shutting_down = True

        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

        logger.debug("Shutting down work queue done")

    def _notify(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
