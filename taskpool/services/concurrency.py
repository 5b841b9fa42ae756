"""Keyed admission control for background executions."""

import asyncio
import logging
import math
from collections import deque

from taskpool.core.config import BackgroundTaskConfig
from taskpool.core.errors import ConcurrencyClosedError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


class ConcurrencyManager:
    """Keyed semaphore with FIFO hand-off per key.

    Each key has its own limit, resolved from the model, provider and
    default settings. A released slot goes straight to the oldest waiter on
    that key, so the held count does not drop while anyone is queued.
    """

    def __init__(self, config: BackgroundTaskConfig | None = None) -> None:
        self._config = config or BackgroundTaskConfig()
        self._counts: dict[str, int] = {}
        self._queues: dict[str, deque[asyncio.Future[None]]] = {}

    def get_concurrency_limit(self, key: str) -> float:
        """Resolve the limit for a key.

        Precedence: exact model key ("provider/model"), then the provider
        prefix, then the configured default, then DEFAULT_CONCURRENCY.
        A configured limit of 0 means unlimited.
        """
        model_limit = self._config.model_concurrency.get(key)
        if model_limit is not None:
            return math.inf if model_limit == 0 else model_limit

        provider = key.split("/", 1)[0]
        provider_limit = self._config.provider_concurrency.get(provider)
        if provider_limit is not None:
            return math.inf if provider_limit == 0 else provider_limit

        default_limit = self._config.default_concurrency
        if default_limit is not None:
            return math.inf if default_limit == 0 else default_limit

        return DEFAULT_CONCURRENCY

    async def acquire(self, key: str) -> None:
        """Take a slot for key, waiting in line if the key is saturated."""
        limit = self.get_concurrency_limit(key)
        if limit == math.inf:
            return

        current = self._counts.get(key, 0)
        if current < limit:
            self._counts[key] = current + 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queues.setdefault(key, deque()).append(waiter)
        logger.debug(f"Waiting for slot on '{key}' ({current}/{limit} held)")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just as we were cancelled
                self.release(key)
            raise

    def release(self, key: str) -> None:
        """Free one slot for key, handing it to the oldest live waiter."""
        if self.get_concurrency_limit(key) == math.inf:
            return

        queue = self._queues.get(key)
        while queue:
            waiter = queue.popleft()
            if not waiter.done():
                waiter.set_result(None)
                if not queue:
                    del self._queues[key]
                return
        self._queues.pop(key, None)

        current = self._counts.get(key, 0)
        if current > 0:
            self._counts[key] = current - 1

    def cancel_waiters(self, key: str) -> None:
        """Fail every coroutine still waiting on key."""
        queue = self._queues.pop(key, None)
        if not queue:
            return
        for waiter in queue:
            if not waiter.done():
                waiter.set_exception(ConcurrencyClosedError(key))

    def clear(self) -> None:
        """Fail all waiters and forget every count."""
        for key in list(self._queues):
            self.cancel_waiters(key)
        self._counts.clear()

    def get_count(self, key: str) -> int:
        return self._counts.get(key, 0)

    def get_queue_length(self, key: str) -> int:
        queue = self._queues.get(key)
        if not queue:
            return 0
        return sum(1 for waiter in queue if not waiter.done())
