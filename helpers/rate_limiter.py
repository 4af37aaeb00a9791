"""Request throttling for the RetroAchievements web API.

All outbound calls share one queue. A single worker task dispatches them one
at a time, keeping both a sliding window of recent dispatch times and a
minimum spacing of ``interval / requests_per_interval`` between calls.

Calls failing with a rate-limit response (HTTP 429) go back to the front of
the queue after ``retry_delay * (retries + 1)`` seconds, up to
``max_retries`` times. Anything else reaches the caller straight away.
"""

from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from constants import (
    RA_REQUESTS_PER_INTERVAL,
    RA_INTERVAL_SECONDS,
    RA_MAX_RETRIES,
    RA_RETRY_DELAY_SECONDS,
    RATE_LIMIT_BUFFER_SECONDS,
)

logger = logging.getLogger(__name__)


def is_rate_limit_error(error: BaseException) -> bool:
    status = getattr(error, "status", None)
    if status is not None:
        return status == 429
    return "429" in str(error)


@dataclass
class _Pending:
    fn: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future
    retries: int = field(default=0)


class RateLimiter:
    def __init__(
        self,
        requests_per_interval: int = RA_REQUESTS_PER_INTERVAL,
        interval: float = RA_INTERVAL_SECONDS,
        max_retries: int = RA_MAX_RETRIES,
        retry_delay: float = RA_RETRY_DELAY_SECONDS,
        buffer: float = RATE_LIMIT_BUFFER_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if requests_per_interval < 1 or interval <= 0:
            raise ValueError("requests_per_interval must be >= 1 and interval > 0")

        self.requests_per_interval = requests_per_interval
        self.interval = interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.buffer = buffer
        self.min_spacing = interval / requests_per_interval

        self._clock = clock
        self._sleep = sleep
        self._queue: deque[_Pending] = deque()
        self._timestamps: deque[float] = deque()
        self._last_dispatch: float | None = None
        self._worker: asyncio.Task | None = None
        self._retry_tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def add(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Queue ``fn(*args, **kwargs)`` and wait for its result."""
        future = asyncio.get_running_loop().create_future()
        self._queue.append(_Pending(fn, args, kwargs, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process())

    async def _wait_for_slot(self):
        now = self._clock()

        while self._timestamps and now - self._timestamps[0] >= self.interval:
            self._timestamps.popleft()

        wait = 0.0
        if len(self._timestamps) >= self.requests_per_interval:
            wait = self.interval - (now - self._timestamps[0]) + self.buffer

        if self._last_dispatch is not None:
            wait = max(wait, self.min_spacing - (now - self._last_dispatch))

        if wait > 0:
            await self._sleep(wait)

    async def _process(self):
        while self._queue:
            await self._wait_for_slot()

            item = self._queue.popleft()
            if item.future.done():
                continue

            dispatched = self._clock()
            self._timestamps.append(dispatched)
            self._last_dispatch = dispatched

            try:
                result = await item.fn(*item.args, **item.kwargs)
            except Exception as e:
                if item.retries < self.max_retries and is_rate_limit_error(e):
                    delay = self.retry_delay * (item.retries + 1)
                    item.retries += 1
                    logger.info(
                        "Rate limit hit, retrying in %.1fs (attempt %d/%d)",
                        delay, item.retries, self.max_retries,
                    )
                    task = asyncio.create_task(self._requeue_later(item, delay))
                    self._retry_tasks.add(task)
                    task.add_done_callback(self._retry_tasks.discard)
                elif not item.future.done():
                    item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)

    async def _requeue_later(self, item: _Pending, delay: float):
        await self._sleep(delay)
        self._queue.appendleft(item)
        self._ensure_worker()
