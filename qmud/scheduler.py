"""Single-flight request scheduler for provider calls.

Every outbound call is wrapped in a task and pushed onto one FIFO queue.
A single worker drains the queue, so at most one call is in flight per
scheduler and results resolve in submission order.

Before a task runs the worker waits out, in order:

  1. the shared backoff window (`blocked_until`) set by the last
     rate-limit reply, whatever its category;
  2. the minimum interval since the previous call of the same category.

Tasks are never abandoned while waiting. After a task finishes the worker
inspects the TransportResult:

  429 / rate-limit body  → blocked_until = now + Retry-After, or
                           now + rate_limit_window without a hint; image
                           calls also grow their interval ×1.5 (capped)
  401                    → AuthContext.invalidate(); the task is not retried
  2xx image              → image interval decays ×0.9 toward its floor

A call that raises (network failure, missing credential) fails its task
and leaves the backoff state untouched.

`clock` and `sleep` are injectable so tests can run on virtual time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from qmud.llm import TransportResult, is_rate_limited

if TYPE_CHECKING:
    from qmud.auth import AuthContext

logger = logging.getLogger(__name__)

Category = Literal["text", "image"]
StatusCallback = Callable[[str, str, str], None]

_STATUS_TEXT = {
    ("text", "processing"): "Thinking…",
    ("text", "active"): "Connected",
    ("image", "processing"): "Generating…",
    ("image", "active"): "Ready",
}


@dataclass
class RequestTask:
    category: Category
    call: Callable[[], Awaitable[TransportResult]]
    future: asyncio.Future = field(repr=False)


@dataclass
class BackoffState:
    blocked_until: float = 0.0


class RequestScheduler:
    """FIFO, single-flight executor with per-category throttling.

    Args:
        auth:               Invalidated on 401 replies. Optional for tests.
        text_interval:      Minimum seconds between two text calls.
        image_interval:     Starting (and floor) interval between image calls.
        image_interval_cap: Upper bound for the adaptive image interval.
        rate_limit_window:  Backoff applied when a 429 carries no Retry-After.
        on_status:          Called as on_status(category, status, text) with
                            status "processing", "active" or "error".
    """

    def __init__(
        self,
        auth: AuthContext | None = None,
        *,
        text_interval: float = 1.0,
        image_interval: float = 4.0,
        image_interval_cap: float = 30.0,
        rate_limit_window: float = 8.0,
        on_status: StatusCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._auth = auth
        self._intervals: dict[str, float] = {"text": text_interval, "image": image_interval}
        self._image_floor = image_interval
        self._image_cap = image_interval_cap
        self._rate_limit_window = rate_limit_window
        self._on_status = on_status
        self._clock = clock
        self._sleep = sleep

        self.backoff = BackoffState()
        self._last_call: dict[str, float] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[RequestTask] | None = None
        self._worker: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def blocked_until(self) -> float:
        return self.backoff.blocked_until

    def interval(self, category: Category) -> float:
        return self._intervals[category]

    def submit(
        self, category: Category, call: Callable[[], Awaitable[TransportResult]]
    ) -> asyncio.Future:
        """Queue `call` and return a future resolved with its TransportResult.

        The future resolves (or raises the call's exception) only after the
        call has run, in submission order.
        """
        self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(RequestTask(category, call, future))
        return future

    async def aclose(self) -> None:
        """Stop the worker. Pending tasks are cancelled."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                task = self._queue.get_nowait()
                if not task.future.done():
                    task.future.cancel()
            self._queue = None
        self._loop = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # Queue and worker are bound to the loop they were created on.
            self._loop = loop
            self._queue = asyncio.Queue()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._queue))

    async def _run(self, queue: asyncio.Queue[RequestTask]) -> None:
        while True:
            task = await queue.get()
            try:
                await self._execute(task)
            finally:
                queue.task_done()

    async def _execute(self, task: RequestTask) -> None:
        if task.future.cancelled():
            return
        await self._wait_turn(task.category)
        self._status(task.category, "processing")
        self._last_call[task.category] = self._clock()
        try:
            result = await task.call()
        except Exception as e:
            self._status(task.category, "error", str(e))
            if not task.future.done():
                task.future.set_exception(e)
            return

        self._record(task.category, result)
        self._status(task.category, "active" if result.ok else "error")
        if not task.future.done():
            task.future.set_result(result)

    async def _wait_turn(self, category: Category) -> None:
        while True:
            now = self._clock()
            if now < self.backoff.blocked_until:
                delay = self.backoff.blocked_until - now
                logger.info("Backing off %.1fs before next %s call", delay, category)
                await self._sleep(delay)
                continue
            last = self._last_call.get(category)
            if last is not None and now < last + self._intervals[category]:
                await self._sleep(last + self._intervals[category] - now)
                continue
            return

    def _record(self, category: Category, result: TransportResult) -> None:
        if is_rate_limited(result):
            window = result.retry_after if result.retry_after is not None else self._rate_limit_window
            self.backoff.blocked_until = max(self.backoff.blocked_until, self._clock() + window)
            if category == "image":
                self._intervals["image"] = min(self._image_cap, self._intervals["image"] * 1.5)
            logger.warning(
                "Rate limited on %s call; blocked for %.1fs", category, window
            )
            return

        if result.status == 401:
            if self._auth is not None:
                self._auth.invalidate()
            return

        if result.ok and category == "image":
            self._intervals["image"] = max(self._image_floor, self._intervals["image"] * 0.9)

    def _status(self, category: Category, status: str, text: str = "") -> None:
        if self._on_status is None:
            return
        label = text or _STATUS_TEXT.get((category, status), status.capitalize())
        self._on_status(category, status, label)
