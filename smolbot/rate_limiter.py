from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from .errors import RateLimitTimeout
from .logger_factory import get_logger
from .utils.logfmt import fmt


@dataclass
class LimiterStatus:
    available_tokens: int
    queue_length: int
    window_remaining_seconds: float


@dataclass
class _Waiter:
    future: asyncio.Future
    enqueued_at: float
    granted_window: Optional[float] = None


class RateLimiter:
    """Fixed-window admission control: at most ``max_tokens`` acquisitions per window.

    Callers that find the window exhausted join a FIFO queue served by a single drain task.
    A queued caller is rejected with :class:`RateLimitTimeout` once it has waited
    ``max_wait_seconds``, even if a token frees up later. The limiter never retries on a
    caller's behalf.
    """

    def __init__(
        self,
        max_tokens: int = 30,
        window_seconds: float = 60.0,
        max_wait_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_tokens = int(max_tokens)
        self.window_seconds = float(window_seconds)
        self.max_wait_seconds = float(max_wait_seconds)
        self._clock = clock
        self._count = 0
        self._window_start = clock()
        self._waiters: Deque[_Waiter] = deque()
        self._drainer: Optional[asyncio.Task] = None
        self.log = get_logger("RateLimiter")
        self.log.info(
            f"[limiter-init] {fmt('max_tokens', self.max_tokens)} {fmt('window_s', self.window_seconds)} "
            f"{fmt('max_wait_s', self.max_wait_seconds)}"
        )

    def _roll_window(self, now: float) -> None:
        elapsed = now - self._window_start
        if elapsed >= self.window_seconds:
            windows = int(elapsed // self.window_seconds)
            self._count = 0
            # Advance by whole windows only so partial remainders never accumulate drift
            self._window_start += windows * self.window_seconds
            self.log.debug(f"[limiter-reset] {fmt('windows_elapsed', windows)}")

    async def acquire(self) -> None:
        now = self._clock()
        self._roll_window(now)
        if not self._waiters and self._count < self.max_tokens:
            self._count += 1
            return

        waiter = _Waiter(future=asyncio.get_running_loop().create_future(), enqueued_at=now)
        self._waiters.append(waiter)
        self.log.debug(f"[limiter-queued] {fmt('queue_length', len(self._waiters))}")
        self._ensure_drainer()
        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.granted_window is not None:
                # Granted just before the caller was cancelled: hand the token back
                self._release(waiter.granted_window)
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise
        self.log.debug(
            f"[limiter-granted] {fmt('waited_ms', int((self._clock() - waiter.enqueued_at) * 1000))} "
            f"{fmt('queue_length', len(self._waiters))}"
        )

    def _release(self, window_start: float) -> None:
        # Tokens only come back within the window that issued them
        if window_start == self._window_start and self._count > 0:
            self._count -= 1
            if self._waiters:
                self._ensure_drainer()

    def _ensure_drainer(self) -> None:
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.get_running_loop().create_task(self._drain())
            self._drainer.add_done_callback(self._on_drainer_done)

    def _on_drainer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(f"[limiter-drain-error] {exc!r}")
            # Never leave callers hanging on a dead drainer
            while self._waiters:
                w = self._waiters.popleft()
                if not w.future.done():
                    w.future.set_exception(exc)

    async def _drain(self) -> None:
        while self._waiters:
            now = self._clock()
            self._roll_window(now)
            head = self._waiters[0]
            if head.future.done():
                self._waiters.popleft()
                continue
            waited = now - head.enqueued_at
            if waited >= self.max_wait_seconds:
                self._waiters.popleft()
                self.log.warning(
                    f"[limiter-timeout] {fmt('waited_s', round(waited, 3))} {fmt('queue_length', len(self._waiters))}"
                )
                head.future.set_exception(RateLimitTimeout(waited, self.max_wait_seconds))
                continue
            if self._count < self.max_tokens:
                self._waiters.popleft()
                self._count += 1
                head.granted_window = self._window_start
                head.future.set_result(None)
                continue
            until_reset = self._window_start + self.window_seconds - now
            until_deadline = head.enqueued_at + self.max_wait_seconds - now
            await asyncio.sleep(max(0.0, min(until_reset, until_deadline)))

    def status(self) -> LimiterStatus:
        now = self._clock()
        self._roll_window(now)
        return LimiterStatus(
            available_tokens=max(0, self.max_tokens - self._count),
            queue_length=len(self._waiters),
            window_remaining_seconds=max(0.0, self._window_start + self.window_seconds - now),
        )

    async def aclose(self) -> None:
        if self._drainer is not None and not self._drainer.done():
            self._drainer.cancel()
            try:
                await self._drainer
            except asyncio.CancelledError:
                pass
        while self._waiters:
            w = self._waiters.popleft()
            if not w.future.done():
                w.future.cancel()
