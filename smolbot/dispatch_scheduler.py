from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from .logger_factory import get_logger
from .utils.logfmt import fmt

JobFn = Callable[[], Awaitable[object]]
_TIMER_SLACK = 0.05


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(eq=False)
class DispatchJob:
    fn: JobFn
    channel_id: str
    priority: int = 0
    seq: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    label: str = ""
    state: JobState = JobState.QUEUED
    error: Optional[BaseException] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    async def wait(self) -> "DispatchJob":
        await self._done.wait()
        return self


@dataclass
class SchedulerStatus:
    queued: int
    running: int
    completed: int
    failed: int


class DispatchScheduler:
    """Priority queue of response jobs with a concurrency budget and admission spacing.

    Jobs are admitted highest priority first, then in enqueue order. At most
    ``max_concurrent`` run at once and successive admissions are at least
    ``min_delay_seconds`` apart. Job errors and timeouts are logged and recorded on the
    job; they never stop the pump.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        min_delay_seconds: float = 2.0,
        job_timeout_seconds: Optional[float] = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = int(max_concurrent)
        self.min_delay_seconds = max(0.0, float(min_delay_seconds))
        self.job_timeout_seconds = job_timeout_seconds
        self._clock = clock
        self._heap: List[Tuple[int, int, DispatchJob]] = []
        self._seq = itertools.count()
        self._running: Set[asyncio.Task] = set()
        self._last_admit: Optional[float] = None
        self._wake: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._pump: Optional[asyncio.Task] = None
        self._closed = False
        self._completed = 0
        self._failed = 0
        self.log = get_logger("DispatchScheduler")

    def _events(self) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
            self._idle = asyncio.Event()
            self._idle.set()

    def enqueue(self, fn: JobFn, channel_id: str, priority: int = 0, *, label: str = "") -> DispatchJob:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        self._events()
        seq = next(self._seq)
        job = DispatchJob(fn=fn, channel_id=channel_id, priority=int(priority), seq=seq,
                          enqueued_at=self._clock(), label=label)
        heapq.heappush(self._heap, (-job.priority, seq, job))
        self._idle.clear()
        self.log.debug(
            f"[sched-enqueue] {fmt('channel', channel_id)} {fmt('priority', job.priority)} {fmt('seq', seq)} "
            f"{fmt('label', label)} {fmt('queued', len(self._heap))}"
        )
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._run_pump())
        self._wake.set()
        return job

    async def _run_pump(self) -> None:
        while not self._closed:
            if not self._heap or len(self._running) >= self.max_concurrent:
                if not self._heap and not self._running:
                    self._idle.set()
                self._wake.clear()
                await self._wake.wait()
                continue
            if self._last_admit is not None and self.min_delay_seconds > 0:
                gap = self._last_admit + self.min_delay_seconds - self._clock()
                if gap > 0:
                    await asyncio.sleep(gap)
                    continue
            _, _, job = heapq.heappop(self._heap)
            self._last_admit = self._clock()
            job.state = JobState.RUNNING
            job.started_at = self._last_admit
            self.log.debug(
                f"[sched-admit] {fmt('channel', job.channel_id)} {fmt('priority', job.priority)} {fmt('seq', job.seq)} "
                f"{fmt('waited_ms', int((job.started_at - job.enqueued_at) * 1000))} {fmt('running', len(self._running) + 1)}"
            )
            task = asyncio.get_running_loop().create_task(self._execute(job))
            self._running.add(task)

    async def _execute(self, job: DispatchJob) -> None:
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            if self.job_timeout_seconds:
                await asyncio.wait_for(job.fn(), timeout=self.job_timeout_seconds)
            else:
                await job.fn()
            job.state = JobState.COMPLETED
            self._completed += 1
        except asyncio.TimeoutError as e:
            job.state = JobState.FAILED
            job.error = e
            self._failed += 1
            elapsed = loop.time() - started
            # A TimeoutError raised by the job itself ends before the budget
            if self.job_timeout_seconds and elapsed + _TIMER_SLACK >= self.job_timeout_seconds:
                self.log.error(
                    f"[sched-timeout] {fmt('channel', job.channel_id)} {fmt('seq', job.seq)} "
                    f"{fmt('timeout_s', self.job_timeout_seconds)}"
                )
            else:
                self.log.error(f"[sched-job-error] {fmt('channel', job.channel_id)} {fmt('seq', job.seq)} {e!r}")
        except asyncio.CancelledError as e:
            job.state = JobState.FAILED
            job.error = e
            self._failed += 1
            raise
        except Exception as e:
            job.state = JobState.FAILED
            job.error = e
            self._failed += 1
            self.log.error(f"[sched-job-error] {fmt('channel', job.channel_id)} {fmt('seq', job.seq)} {e!r}")
        finally:
            job.finished_at = self._clock()
            job._done.set()
            self._running.discard(task)
            if self._wake is not None:
                self._wake.set()
            if not self._heap and not self._running and self._idle is not None:
                self._idle.set()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            queued=len(self._heap),
            running=len(self._running),
            completed=self._completed,
            failed=self._failed,
        )

    async def join(self) -> None:
        """Wait until nothing is queued or running."""
        if self._idle is None:
            return
        while self._heap or self._running:
            self._idle.clear()
            await self._idle.wait()

    async def close(self) -> None:
        self._closed = True
        for _, _, job in self._heap:
            job.state = JobState.FAILED
            job.error = asyncio.CancelledError()
            job._done.set()
        dropped = len(self._heap)
        self._heap.clear()
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        running = list(self._running)
        for t in running:
            t.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        if self._idle is not None:
            self._idle.set()
        self.log.info(f"[sched-close] {fmt('dropped', dropped)} {fmt('cancelled', len(running))}")
