import asyncio
import time

import pytest

from smolbot.dispatch_scheduler import DispatchScheduler, JobState


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        DispatchScheduler(max_concurrent=0)


def test_priority_then_fifo_order():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0)
        order = []

        def job(name):
            async def _fn():
                order.append(name)
            return _fn

        sched.enqueue(job("a"), "c1", priority=1)
        sched.enqueue(job("b"), "c1", priority=5)
        sched.enqueue(job("c"), "c1", priority=1)
        await sched.join()
        await sched.close()
        return order

    assert asyncio.run(_run()) == ["b", "a", "c"]


def test_equal_priority_runs_serially_under_concurrency_one():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0)
        events = []

        def job(name):
            async def _fn():
                events.append(f"start {name}")
                await asyncio.sleep(0.01)
                events.append(f"end {name}")
            return _fn

        sched.enqueue(job("first"), "c1")
        sched.enqueue(job("second"), "c1")
        await sched.join()
        await sched.close()
        return events

    assert asyncio.run(_run()) == ["start first", "end first", "start second", "end second"]


def test_concurrency_budget_is_respected():
    async def _run():
        sched = DispatchScheduler(max_concurrent=2, min_delay_seconds=0)
        running = 0
        peak = 0

        async def work():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        jobs = [sched.enqueue(work, f"c{i}") for i in range(6)]
        await sched.join()
        await sched.close()
        return peak, jobs

    peak, jobs = asyncio.run(_run())
    assert peak == 2
    assert all(j.state is JobState.COMPLETED for j in jobs)


def test_job_error_is_recorded_and_loop_continues():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0)

        async def boom():
            raise RuntimeError("job failed")

        async def fine():
            return "ok"

        bad = sched.enqueue(boom, "c1")
        good = sched.enqueue(fine, "c1")
        await good.wait()
        status = sched.status()
        await sched.close()
        return bad, good, status

    bad, good, status = asyncio.run(_run())
    assert bad.state is JobState.FAILED
    assert isinstance(bad.error, RuntimeError)
    assert good.state is JobState.COMPLETED
    assert status.failed == 1 and status.completed == 1
    assert status.running == 0 and status.queued == 0


def test_job_timeout_frees_the_slot():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0, job_timeout_seconds=0.05)
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def quick():
            return None

        stuck = sched.enqueue(slow, "c1")
        after = sched.enqueue(quick, "c1")
        await after.wait()
        await sched.close()
        return stuck, after, cancelled.is_set()

    stuck, after, was_cancelled = asyncio.run(_run())
    assert stuck.state is JobState.FAILED
    assert isinstance(stuck.error, asyncio.TimeoutError)
    assert was_cancelled
    assert after.state is JobState.COMPLETED


def test_min_delay_spaces_admissions():
    async def _run():
        sched = DispatchScheduler(max_concurrent=3, min_delay_seconds=0.1)
        starts = []

        async def work():
            starts.append(time.monotonic())

        sched.enqueue(work, "c1")
        sched.enqueue(work, "c2")
        await sched.join()
        await sched.close()
        return starts

    starts = asyncio.run(_run())
    assert len(starts) == 2
    assert starts[1] - starts[0] >= 0.09


def test_close_cancels_running_and_drops_queued():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0)

        async def forever():
            await asyncio.sleep(60)

        running = sched.enqueue(forever, "c1")
        queued = sched.enqueue(forever, "c1")
        await asyncio.sleep(0.01)
        assert sched.status().running == 1
        await sched.close()
        with pytest.raises(RuntimeError):
            sched.enqueue(forever, "c1")
        return running, queued

    running, queued = asyncio.run(_run())
    assert running.state is JobState.FAILED
    assert queued.state is JobState.FAILED


class RecordingLog:
    def __init__(self):
        self.errors = []
    def error(self, msg, *args, **kwargs):
        self.errors.append(msg)
    def debug(self, msg, *args, **kwargs):
        pass
    info = warning = debug


def test_timeout_raised_by_job_is_a_job_error():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0, job_timeout_seconds=5)
        sched.log = RecordingLog()

        async def upstream_timeout():
            raise TimeoutError("upstream read timed out")

        job = sched.enqueue(upstream_timeout, "c1")
        await job.wait()
        await sched.close()
        return job, sched.log.errors

    job, errors = asyncio.run(_run())
    assert job.state is JobState.FAILED
    assert any(e.startswith("[sched-job-error]") for e in errors)
    assert not any(e.startswith("[sched-timeout]") for e in errors)


def test_budget_overrun_is_logged_as_timeout():
    async def _run():
        sched = DispatchScheduler(max_concurrent=1, min_delay_seconds=0, job_timeout_seconds=0.05)
        sched.log = RecordingLog()

        async def slow():
            await asyncio.sleep(5)

        job = sched.enqueue(slow, "c1")
        await job.wait()
        await sched.close()
        return sched.log.errors

    errors = asyncio.run(_run())
    assert any(e.startswith("[sched-timeout]") for e in errors)
