"""Tests for the worker pool and FIFO admission."""

import asyncio

import pytest

from contract_builder.models.session import BuildSession, ResourceLimits
from contract_builder.orchestrator.pool import WorkerPool
from contract_builder.orchestrator.scheduler import Scheduler
from fakes import make_request, wait_until

LIMITS = ResourceLimits(
    memory_bytes=1,
    memory_swap_bytes=1,
    volume_size_bytes=1,
    max_build_duration=60,
    wasm_size_limit=1,
    metadata_size_limit=1,
)


def session(token: str) -> BuildSession:
    return BuildSession(request=make_request(token), limits=LIMITS)


class GatedRun:
    """Session runner stand-in that holds each session until released."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.active = 0
        self.max_active = 0
        self._gates: dict[str, asyncio.Event] = {}

    def release(self, token: str) -> None:
        self._gates[token].set()

    async def __call__(self, build_session: BuildSession) -> None:
        gate = self._gates.setdefault(build_session.token, asyncio.Event())
        self.started.append(build_session.token)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await gate.wait()
        finally:
            self.active -= 1


class TestWorkerPool:
    def test_hands_out_at_most_size_slots(self) -> None:
        pool = WorkerPool(2)

        first = pool.try_acquire()
        second = pool.try_acquire()

        assert first is not None and second is not None
        assert first.index != second.index
        assert pool.try_acquire() is None
        assert pool.in_use == 2

    def test_release_twice_is_an_error(self) -> None:
        pool = WorkerPool(1)
        slot = pool.try_acquire()
        pool.release(slot)

        with pytest.raises(RuntimeError, match="twice"):
            pool.release(slot)
        assert pool.in_use == 0

    def test_peak_tracks_high_water_mark(self) -> None:
        pool = WorkerPool(3)
        slots = [pool.try_acquire() for _ in range(3)]
        for slot in slots:
            pool.release(slot)

        assert pool.peak == 3
        assert pool.in_use == 0


class TestScheduler:
    @pytest.mark.asyncio
    async def test_bounds_concurrency_and_admits_in_order(self) -> None:
        pool = WorkerPool(2)
        run = GatedRun()
        scheduler = Scheduler(pool, run)
        scheduler.start()
        try:
            for token in ("a", "b", "c"):
                scheduler.submit(session(token))

            await wait_until(lambda: len(run.started) == 2)
            await asyncio.sleep(0.05)
            assert run.started == ["a", "b"]
            assert len(scheduler.queued) == 1

            run.release("a")
            await wait_until(lambda: run.started == ["a", "b", "c"])
            run.release("b")
            run.release("c")
            await wait_until(lambda: pool.in_use == 0)
        finally:
            await scheduler.stop()

        assert run.max_active == 2
        assert pool.peak == 2

    @pytest.mark.asyncio
    async def test_slot_is_released_when_a_run_crashes(self) -> None:
        pool = WorkerPool(1)
        seen: list[str] = []

        async def crash(build_session: BuildSession) -> None:
            seen.append(build_session.token)
            if build_session.token == "boom":
                raise RuntimeError("runner bug")

        scheduler = Scheduler(pool, crash)
        scheduler.start()
        try:
            scheduler.submit(session("boom"))
            scheduler.submit(session("next"))
            await wait_until(lambda: seen == ["boom", "next"])
            await wait_until(lambda: pool.in_use == 0)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_closed_admissions_keep_sessions_queued(self) -> None:
        pool = WorkerPool(1)
        run = GatedRun()
        scheduler = Scheduler(pool, run, admissions_open=lambda: False)
        scheduler.start()
        try:
            scheduler.submit(session("a"))
            await asyncio.sleep(0.05)

            assert run.started == []
            assert len(scheduler.queued) == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_remove_drops_a_queued_session(self) -> None:
        pool = WorkerPool(1)
        run = GatedRun()
        scheduler = Scheduler(pool, run)
        queued = session("queued")

        scheduler.submit(queued)

        assert scheduler.remove(queued.ref) is True
        assert scheduler.remove(queued.ref) is False
        assert scheduler.queued == []

    @pytest.mark.asyncio
    async def test_stop_cancels_running_sessions(self) -> None:
        pool = WorkerPool(1)
        run = GatedRun()
        scheduler = Scheduler(pool, run)
        scheduler.start()
        scheduler.submit(session("a"))
        await wait_until(lambda: run.active == 1)

        await scheduler.stop()

        assert run.active == 0
        assert pool.in_use == 0
