"""FIFO admission of queued sessions into worker slots."""

from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import Awaitable, Callable, Optional

from contract_builder.models.session import BuildSession
from contract_builder.orchestrator.pool import WorkerPool, WorkerSlot

logger = logging.getLogger(__name__)


class Scheduler:
    """Admits queued sessions in submission order while slots are free.

    ``submit`` never blocks. A single admission loop moves sessions from the
    queue into their own tasks; each task gives its slot back when the
    session run returns, however it returns.
    """

    def __init__(
        self,
        pool: WorkerPool,
        run: Callable[[BuildSession], Awaitable[None]],
        admissions_open: Callable[[], bool] = lambda: True,
    ) -> None:
        self._pool = pool
        self._run = run
        self._admissions_open = admissions_open
        self._queue: deque[BuildSession] = deque()
        self._running: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def queued(self) -> list[str]:
        return [session.ref for session in self._queue]

    @property
    def running(self) -> list[str]:
        return list(self._running)

    def submit(self, session: BuildSession) -> None:
        self._queue.append(session)
        logger.info("session %s queued (position %d)", session.ref, len(self._queue))
        self._wakeup.set()

    def remove(self, session_id: str) -> bool:
        for session in self._queue:
            if session.ref == session_id:
                self._queue.remove(session)
                return True
        return False

    def poke(self) -> None:
        self._wakeup.set()

    def start(self) -> None:
        if self._loop_task is not None:
            raise RuntimeError("scheduler already started")
        self._loop_task = asyncio.create_task(self._admit_forever(), name="admission-loop")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _admit_forever(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            self._admit()

    def _admit(self) -> None:
        while self._queue and self._admissions_open():
            slot = self._pool.try_acquire()
            if slot is None:
                return
            session = self._queue.popleft()
            logger.info(
                "admitting session %s into slot %d (%d/%d in use)",
                session.ref,
                slot.index,
                self._pool.in_use,
                self._pool.size,
            )
            self._running[session.ref] = asyncio.create_task(
                self._drive(session, slot), name=f"session-{session.ref}"
            )

    async def _drive(self, session: BuildSession, slot: WorkerSlot) -> None:
        try:
            await self._run(session)
        except Exception:
            logger.exception("run of session %s failed", session.ref)
        finally:
            self._pool.release(slot)
            self._running.pop(session.ref, None)
            self._wakeup.set()
