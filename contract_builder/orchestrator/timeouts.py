"""Per-session wall-clock deadlines."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class Deadline:
    session_id: str
    budget: float
    started: float
    clock: Callable[[], float]
    fired: bool = False

    def elapsed(self) -> float:
        return self.clock() - self.started

    def expired(self) -> bool:
        return self.fired or self.elapsed() > self.budget


class TimeoutSupervisor:
    """Fires a callback on the event loop once a session's budget is spent.

    The callback runs at most once per deadline and never after
    :meth:`clear` was called for the session.
    """

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def watch(
        self,
        session_id: str,
        budget: float,
        on_expire: Callable[[Deadline], None],
    ) -> Deadline:
        if session_id in self._timers:
            raise RuntimeError(f"session {session_id} already has a deadline")
        loop = asyncio.get_running_loop()
        deadline = Deadline(
            session_id=session_id,
            budget=budget,
            started=loop.time(),
            clock=loop.time,
        )

        def fire() -> None:
            self._timers.pop(session_id, None)
            deadline.fired = True
            logger.warning(
                "session %s exceeded its %.0fs build budget", session_id, budget
            )
            on_expire(deadline)

        self._timers[session_id] = loop.call_later(budget, fire)
        return deadline

    def clear(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
