"""Fixed-size pool of worker slots."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkerSlot:
    index: int
    released: bool = False


class WorkerPool:
    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("worker pool needs at least one slot")
        self._size = size
        self._free = list(range(size - 1, -1, -1))
        self._peak = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        return self._size - len(self._free)

    @property
    def peak(self) -> int:
        return self._peak

    def try_acquire(self) -> Optional[WorkerSlot]:
        if not self._free:
            return None
        slot = WorkerSlot(index=self._free.pop())
        self._peak = max(self._peak, self.in_use)
        return slot

    def release(self, slot: WorkerSlot) -> None:
        if slot.released:
            raise RuntimeError(f"worker slot {slot.index} released twice")
        slot.released = True
        self._free.append(slot.index)
        logger.debug("released worker slot %d (%d/%d in use)", slot.index, self.in_use, self._size)
