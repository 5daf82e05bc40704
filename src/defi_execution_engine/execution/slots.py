"""Execution key claims shared by the coordinator and the position manager."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from ..datalake.schemas import ExecutionKey, ExecutionSlot, SlotState
from ..exceptions import ConcurrencyLimitExceeded
from ..monitoring.metrics import METRICS


class ExecutionKeyRegistry:
    """Typed claim/release table guaranteeing one holder per ``ExecutionKey``.

    ``max_running`` additionally caps how many claimed slots may be in the
    running state at once.
    """

    def __init__(self, max_running: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[ExecutionKey, ExecutionSlot] = {}
        self._max_running = max_running
        self._peak_running = 0

    def claim(self, key: ExecutionKey, owner: str) -> Optional[ExecutionSlot]:
        """Return a pending slot for ``key``, or ``None`` when another owner holds it."""

        with self._lock:
            if key in self._slots:
                return None
            slot = ExecutionSlot(key=key, owner=owner)
            self._slots[key] = slot
            return slot

    def mark_running(self, slot: ExecutionSlot) -> None:
        with self._lock:
            if self._slots.get(slot.key) is not slot:
                raise ConcurrencyLimitExceeded(slot.key)
            running = sum(1 for item in self._slots.values() if item.state == SlotState.RUNNING)
            if self._max_running is not None and running >= self._max_running:
                raise ConcurrencyLimitExceeded(slot.key)
            slot.state = SlotState.RUNNING
            self._peak_running = max(self._peak_running, running + 1)
            METRICS.gauge("execution.running_slots", running + 1)

    def release(self, slot: ExecutionSlot) -> None:
        with self._lock:
            if self._slots.get(slot.key) is slot:
                del self._slots[slot.key]
            slot.state = SlotState.DONE
            running = sum(1 for item in self._slots.values() if item.state == SlotState.RUNNING)
        METRICS.gauge("execution.running_slots", running)

    @contextmanager
    def hold(self, key: ExecutionKey, owner: str) -> Iterator[ExecutionSlot]:
        """Claim ``key`` for the duration of the block or raise ``ConcurrencyLimitExceeded``."""

        slot = self.claim(key, owner)
        if slot is None:
            raise ConcurrencyLimitExceeded(key)
        try:
            yield slot
        finally:
            self.release(slot)

    def holder(self, key: ExecutionKey) -> Optional[str]:
        with self._lock:
            slot = self._slots.get(key)
            return slot.owner if slot else None

    def is_held(self, key: ExecutionKey) -> bool:
        with self._lock:
            return key in self._slots

    def running_keys(self) -> List[ExecutionKey]:
        with self._lock:
            return [key for key, slot in self._slots.items() if slot.state == SlotState.RUNNING]

    def running_count(self) -> int:
        return len(self.running_keys())

    @property
    def peak_running(self) -> int:
        return self._peak_running

    def active(self) -> List[ExecutionSlot]:
        with self._lock:
            return list(self._slots.values())


__all__ = ["ExecutionKeyRegistry"]
